"""
repvote/api.py

REST API server for repvote.

Exposes poll discovery, results, vote and claim commands, reputation and
Prometheus metrics over a small trio HTTP/1.1 server.
"""

import json
import logging
import time
import trio
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

from .config import DEFAULT_API_HOST, DEFAULT_API_PORT, DEFAULT_POLL_DURATION, DEFAULT_RECENT_POLLS, DEFAULT_WEIGHT_CAP
from .errors import PollNotFound, RepVoteError
from .protocol.weights import format_weight
from .service import OutcomeStatus, VotingService

logger = logging.getLogger("repvote.api")

VERSION = "0.1.0"

# Error category -> HTTP status
ERROR_STATUS = {
    "validation": 400,
    "resource": 402,
    "state": 409,
    "cancelled": 409,
    "transport": 504,
}

STATUS_TEXT = {
    200: "OK",
    201: "Created",
    202: "Accepted",
    204: "No Content",
    400: "Bad Request",
    402: "Payment Required",
    404: "Not Found",
    409: "Conflict",
    500: "Internal Server Error",
    501: "Not Implemented",
    504: "Gateway Timeout",
}


@dataclass
class Request:
    """HTTP request representation."""
    method: str
    path: str
    query: Dict[str, List[str]]
    headers: Dict[str, str]
    body: bytes
    path_params: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Dict[str, Any]:
        """Parsed JSON body; ValueError when missing or malformed."""
        if not self.body:
            raise ValueError("Request body required")
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError:
            raise ValueError("Invalid JSON")
        if not isinstance(data, dict):
            raise ValueError("JSON object expected")
        return data


@dataclass
class Response:
    """HTTP response representation."""
    status: int
    headers: Dict[str, str]
    body: bytes

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "Response":
        """Create JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        return cls(
            status=status,
            headers={"Content-Type": "application/json"},
            body=body,
        )

    @classmethod
    def text(cls, text: str, status: int = 200, content_type: str = "text/plain") -> "Response":
        """Create text response."""
        return cls(
            status=status,
            headers={"Content-Type": content_type},
            body=text.encode("utf-8"),
        )

    @classmethod
    def error(cls, message: str, status: int = 400) -> "Response":
        """Create error response."""
        return cls.json({"error": message}, status=status)

    @classmethod
    def from_exception(cls, error: RepVoteError) -> "Response":
        """Error response carrying the error's category and code."""
        if isinstance(error, PollNotFound):
            status = 404
        else:
            status = ERROR_STATUS.get(error.category, 400)
        return cls.json(error.to_dict(), status=status)


class VotingAPI:
    """
    REST API server for repvote.

    Usage:
        service = VotingService.in_memory()
        api = VotingAPI(service, host="0.0.0.0", port=8080)

        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            nursery.start_soon(api.start)

        # API available at http://localhost:8080
    """

    def __init__(
        self,
        service: VotingService,
        host: str = DEFAULT_API_HOST,
        port: int = DEFAULT_API_PORT,
        enable_metrics: bool = True,
    ):
        """
        Initialize REST API server.

        Args:
            service: VotingService to expose
            host: Host to bind to (default: localhost)
            port: Port to listen on (default: 8080)
            enable_metrics: Enable Prometheus metrics endpoint
        """
        self.service = service
        self.host = host
        self.port = port
        self.enable_metrics = enable_metrics

        self._running = False
        self._start_time = time.time()

        # Route handlers
        self._routes: Dict[Tuple[str, str], Callable] = {
            ("GET", "/"): self._handle_root,
            ("GET", "/health"): self._handle_health,
            ("GET", "/polls"): self._handle_list_polls,
            ("POST", "/polls"): self._handle_create_poll,
            ("GET", "/polls/{poll_id}"): self._handle_get_poll,
            ("GET", "/polls/{poll_id}/results"): self._handle_results,
            ("GET", "/polls/{poll_id}/winner"): self._handle_winner,
            ("GET", "/polls/{poll_id}/votes/{identity}"): self._handle_vote_status,
            ("POST", "/polls/{poll_id}/vote"): self._handle_vote,
            ("POST", "/polls/{poll_id}/claim"): self._handle_claim,
            ("GET", "/reputation/{identity}"): self._handle_reputation,
            ("GET", "/leaderboard"): self._handle_leaderboard,
            ("POST", "/faucet/{identity}"): self._handle_faucet,
            ("GET", "/metrics"): self._handle_metrics,
        }

    async def start(self, task_status=trio.TASK_STATUS_IGNORED) -> None:
        """Start the API server."""
        if self._running:
            logger.warning("API server already running")
            return

        self._running = True
        logger.info(f"Starting REST API server on {self.host}:{self.port}")

        try:
            await trio.serve_tcp(
                self._handle_connection,
                self.port,
                host=self.host,
                task_status=task_status,
            )
        except Exception as e:
            logger.error(f"API server error: {e}")
            raise
        finally:
            self._running = False

    async def _handle_connection(self, stream: trio.SocketStream) -> None:
        """Handle incoming TCP connection."""
        try:
            request = await self._read_request(stream)
            if not request:
                return
            response = await self._route_request(request)
            await self._send_response(stream, response)
        except trio.BrokenResourceError as e:
            logger.debug(f"Client went away: {e}")
        except Exception as e:
            logger.error(f"Connection error: {e}")
            try:
                await self._send_response(stream, Response.error(str(e), status=500))
            except trio.BrokenResourceError:
                pass
        finally:
            await stream.aclose()

    async def _read_request(self, stream: trio.SocketStream) -> Optional[Request]:
        """Read and parse HTTP request."""
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = await stream.receive_some(4096)
            if not chunk:
                return None
            data += chunk

        header_end = data.index(b"\r\n\r\n")
        header_data = data[:header_end].decode("utf-8")
        body = data[header_end + 4:]

        lines = header_data.split("\r\n")
        request_line = lines[0].split(" ")
        method = request_line[0]
        path_with_query = request_line[1] if len(request_line) > 1 else "/"

        parsed = urlparse(path_with_query)

        headers = {}
        for line in lines[1:]:
            if ":" in line:
                key, value = line.split(":", 1)
                headers[key.strip().lower()] = value.strip()

        content_length = int(headers.get("content-length", 0))
        while len(body) < content_length:
            chunk = await stream.receive_some(4096)
            if not chunk:
                break
            body += chunk

        return Request(
            method=method,
            path=parsed.path,
            query=parse_qs(parsed.query),
            headers=headers,
            body=body[:content_length] if content_length else body,
        )

    async def _send_response(self, stream: trio.SocketStream, response: Response) -> None:
        """Send HTTP response."""
        lines = [f"HTTP/1.1 {response.status} {STATUS_TEXT.get(response.status, 'Unknown')}"]

        response.headers["Content-Length"] = str(len(response.body))
        response.headers["Connection"] = "close"
        response.headers["Server"] = f"repvote/{VERSION}"

        for key, value in response.headers.items():
            lines.append(f"{key}: {value}")

        lines.append("")
        header_bytes = "\r\n".join(lines).encode("utf-8") + b"\r\n"

        await stream.send_all(header_bytes + response.body)

    async def _route_request(self, request: Request) -> Response:
        """Route request to its handler, mapping domain errors to statuses."""
        handler = self._routes.get((request.method, request.path))
        if handler is None:
            for (method, pattern), candidate in self._routes.items():
                if method != request.method:
                    continue
                match, params = self._match_path(pattern, request.path)
                if match:
                    request.path_params = params
                    handler = candidate
                    break

        if handler is None:
            return Response.error("Not Found", status=404)

        try:
            return await handler(request)
        except RepVoteError as e:
            logger.warning(f"{request.method} {request.path} refused: {e.code}: {e}")
            return Response.from_exception(e)
        except ValueError as e:
            return Response.error(str(e), status=400)

    def _match_path(self, pattern: str, path: str) -> Tuple[bool, Dict[str, str]]:
        """Match path against pattern with parameters."""
        pattern_parts = pattern.split("/")
        path_parts = path.split("/")

        if len(pattern_parts) != len(path_parts):
            return False, {}

        params = {}
        for p_part, path_part in zip(pattern_parts, path_parts):
            if p_part.startswith("{") and p_part.endswith("}"):
                if not path_part:
                    return False, {}
                params[p_part[1:-1]] = path_part
            elif p_part != path_part:
                return False, {}

        return True, params

    @staticmethod
    def _int_field(data: Dict[str, Any], name: str, default: Optional[int] = None) -> int:
        value = data.get(name, default)
        if value is None:
            raise ValueError(f"{name} is required")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name} must be an integer")
        return value

    # ========== Route Handlers ==========

    async def _handle_root(self, request: Request) -> Response:
        return Response.json({
            "name": "repvote",
            "version": VERSION,
            "endpoints": list(f"{m} {p}" for (m, p) in self._routes.keys()),
        })

    async def _handle_health(self, request: Request) -> Response:
        return Response.json({
            "status": "healthy",
            "polls": self.service.factory.get_poll_count(),
            "pending_settlements": len(self.service.pending()),
            "uptime_seconds": time.time() - self._start_time,
        })

    async def _handle_list_polls(self, request: Request) -> Response:
        count = DEFAULT_RECENT_POLLS
        count_param = request.query.get("count", [])
        if count_param:
            try:
                count = int(count_param[0])
            except ValueError:
                return Response.error("count must be an integer", status=400)

        polls = await self.service.get_recent_polls(count)
        return Response.json({
            "count": len(polls),
            "total": self.service.factory.get_poll_count(),
            "polls": [info.to_dict() for info in polls],
        })

    async def _handle_create_poll(self, request: Request) -> Response:
        data = request.json()
        options = data.get("options")
        if not isinstance(options, list):
            raise ValueError("options must be a list")

        poll_id = self.service.create_poll(
            question=str(data.get("question", "")),
            options=[str(option) for option in options],
            duration_seconds=self._int_field(data, "duration_seconds", DEFAULT_POLL_DURATION),
            max_weight_cap=self._int_field(data, "max_weight_cap", DEFAULT_WEIGHT_CAP),
            creator=str(data.get("creator", "")),
        )
        info = await self.service.get_poll_info(poll_id)
        return Response.json(info.to_dict(), status=201)

    async def _handle_get_poll(self, request: Request) -> Response:
        info = await self.service.get_poll_info(request.path_params["poll_id"])
        return Response.json(info.to_dict())

    async def _handle_results(self, request: Request) -> Response:
        results = await self.service.get_results(request.path_params["poll_id"])
        results["results_display"] = [format_weight(weight) for weight in results["results"]]
        return Response.json(results)

    async def _handle_winner(self, request: Request) -> Response:
        poll_id = request.path_params["poll_id"]
        option, weight = await self.service.get_winner(poll_id)
        info = await self.service.get_poll_info(poll_id)
        return Response.json({
            "poll_id": poll_id,
            "option": option,
            "label": info.options[option],
            "weight": weight,
            "weight_display": format_weight(weight),
            "is_final": not info.is_active,
        })

    async def _handle_vote_status(self, request: Request) -> Response:
        status = await self.service.get_vote_status(
            request.path_params["poll_id"], request.path_params["identity"]
        )
        return Response.json(status)

    async def _handle_vote(self, request: Request) -> Response:
        data = request.json()
        identity = data.get("identity")
        if not identity:
            raise ValueError("identity is required")

        handle = self.service.submit_vote(
            identity,
            request.path_params["poll_id"],
            option=self._int_field(data, "option"),
            credits=self._int_field(data, "credits"),
        )
        return await self._outcome_response(handle, wait=data.get("wait", True))

    async def _handle_claim(self, request: Request) -> Response:
        data = request.json()
        identity = data.get("identity")
        if not identity:
            raise ValueError("identity is required")

        handle = self.service.claim(identity, request.path_params["poll_id"])
        return await self._outcome_response(handle, wait=data.get("wait", True))

    async def _outcome_response(self, handle, wait: bool) -> Response:
        if not wait:
            return Response.json(handle.to_dict(), status=202)

        status = await handle.wait()
        if status == OutcomeStatus.CONFIRMED:
            return Response.json(handle.to_dict())
        if isinstance(handle.error, RepVoteError):
            response = Response.from_exception(handle.error)
            return Response.json(handle.to_dict(), status=response.status)
        return Response.json(handle.to_dict(), status=500)

    async def _handle_reputation(self, request: Request) -> Response:
        stats = await self.service.get_user_stats(request.path_params["identity"])
        return Response.json(stats.to_dict())

    async def _handle_leaderboard(self, request: Request) -> Response:
        limit = None
        limit_param = request.query.get("limit", [])
        if limit_param:
            try:
                limit = int(limit_param[0])
            except ValueError:
                return Response.error("limit must be an integer", status=400)
        entries = await self.service.get_leaderboard(limit)
        return Response.json({"count": len(entries), "entries": entries})

    async def _handle_faucet(self, request: Request) -> Response:
        identity = request.path_params["identity"]
        try:
            minted = await self.service.faucet(identity)
        except NotImplementedError as e:
            return Response.error(str(e), status=501)
        balance = await self.service.get_balance(identity)
        return Response.json({"identity": identity, "minted": minted, "balance": balance})

    async def _handle_metrics(self, request: Request) -> Response:
        """Handle Prometheus metrics endpoint."""
        if not self.enable_metrics or self.service.metrics is None:
            return Response.error("Metrics not enabled", status=404)

        return Response.text(
            self.service.metrics.collect(),
            content_type="text/plain; version=0.0.4; charset=utf-8",
        )
