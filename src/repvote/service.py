"""
repvote/service.py

VotingService: the boundary between presentation layers (REST API, CLI,
UIs) and the voting engine.

Reads are plain queries. Commands (``submit_vote``, ``claim``) start a
settlement machine in the background and hand back an OutcomeHandle that
resolves to CONFIRMED, REJECTED or FAILED. Concurrent duplicate commands
for the same identity and poll share one handle, and a command whose
previous attempt ended ambiguously (timeout) resumes that attempt rather
than starting over.

Usage:
    async with trio.open_nursery() as nursery:
        service = VotingService.in_memory()
        service.bind(nursery)

        poll_id = service.create_poll("Ship it?", ["Yes", "No"])
        handle = service.submit_vote("alice", poll_id, option=0, credits=9)
        status = await handle.wait()     # OutcomeStatus.CONFIRMED
"""

import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import trio

from .config import DEFAULT_POLL_DURATION, DEFAULT_RECENT_POLLS, DEFAULT_WEIGHT_CAP, VotingConfig
from .errors import RepVoteError, UserCancelled
from .gateway import InProcessGateway, LedgerGateway
from .metrics import MetricsCollector
from .protocol.factory import PollFactory
from .protocol.ledger import PollInfo, Vote
from .protocol.notifications import NotificationHub, PollWatch
from .protocol.readmodels import ReadModel, ReadModelRegistry, leaderboard_loader, results_loader, vote_status_loader
from .protocol.reputation import InMemoryReputationOracle, ReputationOracle, ReputationSnapshot
from .protocol.settlement import ClaimSettlement, ConsentHook, VoteSettlement, always_consent
from .protocol.token import InMemoryStakeToken, StakeToken
from .retry import RetryConfig, retry_read

logger = logging.getLogger("repvote.service")


class OutcomeStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    FAILED = "failed"


class OutcomeHandle:
    """Eventual outcome of a vote or claim command."""

    def __init__(self, kind: str, identity: str, poll_id: str, machine: Any):
        self.kind = kind
        self.identity = identity
        self.poll_id = poll_id
        self.machine = machine
        self.status = OutcomeStatus.PENDING
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.submitted_at = time.time()
        self.finished_at: Optional[float] = None
        self._done = trio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> OutcomeStatus:
        await self._done.wait()
        return self.status

    def _finish(self, status: OutcomeStatus, result: Any = None, error: Optional[BaseException] = None) -> None:
        self.status = status
        self.result = result
        self.error = error
        self.finished_at = time.time()
        self._done.set()

    @property
    def latency(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.submitted_at

    def to_dict(self) -> dict:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else self.result
        return {
            "kind": self.kind,
            "identity": self.identity,
            "poll_id": self.poll_id,
            "status": self.status.value,
            "result": result,
            "error": self.error.to_dict() if isinstance(self.error, RepVoteError) else None,
            "state": self.machine.state.value,
        }


class VotingService:
    """
    Voting engine facade.

    Args:
        factory: Poll registry
        gateway: Transport used by settlement machines
        hub: Notification hub shared with the factory
        config: Runtime settings
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        factory: PollFactory,
        gateway: LedgerGateway,
        hub: Optional[NotificationHub] = None,
        config: Optional[VotingConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.factory = factory
        self.gateway = gateway
        self.hub = hub
        self.config = config or VotingConfig()
        self.metrics = metrics
        self.retry_config = RetryConfig(
            max_retries=self.config.read_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        self._nursery: Optional[trio.Nursery] = None
        self._inflight: Dict[Tuple[str, str, str], OutcomeHandle] = {}
        self._machines: Dict[Tuple[str, str, str], Any] = {}
        self.read_models = ReadModelRegistry(hub)

    @classmethod
    def in_memory(
        cls,
        config: Optional[VotingConfig] = None,
        oracle: Optional[ReputationOracle] = None,
        token: Optional[StakeToken] = None,
        confirmation_delay: float = 0.0,
        clock=time.time,
    ) -> "VotingService":
        """Service over in-memory oracle, token and ledgers."""
        config = config or VotingConfig()
        hub = NotificationHub(buffer_size=config.notification_buffer)
        factory = PollFactory(
            oracle=oracle or InMemoryReputationOracle(),
            token=token or InMemoryStakeToken(),
            hub=hub,
            clock=clock,
            max_credits_per_vote=config.max_credits_per_vote,
            recent_limit=config.recent_polls_limit,
        )
        gateway = InProcessGateway(factory, confirmation_delay=confirmation_delay)
        metrics = MetricsCollector()
        metrics.attach(hub)
        return cls(factory, gateway, hub=hub, config=config, metrics=metrics)

    def bind(self, nursery: trio.Nursery) -> None:
        """Attach the nursery running settlements (and the in-process gateway)."""
        self._nursery = nursery
        if isinstance(self.gateway, InProcessGateway):
            self.gateway.bind(nursery)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def create_poll(
        self,
        question: str,
        options: List[str],
        duration_seconds: int = DEFAULT_POLL_DURATION,
        max_weight_cap: int = DEFAULT_WEIGHT_CAP,
        creator: str = "",
    ) -> str:
        return self.factory.create_poll(question, options, duration_seconds, max_weight_cap, creator=creator)

    def submit_vote(
        self,
        identity: str,
        poll_id: str,
        option: int,
        credits: int,
        consent: ConsentHook = always_consent,
    ) -> OutcomeHandle:
        """
        Start casting a vote.

        Returns:
            Handle resolving once the vote settles or fails
        """
        key = ("vote", identity, poll_id)
        inflight = self._inflight.get(key)
        if inflight is not None:
            logger.debug(f"Joining in-flight vote of {identity} on {poll_id}")
            return inflight

        machine = self._machines.get(key)
        if machine is None or machine.is_terminal or not machine.matches(option, credits):
            machine = VoteSettlement(
                identity=identity,
                poll_id=poll_id,
                option=option,
                credits=credits,
                gateway=self.gateway,
                hub=self.hub,
                confirmation_timeout=self.config.confirmation_timeout,
                consent=consent,
                retry_config=self.retry_config,
                max_credits_per_vote=self.config.max_credits_per_vote,
            )
        else:
            logger.info(f"Resuming vote of {identity} on {poll_id} from {machine.state.value}")
        return self._start(key, machine)

    def claim(self, identity: str, poll_id: str, consent: ConsentHook = always_consent) -> OutcomeHandle:
        """Start claiming winnings from an ended poll."""
        key = ("claim", identity, poll_id)
        inflight = self._inflight.get(key)
        if inflight is not None:
            return inflight

        machine = self._machines.get(key)
        if machine is None or machine.is_terminal:
            machine = ClaimSettlement(
                identity=identity,
                poll_id=poll_id,
                gateway=self.gateway,
                hub=self.hub,
                confirmation_timeout=self.config.confirmation_timeout,
                consent=consent,
                retry_config=self.retry_config,
            )
        return self._start(key, machine)

    def cancel(self, identity: str, poll_id: str, kind: str = "vote") -> bool:
        """Ask an in-flight command to stop before its final write."""
        machine = self._machines.get((kind, identity, poll_id))
        if machine is None:
            return False
        return machine.cancel()

    def _start(self, key: Tuple[str, str, str], machine: Any) -> OutcomeHandle:
        if self._nursery is None:
            raise RuntimeError("Service not started. Call bind(nursery) first")
        kind, identity, poll_id = key
        handle = OutcomeHandle(kind, identity, poll_id, machine)
        self._inflight[key] = handle
        self._machines[key] = machine
        self._nursery.start_soon(self._settle, key, handle)
        return handle

    async def _settle(self, key: Tuple[str, str, str], handle: OutcomeHandle) -> None:
        machine = handle.machine
        try:
            result = await machine.run()
        except UserCancelled as e:
            handle._finish(OutcomeStatus.REJECTED, error=e)
        except RepVoteError as e:
            handle._finish(OutcomeStatus.FAILED, error=e)
        except Exception as e:
            logger.error(f"Unexpected error settling {handle.kind} for {handle.identity}: {e}")
            handle._finish(OutcomeStatus.FAILED, error=e)
        else:
            handle._finish(OutcomeStatus.CONFIRMED, result=result)
        finally:
            self._inflight.pop(key, None)

        if self.metrics is not None:
            category = getattr(handle.error, "category", None)
            self.metrics.record_outcome(handle.kind, handle.status.value, handle.latency, category)
        logger.info(f"{handle.kind} by {handle.identity} on {handle.poll_id}: {handle.status.value}")

    # ========================================================================
    # QUERIES
    # ========================================================================

    async def _read(self, operation: str, func, *args) -> Any:
        return await retry_read(operation, func, *args, config=self.retry_config)

    async def get_poll_info(self, poll_id: str) -> PollInfo:
        return await self._read("poll_info", self.gateway.get_poll_info, poll_id)

    async def get_recent_polls(self, count: int = DEFAULT_RECENT_POLLS) -> List[PollInfo]:
        return [
            await self.get_poll_info(poll_id)
            for poll_id in self.factory.get_recent_polls(count)
        ]

    async def get_results(self, poll_id: str) -> Dict[str, Any]:
        return await results_loader(self.gateway, poll_id, self.retry_config)()

    async def get_winner(self, poll_id: str) -> Tuple[int, int]:
        return await self._read("winner", self.gateway.get_winner, poll_id)

    async def get_vote(self, poll_id: str, identity: str) -> Optional[Vote]:
        return await self._read("vote", self.gateway.get_vote, poll_id, identity)

    async def get_vote_status(self, poll_id: str, identity: str) -> Dict[str, Any]:
        return await vote_status_loader(self.gateway, poll_id, identity, self.retry_config)()

    async def get_user_stats(self, identity: str) -> ReputationSnapshot:
        return await self._read("user_stats", self.gateway.get_user_stats, identity)

    async def get_balance(self, identity: str) -> int:
        return await self._read("balance", self.gateway.balance_of, identity)

    async def preview_vote_weight(self, poll_id: str, identity: str, credits: int) -> int:
        return await self.factory.get_poll(poll_id).preview_vote_weight(identity, credits)

    def known_identities(self) -> List[str]:
        """Every identity that has voted on any poll, in first-seen order."""
        seen: Dict[str, None] = {}
        for ledger in self.factory.all_polls():
            for vote in ledger.iter_votes():
                seen.setdefault(vote.identity, None)
        return list(seen)

    async def get_leaderboard(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await leaderboard_loader(self.gateway, self.known_identities, limit, self.retry_config)()

    def results_model(self, poll_id: str) -> ReadModel:
        """
        Results read model for a poll, refreshed whenever a command on it settles.

        One model is kept per poll and repeated calls return it. Run it with
        ``nursery.start(model.run, interval)``.
        """
        name = f"results:{poll_id}"
        for model in self.read_models.models_for(poll_id):
            if model.name == name:
                return model
        model = ReadModel(name, results_loader(self.gateway, poll_id, self.retry_config))
        return self.read_models.register(model, poll_id=poll_id)

    def watch(self, poll_id: str) -> PollWatch:
        """Stream of notifications for a poll; polls results when there is no hub."""
        if self.hub is not None:
            return PollWatch(poll_id, hub=self.hub)

        async def snapshot():
            return await self._read("results", self.gateway.get_results, poll_id)

        return PollWatch(poll_id, snapshot=snapshot, interval=self.config.refresh_interval)

    def pending(self) -> List[OutcomeHandle]:
        return list(self._inflight.values())

    async def faucet(self, identity: str) -> int:
        """Mint test tokens to an identity (in-memory token only)."""
        token = self.factory.token
        if not isinstance(token, InMemoryStakeToken):
            raise NotImplementedError("Faucet is only available on the in-memory token")
        return await token.faucet(identity)
