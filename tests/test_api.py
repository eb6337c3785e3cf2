"""
repvote/tests/test_api.py

Route-level tests for the REST API handlers.
"""

import json
from typing import Optional

import pytest
import trio

from repvote.api import Request, Response, VotingAPI
from repvote.errors import AlreadyVoted, PollNotFound, TransientReadError
from repvote.service import VotingService

from conftest import DAY


def make_request(method: str, path: str, body: Optional[dict] = None, query: Optional[dict] = None) -> Request:
    return Request(
        method=method,
        path=path,
        query=query or {},
        headers={},
        body=json.dumps(body).encode() if body is not None else b"",
    )


def body_of(response: Response):
    return json.loads(response.body)


@pytest.fixture
def service(oracle, token, clock):
    return VotingService.in_memory(oracle=oracle, token=token, clock=clock)


@pytest.fixture
def api(service):
    return VotingAPI(service, port=0)


@pytest.fixture
def poll_id(service):
    return service.create_poll("Ship it?", ["Yes", "No"], DAY, creator="alice")


class TestResponse:
    """Test error mapping."""

    @pytest.mark.parametrize("error,status", [
        (AlreadyVoted("twice"), 409),
        (PollNotFound("missing"), 404),
        (TransientReadError("down"), 504),
    ])
    def test_from_exception(self, error, status):
        response = Response.from_exception(error)
        assert response.status == status
        assert body_of(response)["code"] == error.code

    def test_request_json(self):
        with pytest.raises(ValueError):
            make_request("POST", "/polls").json()
        with pytest.raises(ValueError):
            Request("POST", "/polls", {}, {}, b"[1, 2]").json()


class TestPollRoutes:
    """Test poll discovery routes."""

    @pytest.mark.trio
    async def test_root_and_health(self, api):
        root = body_of(await api._route_request(make_request("GET", "/")))
        assert "POST /polls/{poll_id}/vote" in root["endpoints"]

        health = body_of(await api._route_request(make_request("GET", "/health")))
        assert health["status"] == "healthy"
        assert health["polls"] == 0

    @pytest.mark.trio
    async def test_create_and_get(self, api):
        response = await api._route_request(make_request("POST", "/polls", {
            "question": "Ship it?",
            "options": ["Yes", "No"],
            "duration_seconds": DAY,
            "max_weight_cap": 5,
        }))
        assert response.status == 201
        created = body_of(response)
        assert created["max_weight_cap"] == 5

        response = await api._route_request(make_request("GET", f"/polls/{created['poll_id']}"))
        assert body_of(response)["question"] == "Ship it?"

        listing = body_of(await api._route_request(make_request("GET", "/polls", query={"count": ["5"]})))
        assert listing["count"] == 1

    @pytest.mark.trio
    async def test_create_invalid(self, api):
        response = await api._route_request(make_request("POST", "/polls", {"question": "Q?", "options": ["A"]}))
        assert response.status == 400
        assert body_of(response)["code"] == "invalid_poll_config"

        response = await api._route_request(make_request("POST", "/polls", {"question": "Q?", "options": "A,B"}))
        assert response.status == 400

    @pytest.mark.trio
    async def test_not_found(self, api):
        response = await api._route_request(make_request("GET", "/polls/missing"))
        assert response.status == 404
        assert body_of(response)["code"] == "poll_not_found"

        response = await api._route_request(make_request("DELETE", "/polls"))
        assert response.status == 404

    @pytest.mark.trio
    async def test_bad_query(self, api):
        response = await api._route_request(make_request("GET", "/polls", query={"count": ["x"]}))
        assert response.status == 400
        response = await api._route_request(make_request("GET", "/leaderboard", query={"limit": ["x"]}))
        assert response.status == 400


class TestCommandRoutes:
    """Test vote and claim routes."""

    @pytest.mark.trio
    async def test_vote_and_results(self, api, service, token, poll_id):
        token.mint("alice", 100)

        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            response = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote", {"identity": "alice", "option": 0, "credits": 9}
            ))
            assert response.status == 200
            assert body_of(response)["status"] == "confirmed"

            again = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote", {"identity": "alice", "option": 1, "credits": 4}
            ))
            assert again.status == 409
            assert body_of(again)["error"]["code"] == "already_voted"

        results = body_of(await api._route_request(make_request("GET", f"/polls/{poll_id}/results")))
        assert results["results_display"] == ["3.00", "0.00"]

        winner = body_of(await api._route_request(make_request("GET", f"/polls/{poll_id}/winner")))
        assert winner["label"] == "Yes"
        assert winner["is_final"] is False

        status = body_of(await api._route_request(make_request("GET", f"/polls/{poll_id}/votes/alice")))
        assert status["vote"]["credits"] == 9

    @pytest.mark.trio
    async def test_vote_errors(self, api, service, poll_id):
        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            broke = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote", {"identity": "carol", "option": 0, "credits": 9}
            ))
            assert broke.status == 402
            assert body_of(broke)["error"]["code"] == "insufficient_balance"

            bad = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote", {"identity": "carol", "option": 0, "credits": "9"}
            ))
            assert bad.status == 400

            missing = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote", {"option": 0, "credits": 9}
            ))
            assert missing.status == 400

    @pytest.mark.trio
    async def test_vote_without_wait(self, api, service, token, poll_id):
        token.mint("bob", 100)

        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            response = await api._route_request(make_request(
                "POST", f"/polls/{poll_id}/vote",
                {"identity": "bob", "option": 1, "credits": 16, "wait": False},
            ))
            assert response.status == 202
            assert body_of(response)["status"] == "pending"

        assert (await service.get_vote(poll_id, "bob")).credits == 16

    @pytest.mark.trio
    async def test_claim(self, api, service, token, clock, poll_id):
        token.mint("bob", 100)

        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            await service.submit_vote("bob", poll_id, 1, 16).wait()

            early = await api._route_request(make_request("POST", f"/polls/{poll_id}/claim", {"identity": "bob"}))
            assert early.status == 409

            clock.advance(DAY)
            paid = await api._route_request(make_request("POST", f"/polls/{poll_id}/claim", {"identity": "bob"}))
            assert paid.status == 200
            assert body_of(paid)["result"]["amount"] == 16


class TestAccountRoutes:
    """Test reputation, leaderboard, faucet and metrics routes."""

    @pytest.mark.trio
    async def test_reputation(self, api):
        data = body_of(await api._route_request(make_request("GET", "/reputation/bob")))
        assert data["effective_reputation"] == 250
        assert data["multiplier_display"] == 2.0

    @pytest.mark.trio
    async def test_faucet_and_leaderboard(self, api, service, poll_id):
        data = body_of(await api._route_request(make_request("POST", "/faucet/bob")))
        assert data == {"identity": "bob", "minted": 1000, "balance": 1000}

        async with trio.open_nursery() as nursery:
            service.bind(nursery)
            await service.submit_vote("bob", poll_id, 0, 4).wait()

        board = body_of(await api._route_request(make_request("GET", "/leaderboard")))
        assert board["count"] == 1
        assert board["entries"][0]["identity"] == "bob"

    @pytest.mark.trio
    async def test_metrics(self, api, service, poll_id):
        response = await api._route_request(make_request("GET", "/metrics"))
        assert response.status == 200
        assert response.headers["Content-Type"].startswith("text/plain")
        assert b"repvote_polls_created_total 1" in response.body

    @pytest.mark.trio
    async def test_metrics_disabled(self, service):
        api = VotingAPI(service, enable_metrics=False)
        response = await api._route_request(make_request("GET", "/metrics"))
        assert response.status == 404
