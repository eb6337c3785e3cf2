"""
repvote/tests/test_ledger.py

Unit tests for PollLedger: vote recording, caps, tallies and queries.
"""

import pytest
import trio
import trio.testing

from repvote.config import WAD
from repvote.errors import (
    AlreadyVoted,
    CreditsExceedMax,
    InsufficientAllowance,
    InsufficientBalance,
    InvalidCredits,
    InvalidOption,
    PollClosed,
)
from repvote.protocol.ledger import PollLedger
from repvote.protocol.notifications import VoteRecorded
from repvote.protocol.reputation import InMemoryReputationOracle
from repvote.protocol.weights import quadratic_weight

from conftest import DAY, fund


# ============================================================================
# SCENARIOS
# ============================================================================

class TestScenarios:
    """End-to-end ledger scenarios."""

    @pytest.mark.trio
    async def test_two_voters(self, ledger, token):
        """alice (1.0x) 9 on Yes, bob (2.0x) 16 on No."""
        await fund(token, "alice", ledger, 9)
        await fund(token, "bob", ledger, 16)

        vote_a = await ledger.record_vote("alice", 0, 9)
        vote_b = await ledger.record_vote("bob", 1, 16)

        assert vote_a.weight == 3 * WAD
        assert vote_b.weight == 8 * WAD
        assert list(ledger.get_results()) == [3 * WAD, 8 * WAD]
        assert ledger.get_winner() == (1, 8 * WAD)
        assert ledger.total_voters == 2
        assert ledger.total_weighted_votes == 11 * WAD
        assert ledger.total_bet_amount == 25
        assert await token.balance_of(ledger.address) == 25

    @pytest.mark.trio
    async def test_second_vote_rejected(self, ledger, token):
        await fund(token, "alice", ledger, 50)
        await ledger.record_vote("alice", 0, 9)
        results_before = list(ledger.get_results())
        balance_before = await token.balance_of("alice")

        with pytest.raises(AlreadyVoted):
            await ledger.record_vote("alice", 1, 4)

        assert list(ledger.get_results()) == results_before
        assert ledger.total_voters == 1
        assert await token.balance_of("alice") == balance_before

    @pytest.mark.trio
    async def test_weight_cap_applied(self, oracle, token, clock):
        """Cap 2: first vote weighs 10, a raw 50 is clamped to 20."""
        ledger = PollLedger(
            poll_id="capped",
            question="Cap?",
            options=["A", "B"],
            end_time=clock.now + DAY,
            max_weight_cap=2,
            oracle=oracle,
            token=token,
            clock=clock,
            max_credits_per_vote=10000,
        )
        await fund(token, "alice", ledger, 100)
        await fund(token, "dave", ledger, 2500)

        first = await ledger.record_vote("alice", 0, 100)
        second = await ledger.record_vote("dave", 1, 2500)

        assert first.weight == 10 * WAD
        assert quadratic_weight(2500, WAD) == 50 * WAD
        assert second.weight == 20 * WAD
        assert ledger.total_weighted_votes == 30 * WAD


# ============================================================================
# RECORD VOTE
# ============================================================================

class TestRecordVote:
    """Test record_vote preconditions."""

    @pytest.mark.trio
    async def test_poll_closed(self, ledger, token, clock):
        await fund(token, "alice", ledger, 9)
        clock.advance(DAY)

        with pytest.raises(PollClosed):
            await ledger.record_vote("alice", 0, 9)
        assert ledger.total_voters == 0

    @pytest.mark.trio
    async def test_invalid_option(self, ledger, token):
        await fund(token, "alice", ledger, 9)
        with pytest.raises(InvalidOption):
            await ledger.record_vote("alice", 2, 9)

    @pytest.mark.trio
    async def test_invalid_credits(self, ledger, token):
        await fund(token, "alice", ledger, 200)
        with pytest.raises(InvalidCredits):
            await ledger.record_vote("alice", 0, 0)
        with pytest.raises(CreditsExceedMax):
            await ledger.record_vote("alice", 0, 101)
        assert not ledger.has_voted("alice")

    @pytest.mark.trio
    async def test_insufficient_allowance(self, ledger, token):
        await fund(token, "alice", ledger, 9, approve=False)
        with pytest.raises(InsufficientAllowance):
            await ledger.record_vote("alice", 0, 9)
        assert not ledger.has_voted("alice")
        assert ledger.total_weighted_votes == 0

    @pytest.mark.trio
    async def test_insufficient_balance(self, ledger, token):
        await token.approve("alice", ledger.address, 9)
        with pytest.raises(InsufficientBalance):
            await ledger.record_vote("alice", 0, 9)
        assert not ledger.has_voted("alice")

    @pytest.mark.trio
    async def test_oracle_multiplier_clamped(self, ledger, token, oracle):
        # Bypass set_reputation clamping with an out-of-range oracle value
        oracle.get_multiplier = _constant(10 * WAD)
        await fund(token, "erin", ledger, 9)
        vote = await ledger.record_vote("erin", 0, 9)
        assert vote.weight == 9 * WAD

    @pytest.mark.trio
    async def test_publishes_vote_recorded(self, ledger, token, hub):
        receive_channel = hub.subscribe(ledger.poll_id)
        await fund(token, "bob", ledger, 16)
        await ledger.record_vote("bob", 1, 16)

        event = receive_channel.receive_nowait()
        assert isinstance(event, VoteRecorded)
        assert event.identity == "bob"
        assert event.weight == 8 * WAD


def _constant(value):
    async def get_multiplier(identity):
        return value
    return get_multiplier


# ============================================================================
# CONCURRENCY
# ============================================================================

class GatedOracle(InMemoryReputationOracle):
    """Oracle whose multiplier read for one identity waits on an event."""

    def __init__(self, gated_identity: str):
        super().__init__()
        self.gated_identity = gated_identity
        self.release = trio.Event()

    async def get_multiplier(self, identity: str) -> int:
        if identity == self.gated_identity:
            await self.release.wait()
        return await super().get_multiplier(identity)


class TestConcurrentVotes:
    """Votes submitted concurrently to one or several polls."""

    @pytest.mark.trio
    async def test_one_vote_per_identity(self, ledger, token):
        await fund(token, "alice", ledger, 100)
        outcomes = []

        async def attempt(credits):
            try:
                await ledger.record_vote("alice", 0, credits)
                outcomes.append("ok")
            except AlreadyVoted:
                outcomes.append("duplicate")

        async with trio.open_nursery() as nursery:
            for credits in range(1, 6):
                nursery.start_soon(attempt, credits)

        assert outcomes.count("ok") == 1
        assert outcomes.count("duplicate") == 4
        assert ledger.total_voters == 1

    @pytest.mark.trio
    async def test_conservation_and_cap(self, oracle, token, clock):
        ledger = PollLedger(
            poll_id="busy",
            question="Busy?",
            options=["A", "B", "C"],
            end_time=clock.now + DAY,
            max_weight_cap=2,
            oracle=oracle,
            token=token,
            clock=clock,
        )
        voters = [f"voter{i}" for i in range(20)]
        for i, identity in enumerate(voters):
            oracle.set_reputation(identity, effective_reputation=i, multiplier=WAD * (1 + i % 3))
            await fund(token, identity, ledger, 100)

        async with trio.open_nursery() as nursery:
            for i, identity in enumerate(voters):
                nursery.start_soon(ledger.record_vote, identity, i % 3, 1 + (i * 37) % 100)

        assert sum(ledger.get_results()) == ledger.total_weighted_votes
        assert ledger.total_voters == 20

    @pytest.mark.trio
    async def test_slow_write_does_not_block_other_polls(self, token, clock):
        oracle = GatedOracle("alice")
        ledgers = [
            PollLedger(
                poll_id=poll_id,
                question="Ship it?",
                options=["Yes", "No"],
                end_time=clock.now + DAY,
                max_weight_cap=10,
                oracle=oracle,
                token=token,
                clock=clock,
            )
            for poll_id in ("poll-a", "poll-b")
        ]
        first, second = ledgers
        await fund(token, "alice", first, 9)
        await fund(token, "bob", first, 4)
        await fund(token, "bob", second, 4)

        async with trio.open_nursery() as nursery:
            nursery.start_soon(first.record_vote, "alice", 0, 9)
            await trio.testing.wait_all_tasks_blocked()
            nursery.start_soon(first.record_vote, "bob", 1, 4)

            await second.record_vote("bob", 1, 4)
            await trio.testing.wait_all_tasks_blocked()

            assert second.total_voters == 1
            assert first.total_voters == 0
            oracle.release.set()

        assert first.total_voters == 2
        assert [vote.identity for vote in first.iter_votes()] == ["alice", "bob"]

        # Votes are kept in commit order
        total, count = 0, 0
        for vote in ledger.iter_votes():
            if count > 0:
                assert vote.weight <= 2 * total // count
            total += vote.weight
            count += 1
        assert total == ledger.total_weighted_votes


# ============================================================================
# QUERIES
# ============================================================================

class TestQueries:
    """Test ledger read operations."""

    @pytest.mark.trio
    async def test_results_view_is_restartable(self, ledger, token):
        results = ledger.get_results()
        assert list(results) == [0, 0]
        assert list(results) == [0, 0]

        await fund(token, "alice", ledger, 9)
        await ledger.record_vote("alice", 0, 9)

        assert list(results) == [3 * WAD, 0]
        assert len(results) == 2
        assert results[0] == 3 * WAD

    @pytest.mark.trio
    async def test_votes_tuple(self, ledger, token, clock):
        assert ledger.votes("nobody") == (0, 0, 0, 0)

        await fund(token, "alice", ledger, 9)
        await ledger.record_vote("alice", 0, 9)
        assert ledger.votes("alice") == (0, 9, 3 * WAD, clock.now)
        assert ledger.user_bets("alice") == 9
        assert ledger.user_bets("nobody") == 0

    @pytest.mark.trio
    async def test_preview_matches_recorded(self, ledger, token):
        await fund(token, "alice", ledger, 100)
        await fund(token, "bob", ledger, 100)
        await ledger.record_vote("alice", 0, 4)

        preview = await ledger.preview_vote_weight("bob", 100)
        vote = await ledger.record_vote("bob", 1, 100)
        assert preview == vote.weight

    def test_is_active(self, ledger, clock):
        assert ledger.is_active()
        clock.advance(DAY - 1)
        assert ledger.is_active()
        clock.advance(1)
        assert not ledger.is_active()

    def test_info(self, ledger):
        info = ledger.get_info()
        assert info.question == "Ship it?"
        assert info.options == ["Yes", "No"]
        assert info.is_active is True
        assert info.total_voters == 0
        assert info.creator == "alice"
        assert ledger.get_option_count() == 2

    @pytest.mark.trio
    async def test_to_dict(self, ledger, token):
        await fund(token, "bob", ledger, 16)
        await ledger.record_vote("bob", 1, 16)

        data = ledger.to_dict()
        assert data["results"] == [0, 8 * WAD]
        assert data["winner"] == {"option": 1, "weight": 8 * WAD}
        assert data["total_paid"] == 0
