"""
repvote/tests/test_gateway.py

Unit tests for the in-process submission gateway.
"""

import pytest
import trio

from repvote.errors import AlreadyVoted, InsufficientAllowance
from repvote.gateway import InProcessGateway, PendingTransaction

from conftest import fund


class TestPendingTransaction:
    """Test PendingTransaction resolution."""

    @pytest.mark.trio
    async def test_resolve(self):
        tx = PendingTransaction("tx-1", "vote", "alice", "p1")
        assert not tx.done
        tx.resolve("ok")
        assert tx.succeeded
        assert tx.result == "ok"
        assert await tx.wait() == "ok"

    @pytest.mark.trio
    async def test_fail(self):
        tx = PendingTransaction("tx-1", "vote", "alice", "p1")
        tx.fail(AlreadyVoted("twice"))
        assert tx.done and not tx.succeeded
        with pytest.raises(AlreadyVoted):
            await tx.wait()
        assert "failed" in repr(tx)


class TestInProcessGateway:
    """Test InProcessGateway."""

    @pytest.mark.trio
    async def test_requires_bind(self, factory, ledger):
        gateway = InProcessGateway(factory)
        with pytest.raises(RuntimeError):
            await gateway.submit_claim("alice", ledger.poll_id)

    @pytest.mark.trio
    async def test_approve_then_vote(self, factory, ledger, token):
        await fund(token, "alice", ledger, 9, approve=False)
        gateway = InProcessGateway(factory)

        async with trio.open_nursery() as nursery:
            gateway.bind(nursery)
            approve_tx = await gateway.submit_approve("alice", ledger.poll_id, 9)
            assert await approve_tx.wait() is True
            assert await gateway.allowance("alice", ledger.poll_id) == 9

            vote_tx = await gateway.submit_vote("alice", ledger.poll_id, 0, 9)
            vote = await vote_tx.wait()

        assert vote.credits == 9
        assert (await gateway.get_vote(ledger.poll_id, "alice")) == vote
        assert gateway.submissions == {"approve": 1, "vote": 1, "claim": 0}
        assert [tx.tx_id for tx in gateway.transactions] == ["tx-1", "tx-2"]

    @pytest.mark.trio
    async def test_reverted_vote(self, factory, ledger, token):
        await fund(token, "alice", ledger, 9, approve=False)
        gateway = InProcessGateway(factory)

        async with trio.open_nursery() as nursery:
            gateway.bind(nursery)
            tx = await gateway.submit_vote("alice", ledger.poll_id, 0, 9)
            with pytest.raises(InsufficientAllowance):
                await tx.wait()

        assert await gateway.get_vote(ledger.poll_id, "alice") is None
        assert await gateway.balance_of("alice") == 9

    @pytest.mark.trio
    async def test_confirmation_delay(self, factory, ledger, token, autojump_clock):
        await fund(token, "alice", ledger, 9)
        gateway = InProcessGateway(factory, confirmation_delay=30)

        async with trio.open_nursery() as nursery:
            gateway.bind(nursery)
            start = trio.current_time()
            tx = await gateway.submit_vote("alice", ledger.poll_id, 0, 9)
            await trio.sleep(10)
            assert not tx.done
            await tx.wait()
            assert trio.current_time() - start >= 30

    @pytest.mark.trio
    async def test_reads(self, factory, ledger):
        gateway = InProcessGateway(factory)
        info = await gateway.get_poll_info(ledger.poll_id)
        assert info.question == "Ship it?"
        assert await gateway.get_results(ledger.poll_id) == [0, 0]
        assert await gateway.get_winner(ledger.poll_id) == (0, 0)
        assert await gateway.has_claimed(ledger.poll_id, "bob") is False
        stats = await gateway.get_user_stats("bob")
        assert stats.effective_reputation == 250
        assert await gateway.get_multiplier("bob") == stats.multiplier
