"""
repvote/tests/conftest.py

Shared fixtures: in-memory oracle, token, hub and a controllable wall clock.
"""

import pytest

from repvote.config import WAD
from repvote.protocol.factory import PollFactory
from repvote.protocol.notifications import NotificationHub
from repvote.protocol.reputation import InMemoryReputationOracle
from repvote.protocol.token import InMemoryStakeToken

DAY = 24 * 60 * 60


class FakeClock:
    """Wall clock for ledgers; only moves when told to."""

    def __init__(self, start: int = 1_700_000_000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    oracle = InMemoryReputationOracle()
    oracle.set_reputation("alice", effective_reputation=100, multiplier=WAD)
    oracle.set_reputation("bob", effective_reputation=250, multiplier=2 * WAD)
    oracle.set_reputation("carol", effective_reputation=0, multiplier=WAD)
    return oracle


@pytest.fixture
def token():
    return InMemoryStakeToken()


@pytest.fixture
def hub():
    return NotificationHub()


@pytest.fixture
def factory(oracle, token, hub, clock):
    return PollFactory(oracle, token, hub=hub, clock=clock)


@pytest.fixture
def ledger(factory):
    poll_id = factory.create_poll("Ship it?", ["Yes", "No"], DAY, 10, creator="alice")
    return factory.get_poll(poll_id)


async def fund(token, identity: str, ledger, amount: int, approve: bool = True) -> None:
    """Mint tokens and optionally approve the ledger to pull them."""
    token.mint(identity, amount)
    if approve:
        await token.approve(identity, ledger.address, amount)
