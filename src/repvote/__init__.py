"""
repvote - Reputation-weighted quadratic voting

Voters stake credits on one option of a poll. A vote weighs
sqrt(credits) * reputation multiplier, clamped to a multiple of the
poll's running average weight. When the poll ends, voters on the winning
option claim the prize pool in proportion to their weight.

Usage:
    import trio
    from repvote import VotingService

    async def main():
        async with trio.open_nursery() as nursery:
            service = VotingService.in_memory()
            service.bind(nursery)

            poll_id = service.create_poll("Ship it?", ["Yes", "No"])
            await service.faucet("alice")
            handle = service.submit_vote("alice", poll_id, option=0, credits=9)
            await handle.wait()

            print(await service.get_results(poll_id))

    trio.run(main)

REST API Usage:
    from repvote.api import VotingAPI

    api = VotingAPI(service, host="0.0.0.0", port=8080)
    nursery.start_soon(api.start)

Metrics Usage:
    service.metrics.collect()    # Prometheus text
"""

from .config import VotingConfig, WAD
from .errors import (
    RepVoteError,
    ValidationError,
    StateError,
    ResourceError,
    TransportError,
    UserCancelled,
    InvalidTransition,
)
from .gateway import LedgerGateway, InProcessGateway, PendingTransaction
from .metrics import MetricsCollector
from .service import VotingService, OutcomeHandle, OutcomeStatus
from .protocol import (
    PollFactory,
    PollLedger,
    NotificationHub,
    InMemoryReputationOracle,
    InMemoryStakeToken,
    VoteSettlement,
    ClaimSettlement,
    SettlementState,
)

__version__ = "0.1.0"

__all__ = [
    "VotingConfig",
    "WAD",
    "RepVoteError",
    "ValidationError",
    "StateError",
    "ResourceError",
    "TransportError",
    "UserCancelled",
    "InvalidTransition",
    "LedgerGateway",
    "InProcessGateway",
    "PendingTransaction",
    "MetricsCollector",
    "VotingService",
    "OutcomeHandle",
    "OutcomeStatus",
    "PollFactory",
    "PollLedger",
    "NotificationHub",
    "InMemoryReputationOracle",
    "InMemoryStakeToken",
    "VoteSettlement",
    "ClaimSettlement",
    "SettlementState",
]
