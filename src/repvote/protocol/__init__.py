"""
repvote/protocol/

Voting engine: weights, per-poll ledgers, settlement, payouts and
notifications.
"""

from .weights import (
    quadratic_weight,
    weight_cap,
    apply_weight_cap,
    preview_vote_weight,
    validate_vote_request,
    clamp_multiplier,
    format_weight,
    to_wad,
    to_float,
)
from .reputation import ReputationOracle, InMemoryReputationOracle, ReputationSnapshot
from .token import StakeToken, InMemoryStakeToken
from .notifications import (
    NotificationHub,
    PollWatch,
    watch_poll,
    PollCreated,
    VoteRecorded,
    Settled,
    ClaimPaid,
    SnapshotChanged,
)
from .payout import ClaimBook, ClaimRecord, calculate_payout, determine_winner
from .ledger import PollLedger, PollInfo, Vote, TallyView
from .factory import PollFactory, generate_poll_id, validate_poll_config
from .settlement import (
    SettlementState,
    Transition,
    VoteSettlement,
    ClaimSettlement,
    always_consent,
)
from .readmodels import (
    ReadModel,
    ReadModelRegistry,
    results_loader,
    vote_status_loader,
    leaderboard_loader,
)

__all__ = [
    "quadratic_weight",
    "weight_cap",
    "apply_weight_cap",
    "preview_vote_weight",
    "validate_vote_request",
    "clamp_multiplier",
    "format_weight",
    "to_wad",
    "to_float",
    "ReputationOracle",
    "InMemoryReputationOracle",
    "ReputationSnapshot",
    "StakeToken",
    "InMemoryStakeToken",
    "NotificationHub",
    "PollWatch",
    "watch_poll",
    "PollCreated",
    "VoteRecorded",
    "Settled",
    "ClaimPaid",
    "SnapshotChanged",
    "ClaimBook",
    "ClaimRecord",
    "calculate_payout",
    "determine_winner",
    "PollLedger",
    "PollInfo",
    "Vote",
    "TallyView",
    "PollFactory",
    "generate_poll_id",
    "validate_poll_config",
    "SettlementState",
    "Transition",
    "VoteSettlement",
    "ClaimSettlement",
    "always_consent",
    "ReadModel",
    "ReadModelRegistry",
    "results_loader",
    "vote_status_loader",
    "leaderboard_loader",
]
