"""
repvote/protocol/reputation.py

Reputation oracle consumed by poll ledgers.

The ledger consumes reputation as a read-only oracle: a multiplier in
[0.3x, 3.0x] applied to quadratic vote weights, plus an effective score
used for display and the leaderboard. How reputation accrues and decays
is owned by the oracle, not by repvote.

Multipliers are fixed-point integers (1.0x == WAD).
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from ..config import WAD, DEFAULT_MULTIPLIER
from .weights import clamp_multiplier

logger = logging.getLogger("repvote.protocol.reputation")


@dataclass(frozen=True)
class ReputationSnapshot:
    """Reputation of one identity at the moment it was read."""
    identity: str
    effective_reputation: int
    multiplier: int
    last_vote: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data['multiplier_display'] = round(self.multiplier / WAD, 2)
        return data


class ReputationOracle(ABC):
    """Black-box reputation source."""

    @abstractmethod
    async def get_multiplier(self, identity: str) -> int:
        """Fixed-point multiplier in [0.3x, 3.0x]."""

    @abstractmethod
    async def get_user_stats(self, identity: str) -> ReputationSnapshot:
        """Effective reputation, multiplier and last vote timestamp."""


class InMemoryReputationOracle(ReputationOracle):
    """
    Dictionary-backed oracle for tests and the demo server.

    Unknown identities read as reputation 0 with a 1.0x multiplier.

    Usage:
        oracle = InMemoryReputationOracle()
        oracle.set_reputation("alice", effective_reputation=120, multiplier=2 * WAD)
        await oracle.get_multiplier("alice")  # 2 * WAD
    """

    def __init__(self, default_multiplier: int = DEFAULT_MULTIPLIER):
        self.default_multiplier = default_multiplier
        self._stats: Dict[str, ReputationSnapshot] = {}

    def set_reputation(
        self,
        identity: str,
        effective_reputation: int = 0,
        multiplier: Optional[int] = None,
        last_vote: int = 0,
    ) -> ReputationSnapshot:
        snapshot = ReputationSnapshot(
            identity=identity,
            effective_reputation=effective_reputation,
            multiplier=clamp_multiplier(multiplier if multiplier is not None else self.default_multiplier),
            last_vote=last_vote,
        )
        self._stats[identity] = snapshot
        return snapshot

    def identities(self) -> List[str]:
        return list(self._stats)

    async def get_multiplier(self, identity: str) -> int:
        snapshot = self._stats.get(identity)
        if snapshot is None:
            return self.default_multiplier
        return snapshot.multiplier

    async def get_user_stats(self, identity: str) -> ReputationSnapshot:
        snapshot = self._stats.get(identity)
        if snapshot is None:
            return ReputationSnapshot(identity=identity, effective_reputation=0, multiplier=self.default_multiplier)
        return snapshot
