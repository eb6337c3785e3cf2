"""
repvote/protocol/ledger.py

Authoritative per-poll state.

A PollLedger owns one poll's tallies, voter registry, prize pool and
timing. Vote recording is serialized by a lock private to the poll, so
every vote sees the totals of all votes recorded before it and the weight
cap cannot be gamed by ordering. Ledgers of different polls never block
each other.

Usage:
    ledger = PollLedger(
        poll_id="a1b2",
        question="Ship it?",
        options=["Yes", "No"],
        end_time=int(time.time()) + 86400,
        max_weight_cap=10,
        oracle=oracle,
        token=token,
    )
    await token.approve("alice", ledger.address, 9)
    vote = await ledger.record_vote("alice", option=0, credits=9)

    list(ledger.get_results())   # per-option weights, option order
    ledger.get_winner()          # (option, weight)
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import trio

from ..config import DEFAULT_MAX_CREDITS_PER_VOTE
from ..errors import AlreadyVoted, PollClosed
from .notifications import NotificationHub, VoteRecorded
from .payout import ClaimBook, ClaimRecord, determine_winner
from .reputation import ReputationOracle
from .token import StakeToken
from .weights import (
    apply_weight_cap,
    clamp_multiplier,
    preview_vote_weight,
    quadratic_weight,
    validate_vote_request,
)

logger = logging.getLogger("repvote.protocol.ledger")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class Vote:
    """A recorded vote; immutable."""
    identity: str
    option: int
    credits: int
    weight: int
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)

    def as_tuple(self) -> Tuple[int, int, int, int]:
        """(option, credits, weight, timestamp)"""
        return (self.option, self.credits, self.weight, self.timestamp)


@dataclass
class PollInfo:
    """Read-only summary of a poll."""
    poll_id: str
    question: str
    options: List[str]
    end_time: int
    is_active: bool
    total_voters: int
    total_weighted_votes: int
    total_bet_amount: int
    max_weight_cap: int
    creator: str = ""
    created_at: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class TallyView(Sequence):
    """
    Per-option weighted tallies of a poll, in option order.

    A live view: nothing is copied up front and each iteration reads the
    ledger again, so the same view can be iterated any number of times.
    """

    def __init__(self, ledger: "PollLedger"):
        self._ledger = ledger

    def __len__(self) -> int:
        return self._ledger.option_count

    def __getitem__(self, index):
        return self._ledger._tallies[index]

    def __iter__(self) -> Iterator[int]:
        for index in range(len(self)):
            yield self._ledger._tallies[index]

    def __repr__(self) -> str:
        return f"TallyView({list(self)!r})"


# ============================================================================
# POLL LEDGER
# ============================================================================

class PollLedger:
    """
    Tallies, voters and prize pool of a single poll.

    Args:
        poll_id: Poll identifier
        question: Poll question
        options: Option labels (2-10, validated by the factory)
        end_time: Unix time voting closes
        max_weight_cap: Cap factor relative to the running average weight
        oracle: Reputation oracle read at vote time
        token: Stake token the credits are pulled from
        hub: Notification hub for VoteRecorded / ClaimPaid
        clock: Wall clock (seconds), injectable for tests
        max_credits_per_vote: Upper bound on credits in one vote
        creator: Identity that created the poll
        created_at: Creation time
    """

    def __init__(
        self,
        poll_id: str,
        question: str,
        options: List[str],
        end_time: int,
        max_weight_cap: int,
        oracle: ReputationOracle,
        token: StakeToken,
        hub: Optional[NotificationHub] = None,
        clock: Callable[[], float] = time.time,
        max_credits_per_vote: int = DEFAULT_MAX_CREDITS_PER_VOTE,
        creator: str = "",
        created_at: Optional[int] = None,
    ):
        self.poll_id = poll_id
        self.question = question
        self.options = list(options)
        self.end_time = end_time
        self.max_weight_cap = max_weight_cap
        self.oracle = oracle
        self.token = token
        self.hub = hub
        self.max_credits_per_vote = max_credits_per_vote
        self.creator = creator
        self._clock = clock
        self.created_at = created_at if created_at is not None else self.now()

        # Token account holding the prize pool
        self.address = f"poll:{poll_id}"

        self._tallies: List[int] = [0] * len(self.options)
        self._votes: Dict[str, Vote] = {}
        self._total_voters = 0
        self._total_weighted = 0
        self._total_bet = 0
        self._write_lock = trio.Lock()
        self._claims = ClaimBook(self)

    def now(self) -> int:
        return int(self._clock())

    # ========================================================================
    # WRITES
    # ========================================================================

    async def record_vote(self, identity: str, option: int, credits: int) -> Vote:
        """
        Record an identity's single vote on this poll.

        Args:
            identity: Voter
            option: Option index
            credits: Credits to stake

        Returns:
            The recorded Vote

        Raises:
            PollClosed: voting has ended
            AlreadyVoted: identity already has a vote here
            InvalidOption, InvalidCredits, CreditsExceedMax: bad request
            InsufficientAllowance, InsufficientBalance: credits cannot be pulled
        """
        async with self._write_lock:
            now = self.now()
            if now >= self.end_time:
                raise PollClosed(f"Poll {self.poll_id} closed at {self.end_time}")
            if identity in self._votes:
                raise AlreadyVoted(f"{identity} already voted on poll {self.poll_id}")
            validate_vote_request(option, self.option_count, credits, self.max_credits_per_vote)

            multiplier = clamp_multiplier(await self.oracle.get_multiplier(identity))
            raw_weight = quadratic_weight(credits, multiplier)
            weight = apply_weight_cap(
                raw_weight, self.max_weight_cap, self._total_weighted, self._total_voters
            )

            await self.token.transfer_from(self.address, identity, self.address, credits)

            # Commit; nothing below awaits
            vote = Vote(identity=identity, option=option, credits=credits, weight=weight, timestamp=now)
            self._votes[identity] = vote
            self._tallies[option] += weight
            self._total_voters += 1
            self._total_weighted += weight
            self._total_bet += credits

        if weight != raw_weight:
            logger.info(f"Vote by {identity} on {self.poll_id} capped {raw_weight} -> {weight}")
        logger.info(f"Recorded vote on {self.poll_id}: {identity} option={option} credits={credits}")

        if self.hub is not None:
            self.hub.publish(VoteRecorded(
                poll_id=self.poll_id,
                identity=identity,
                option=option,
                credits=credits,
                weight=weight,
                timestamp=now,
            ))
        return vote

    async def claim_winnings(self, identity: str) -> ClaimRecord:
        """Pay out an identity's share of the pool (see ClaimBook.claim)."""
        return await self._claims.claim(identity)

    # ========================================================================
    # QUERIES
    # ========================================================================

    @property
    def option_count(self) -> int:
        return len(self.options)

    @property
    def total_voters(self) -> int:
        return self._total_voters

    @property
    def total_weighted_votes(self) -> int:
        return self._total_weighted

    @property
    def total_bet_amount(self) -> int:
        return self._total_bet

    def is_active(self) -> bool:
        return self.now() < self.end_time

    def get_options(self) -> List[str]:
        return list(self.options)

    def get_option_count(self) -> int:
        return self.option_count

    def get_results(self) -> TallyView:
        """Per-option weighted tallies in option order."""
        return TallyView(self)

    def get_winner(self) -> Tuple[int, int]:
        """(option, weight) with the highest tally; lowest index wins ties."""
        return determine_winner(self._tallies)

    def get_vote(self, identity: str) -> Optional[Vote]:
        return self._votes.get(identity)

    def has_voted(self, identity: str) -> bool:
        return identity in self._votes

    def votes(self, identity: str) -> Tuple[int, int, int, int]:
        """(option, credits, weight, timestamp); all zero when absent."""
        vote = self._votes.get(identity)
        if vote is None:
            return (0, 0, 0, 0)
        return vote.as_tuple()

    def iter_votes(self) -> Iterator[Vote]:
        return iter(list(self._votes.values()))

    def user_bets(self, identity: str) -> int:
        vote = self._votes.get(identity)
        return vote.credits if vote else 0

    def has_claimed(self, identity: str) -> bool:
        return self._claims.has_claimed(identity)

    def get_claim(self, identity: str) -> Optional[ClaimRecord]:
        return self._claims.get_record(identity)

    def unclaimed_amount(self) -> int:
        return self._claims.unclaimed_amount()

    def preview_payouts(self) -> Dict[str, int]:
        return self._claims.preview_payouts()

    async def preview_vote_weight(self, identity: str, credits: int) -> int:
        """Weight a vote by identity would receive if recorded now."""
        multiplier = await self.oracle.get_multiplier(identity)
        return preview_vote_weight(
            credits, multiplier, self.max_weight_cap, self._total_weighted, self._total_voters
        )

    def get_info(self) -> PollInfo:
        return PollInfo(
            poll_id=self.poll_id,
            question=self.question,
            options=self.get_options(),
            end_time=self.end_time,
            is_active=self.is_active(),
            total_voters=self._total_voters,
            total_weighted_votes=self._total_weighted,
            total_bet_amount=self._total_bet,
            max_weight_cap=self.max_weight_cap,
            creator=self.creator,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict:
        winner, winning_weight = self.get_winner()
        return {
            **self.get_info().to_dict(),
            "results": list(self.get_results()),
            "winner": {"option": winner, "weight": winning_weight},
            "total_paid": self._claims.total_paid,
        }
