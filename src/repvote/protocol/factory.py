"""
repvote/protocol/factory.py

Poll creation and discovery.

Usage:
    factory = PollFactory(oracle, token, hub=hub)
    poll_id = factory.create_poll(
        question="What should we prioritize next?",
        options=["Security audit", "Mobile app"],
        duration_seconds=7 * 86400,
        max_weight_cap=10,
    )
    ledger = factory.get_poll(poll_id)
    factory.get_recent_polls(10)   # newest first
"""

import hashlib
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from ..config import (
    DEFAULT_MAX_CREDITS_PER_VOTE,
    MAX_OPTIONS,
    MAX_POLL_DURATION,
    MAX_QUESTION_LENGTH,
    MAX_WEIGHT_CAP,
    MIN_OPTIONS,
    MIN_POLL_DURATION,
    MIN_WEIGHT_CAP,
    RECENT_POLLS_LIMIT,
)
from ..errors import InvalidPollConfig, PollNotFound
from .ledger import PollInfo, PollLedger
from .notifications import NotificationHub, PollCreated
from .reputation import ReputationOracle
from .token import StakeToken

logger = logging.getLogger("repvote.protocol.factory")


def generate_poll_id(question: str, creator: str, timestamp: int, nonce: int) -> str:
    """Generate unique poll ID."""
    content = f"{question}:{creator}:{timestamp}:{nonce}"
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def validate_poll_config(
    question: str,
    options: List[str],
    duration_seconds: int,
    max_weight_cap: int,
) -> List[str]:
    """
    Validate poll parameters.

    Blank options are dropped before counting.

    Returns:
        The cleaned option labels

    Raises:
        InvalidPollConfig: a parameter is out of bounds
    """
    if not question or not question.strip():
        raise InvalidPollConfig("Question is required")
    if len(question) > MAX_QUESTION_LENGTH:
        raise InvalidPollConfig(f"Question longer than {MAX_QUESTION_LENGTH} characters")

    cleaned = [option.strip() for option in options if option and option.strip()]
    if len(cleaned) < MIN_OPTIONS or len(cleaned) > MAX_OPTIONS:
        raise InvalidPollConfig(f"Polls need {MIN_OPTIONS}-{MAX_OPTIONS} options, got {len(cleaned)}")

    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
        raise InvalidPollConfig("Duration must be whole seconds")
    if duration_seconds < MIN_POLL_DURATION or duration_seconds > MAX_POLL_DURATION:
        raise InvalidPollConfig("Duration must be between 1 and 30 days")

    if isinstance(max_weight_cap, bool) or not isinstance(max_weight_cap, int):
        raise InvalidPollConfig("Weight cap must be a whole number")
    if max_weight_cap < MIN_WEIGHT_CAP or max_weight_cap > MAX_WEIGHT_CAP:
        raise InvalidPollConfig(f"Weight cap must be between {MIN_WEIGHT_CAP} and {MAX_WEIGHT_CAP}")

    return cleaned


class PollFactory:
    """
    Creates poll ledgers and keeps a bounded index of recent polls.

    Every poll ever created stays reachable through ``get_poll``; only the
    recency index used for discovery is bounded.
    """

    def __init__(
        self,
        oracle: ReputationOracle,
        token: StakeToken,
        hub: Optional[NotificationHub] = None,
        clock: Callable[[], float] = time.time,
        max_credits_per_vote: int = DEFAULT_MAX_CREDITS_PER_VOTE,
        recent_limit: int = RECENT_POLLS_LIMIT,
    ):
        self.oracle = oracle
        self.token = token
        self.hub = hub
        self.max_credits_per_vote = max_credits_per_vote
        self._clock = clock
        self._polls: Dict[str, PollLedger] = {}
        self._recent: Deque[str] = deque(maxlen=recent_limit)

    def create_poll(
        self,
        question: str,
        options: List[str],
        duration_seconds: int,
        max_weight_cap: int,
        creator: str = "",
    ) -> str:
        """
        Create a new poll.

        Args:
            question: Poll question (max 200 characters)
            options: 2-10 option labels
            duration_seconds: Voting period, 1-30 days
            max_weight_cap: Cap factor, 2-20
            creator: Creating identity

        Returns:
            New poll ID
        """
        cleaned = validate_poll_config(question, options, duration_seconds, max_weight_cap)
        now = int(self._clock())
        poll_id = generate_poll_id(question, creator, now, len(self._polls))
        end_time = now + duration_seconds

        ledger = PollLedger(
            poll_id=poll_id,
            question=question.strip(),
            options=cleaned,
            end_time=end_time,
            max_weight_cap=max_weight_cap,
            oracle=self.oracle,
            token=self.token,
            hub=self.hub,
            clock=self._clock,
            max_credits_per_vote=self.max_credits_per_vote,
            creator=creator,
            created_at=now,
        )
        self._polls[poll_id] = ledger
        self._recent.append(poll_id)

        logger.info(f"Created poll {poll_id}: {question!r} ({len(cleaned)} options, ends {end_time})")
        if self.hub is not None:
            self.hub.publish(PollCreated(
                poll_id=poll_id,
                question=ledger.question,
                creator=creator,
                end_time=end_time,
                timestamp=now,
            ))
        return poll_id

    def get_poll(self, poll_id: str) -> PollLedger:
        ledger = self._polls.get(poll_id)
        if ledger is None:
            raise PollNotFound(f"Unknown poll {poll_id}")
        return ledger

    def get_poll_count(self) -> int:
        return len(self._polls)

    def get_recent_polls(self, count: int) -> List[str]:
        """Up to ``count`` poll IDs, newest first."""
        if count <= 0:
            return []
        recent = list(self._recent)
        recent.reverse()
        return recent[:count]

    def get_poll_info(self, poll_id: str) -> PollInfo:
        return self.get_poll(poll_id).get_info()

    def all_polls(self) -> List[PollLedger]:
        return list(self._polls.values())
