"""
repvote/protocol/settlement.py

Vote and claim settlement state machines.

Casting a vote is one logical request fulfilled over several external
confirmations:

    IDLE -> ALLOWANCE_CHECK -> VOTE_PENDING ------------------------+
                 |                                                  |
                 +-> NEEDS_APPROVAL -> APPROVAL_PENDING             |
                                          -> APPROVAL_CONFIRMED     |
                                          -> VOTE_PENDING ----------+
                                                                    v
                                           VOTE_CONFIRMED -> SETTLED

REJECTED (the voter declined) and FAILED (the ledger refused) end the
machine early.

A confirmation wait that times out raises ConfirmationTimeout and leaves
the machine in its pending state. Running the machine again resumes it:
it re-reads ledger state (does the vote exist? is the allowance granted?)
before deciding whether anything must be resubmitted. Writes are never
resubmitted blindly.

Usage:
    machine = VoteSettlement(
        identity="alice", poll_id=poll_id, option=0, credits=9,
        gateway=gateway, hub=hub, confirmation_timeout=30,
    )
    try:
        vote = await machine.run()
    except ConfirmationTimeout:
        vote = await machine.run()    # resumes, no duplicate submission
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import trio

from ..config import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_MAX_CREDITS_PER_VOTE
from ..errors import (
    AlreadyClaimed,
    AlreadyVoted,
    ConfirmationTimeout,
    InsufficientBalance,
    InvalidTransition,
    NothingToClaim,
    PollClosed,
    PollStillActive,
    RepVoteError,
    TransportError,
    UserCancelled,
)
from ..retry import RetryConfig, retry_read
from .notifications import NotificationHub, Settled
from .weights import validate_vote_request

logger = logging.getLogger("repvote.protocol.settlement")


# (action, amount) -> True to go ahead; stands in for the voter's signature prompt
ConsentHook = Callable[[str, int], Awaitable[bool]]


async def always_consent(action: str, amount: int) -> bool:
    return True


class SettlementState(Enum):
    """States of vote and claim settlement."""
    IDLE = "idle"
    ALLOWANCE_CHECK = "allowance_check"
    NEEDS_APPROVAL = "needs_approval"
    APPROVAL_PENDING = "approval_pending"
    APPROVAL_CONFIRMED = "approval_confirmed"
    VOTE_PENDING = "vote_pending"
    VOTE_CONFIRMED = "vote_confirmed"
    CLAIM_PENDING = "claim_pending"
    CLAIM_CONFIRMED = "claim_confirmed"
    SETTLED = "settled"
    REJECTED = "rejected"
    FAILED = "failed"


TERMINAL_STATES = {SettlementState.SETTLED, SettlementState.REJECTED, SettlementState.FAILED}


@dataclass(frozen=True)
class Transition:
    """One recorded state change."""
    source: SettlementState
    target: SettlementState
    reason: str
    timestamp: float

    def to_dict(self) -> dict:
        return {
            "from": self.source.value,
            "to": self.target.value,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


class _SettlementMachine:
    """Shared driver: transition bookkeeping, bounded waits, cancellation."""

    TRANSITIONS: Dict[SettlementState, Set[SettlementState]] = {}
    kind = "settlement"

    def __init__(
        self,
        identity: str,
        poll_id: str,
        gateway: Any,
        hub: Optional[NotificationHub] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        consent: ConsentHook = always_consent,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.identity = identity
        self.poll_id = poll_id
        self.gateway = gateway
        self.hub = hub
        self.confirmation_timeout = confirmation_timeout
        self.consent = consent
        self.retry_config = retry_config or RetryConfig()

        self.state = SettlementState.IDLE
        self.history: List[Transition] = []
        self.error: Optional[BaseException] = None
        self.result: Any = None
        self.attempts = 0

        self._resuming = False
        self._cancel_requested = False
        self._write_submitted = False
        self._wait_scope: Optional[trio.CancelScope] = None
        self._steps: Dict[SettlementState, Callable[[], Awaitable[None]]] = {}

    # ========================================================================
    # DRIVER
    # ========================================================================

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_pending(self) -> bool:
        return not self.is_terminal and self.state != SettlementState.IDLE

    async def run(self) -> Any:
        """
        Drive the machine until it settles.

        Returns:
            The confirmed ledger result (Vote or ClaimRecord)

        Raises:
            TransportError: a wait timed out or a read kept failing; the
                machine keeps its state and ``run`` may be called again
            UserCancelled: the voter declined (state REJECTED)
            RepVoteError: the request was refused (state FAILED)
        """
        if self.state == SettlementState.SETTLED:
            return self.result
        if self.is_terminal:
            raise InvalidTransition(f"{self.kind} settlement already {self.state.value}")

        self.attempts += 1
        self._resuming = self.attempts > 1
        try:
            while self.state != SettlementState.SETTLED:
                # A write found on the ledger outlives a late cancel request
                if self._cancellable():
                    self._raise_if_cancelled()
                await self._steps[self.state]()
        except TransportError as e:
            self.error = e
            logger.warning(f"{self.kind} for {self.identity} on {self.poll_id} interrupted in {self.state.value}: {e}")
            raise
        except UserCancelled as e:
            self.error = e
            self._transition(SettlementState.REJECTED, str(e))
            raise
        except RepVoteError as e:
            self.error = e
            self._transition(SettlementState.FAILED, f"{e.code}: {e}")
            raise

        self.error = None
        return self.result

    def cancel(self) -> bool:
        """
        Request cancellation.

        Only honoured before the final write is submitted; once the vote or
        claim is in flight it may still land, so the machine keeps waiting.

        Returns:
            True if the cancellation was accepted
        """
        if self.is_terminal or self._write_submitted or not self._cancellable():
            return False
        self._cancel_requested = True
        if self._wait_scope is not None:
            self._wait_scope.cancel()
        return True

    def _cancellable(self) -> bool:
        return True

    def _raise_if_cancelled(self) -> None:
        if self._cancel_requested:
            raise UserCancelled(f"{self.identity} cancelled {self.kind} on {self.poll_id}")

    async def _submit_final(self, submit: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Submit the vote or claim write; cancellation is refused from here on."""
        self._raise_if_cancelled()
        self._write_submitted = True
        return await submit(*args)

    def _transition(self, target: SettlementState, reason: str = "") -> None:
        if target not in self.TRANSITIONS.get(self.state, set()):
            raise InvalidTransition(f"{self.state.value} -> {target.value} not allowed")
        self.history.append(Transition(self.state, target, reason, time.time()))
        logger.info(f"{self.kind} {self.identity}@{self.poll_id}: {self.state.value} -> {target.value} {reason}".rstrip())
        self.state = target

    async def _read(self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        return await retry_read(operation, func, *args, config=self.retry_config)

    async def _confirm(self, tx: Any) -> Any:
        """Wait for a pending transaction, bounded by the confirmation timeout."""
        with trio.CancelScope() as scope:
            self._wait_scope = scope
            try:
                with trio.fail_after(self.confirmation_timeout):
                    return await tx.wait()
            except trio.TooSlowError:
                self._resuming = True
                raise ConfirmationTimeout(
                    f"No confirmation for {tx.tx_id} within {self.confirmation_timeout}s"
                ) from None
            finally:
                self._wait_scope = None
        raise UserCancelled(f"{self.identity} cancelled while waiting for {tx.tx_id}")

    async def _ask_consent(self, action: str, amount: int) -> None:
        if not await self.consent(action, amount):
            raise UserCancelled(f"{self.identity} declined {action}")

    def _publish_settled(self) -> None:
        if self.hub is not None:
            self.hub.publish(Settled(poll_id=self.poll_id, identity=self.identity, kind=self.kind))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "identity": self.identity,
            "poll_id": self.poll_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "error": self.error.to_dict() if isinstance(self.error, RepVoteError) else None,
            "history": [t.to_dict() for t in self.history],
        }


# ============================================================================
# VOTE SETTLEMENT
# ============================================================================

class VoteSettlement(_SettlementMachine):
    """
    Settlement of one identity's vote on one poll.

    Args:
        identity: Voter
        poll_id: Poll to vote on
        option: Option index
        credits: Credits to stake
        gateway: LedgerGateway used for reads and submissions
        hub: Hub receiving the Settled notification
        confirmation_timeout: Seconds to wait for each confirmation
        consent: Hook asked before each write ("approve" / "vote")
        retry_config: Backoff for reads
        max_credits_per_vote: Local credit bound checked before submission
    """

    kind = "vote"

    TRANSITIONS = {
        SettlementState.IDLE: {
            SettlementState.ALLOWANCE_CHECK, SettlementState.VOTE_CONFIRMED,
            SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.ALLOWANCE_CHECK: {
            SettlementState.VOTE_PENDING, SettlementState.NEEDS_APPROVAL,
            SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.NEEDS_APPROVAL: {
            SettlementState.APPROVAL_PENDING, SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.APPROVAL_PENDING: {
            SettlementState.APPROVAL_CONFIRMED, SettlementState.NEEDS_APPROVAL,
            SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.APPROVAL_CONFIRMED: {
            SettlementState.VOTE_PENDING, SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.VOTE_PENDING: {
            SettlementState.VOTE_CONFIRMED, SettlementState.ALLOWANCE_CHECK, SettlementState.FAILED,
        },
        SettlementState.VOTE_CONFIRMED: {SettlementState.SETTLED},
    }

    def __init__(
        self,
        identity: str,
        poll_id: str,
        option: int,
        credits: int,
        gateway: Any,
        hub: Optional[NotificationHub] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        consent: ConsentHook = always_consent,
        retry_config: Optional[RetryConfig] = None,
        max_credits_per_vote: int = DEFAULT_MAX_CREDITS_PER_VOTE,
    ):
        super().__init__(identity, poll_id, gateway, hub, confirmation_timeout, consent, retry_config)
        self.option = option
        self.credits = credits
        self.max_credits_per_vote = max_credits_per_vote
        self.approval_tx = None
        self.vote_tx = None
        self._steps = {
            SettlementState.IDLE: self._begin,
            SettlementState.ALLOWANCE_CHECK: self._check_allowance,
            SettlementState.NEEDS_APPROVAL: self._request_approval,
            SettlementState.APPROVAL_PENDING: self._await_approval,
            SettlementState.APPROVAL_CONFIRMED: self._submit_vote,
            SettlementState.VOTE_PENDING: self._await_vote,
            SettlementState.VOTE_CONFIRMED: self._settle,
        }

    def matches(self, option: int, credits: int) -> bool:
        return self.option == option and self.credits == credits

    def _cancellable(self) -> bool:
        return self.state not in (SettlementState.VOTE_PENDING, SettlementState.VOTE_CONFIRMED)

    async def _existing_vote(self):
        return await self._read("vote", self.gateway.get_vote, self.poll_id, self.identity)

    async def _begin(self) -> None:
        # A vote already recorded for this identity is either ours from an
        # ambiguous earlier attempt or a conflicting one
        existing = await self._existing_vote()
        if existing is not None:
            if self.vote_tx is not None:
                self.result = existing
                self._transition(SettlementState.VOTE_CONFIRMED, "vote found on ledger")
                return
            raise AlreadyVoted(f"{self.identity} already voted on poll {self.poll_id}")

        info = await self._read("poll_info", self.gateway.get_poll_info, self.poll_id)
        if not info.is_active:
            raise PollClosed(f"Poll {self.poll_id} closed at {info.end_time}")
        validate_vote_request(self.option, len(info.options), self.credits, self.max_credits_per_vote)

        # Cached read; the ledger re-validates at execution
        balance = await self._read("balance", self.gateway.balance_of, self.identity)
        if balance < self.credits:
            raise InsufficientBalance(f"Balance {balance} below {self.credits} credits")

        self._transition(SettlementState.ALLOWANCE_CHECK, "request accepted")

    async def _check_allowance(self) -> None:
        allowance = await self._read("allowance", self.gateway.allowance, self.identity, self.poll_id)
        if allowance >= self.credits:
            await self._ask_consent("vote", self.credits)
            self.vote_tx = await self._submit_final(
                self.gateway.submit_vote, self.identity, self.poll_id, self.option, self.credits
            )
            self._transition(SettlementState.VOTE_PENDING, f"allowance {allowance} sufficient")
        else:
            self._transition(SettlementState.NEEDS_APPROVAL, f"allowance {allowance} < {self.credits}")

    async def _request_approval(self) -> None:
        await self._ask_consent("approve", self.credits)
        self._raise_if_cancelled()
        self.approval_tx = await self.gateway.submit_approve(self.identity, self.poll_id, self.credits)
        self._transition(SettlementState.APPROVAL_PENDING, f"submitted {self.approval_tx.tx_id}")

    async def _await_approval(self) -> None:
        if self._resuming:
            self._resuming = False
            allowance = await self._read("allowance", self.gateway.allowance, self.identity, self.poll_id)
            if allowance >= self.credits:
                self._transition(SettlementState.APPROVAL_CONFIRMED, "allowance granted")
                return
            if self.approval_tx is None or self.approval_tx.done:
                self._transition(SettlementState.NEEDS_APPROVAL, "approval not granted")
                return

        await self._confirm(self.approval_tx)
        self._transition(SettlementState.APPROVAL_CONFIRMED, f"{self.approval_tx.tx_id} confirmed")

    async def _submit_vote(self) -> None:
        await self._ask_consent("vote", self.credits)
        self.vote_tx = await self._submit_final(
            self.gateway.submit_vote, self.identity, self.poll_id, self.option, self.credits
        )
        self._transition(SettlementState.VOTE_PENDING, f"submitted {self.vote_tx.tx_id}")

    async def _await_vote(self) -> None:
        if self._resuming:
            self._resuming = False
            existing = await self._existing_vote()
            if existing is not None:
                self.result = existing
                self._transition(SettlementState.VOTE_CONFIRMED, "vote found on ledger")
                return
            if self.vote_tx is None or self.vote_tx.done:
                self._write_submitted = False
                self._transition(SettlementState.ALLOWANCE_CHECK, "vote not on ledger, re-checking")
                return

        try:
            self.result = await self._confirm(self.vote_tx)
        except AlreadyVoted:
            # Lost a race against our own earlier submission
            existing = await self._existing_vote()
            if existing is None or (existing.option, existing.credits) != (self.option, self.credits):
                raise
            self.result = existing
        self._transition(SettlementState.VOTE_CONFIRMED, f"{self.vote_tx.tx_id} confirmed")

    async def _settle(self) -> None:
        self._publish_settled()
        self._transition(SettlementState.SETTLED, "read-models invalidated")


# ============================================================================
# CLAIM SETTLEMENT
# ============================================================================

class ClaimSettlement(_SettlementMachine):
    """
    Settlement of one identity's claim on an ended poll.

        IDLE -> CLAIM_PENDING -> CLAIM_CONFIRMED -> SETTLED
    """

    kind = "claim"

    TRANSITIONS = {
        SettlementState.IDLE: {
            SettlementState.CLAIM_PENDING, SettlementState.CLAIM_CONFIRMED,
            SettlementState.REJECTED, SettlementState.FAILED,
        },
        SettlementState.CLAIM_PENDING: {
            SettlementState.CLAIM_CONFIRMED, SettlementState.IDLE, SettlementState.FAILED,
        },
        SettlementState.CLAIM_CONFIRMED: {SettlementState.SETTLED},
    }

    def __init__(
        self,
        identity: str,
        poll_id: str,
        gateway: Any,
        hub: Optional[NotificationHub] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        consent: ConsentHook = always_consent,
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(identity, poll_id, gateway, hub, confirmation_timeout, consent, retry_config)
        self.claim_tx = None
        self._steps = {
            SettlementState.IDLE: self._begin,
            SettlementState.CLAIM_PENDING: self._await_claim,
            SettlementState.CLAIM_CONFIRMED: self._settle,
        }

    def _cancellable(self) -> bool:
        return self.state == SettlementState.IDLE

    async def _claimed(self) -> bool:
        return await self._read("has_claimed", self.gateway.has_claimed, self.poll_id, self.identity)

    def _found_on_ledger(self) -> None:
        if self.claim_tx is not None and self.claim_tx.succeeded:
            self.result = self.claim_tx.result
        self._transition(SettlementState.CLAIM_CONFIRMED, "claim found on ledger")

    async def _begin(self) -> None:
        if await self._claimed():
            if self.claim_tx is not None:
                self._found_on_ledger()
                return
            raise AlreadyClaimed(f"{self.identity} already claimed from poll {self.poll_id}")

        info = await self._read("poll_info", self.gateway.get_poll_info, self.poll_id)
        if info.is_active:
            raise PollStillActive(f"Poll {self.poll_id} ends at {info.end_time}")

        vote = await self._read("vote", self.gateway.get_vote, self.poll_id, self.identity)
        winner, winning_weight = await self._read("winner", self.gateway.get_winner, self.poll_id)
        if vote is None or vote.option != winner or winning_weight == 0:
            raise NothingToClaim(f"{self.identity} has no winning vote in poll {self.poll_id}")

        await self._ask_consent("claim", 0)
        self.claim_tx = await self._submit_final(self.gateway.submit_claim, self.identity, self.poll_id)
        self._transition(SettlementState.CLAIM_PENDING, f"submitted {self.claim_tx.tx_id}")

    async def _await_claim(self) -> None:
        if self._resuming:
            self._resuming = False
            if await self._claimed():
                self._found_on_ledger()
                return
            if self.claim_tx is None or self.claim_tx.done:
                self._write_submitted = False
                self._transition(SettlementState.IDLE, "claim not on ledger, re-checking")
                return

        self.result = await self._confirm(self.claim_tx)
        self._transition(SettlementState.CLAIM_CONFIRMED, f"{self.claim_tx.tx_id} confirmed")

    async def _settle(self) -> None:
        self._publish_settled()
        self._transition(SettlementState.SETTLED, "read-models invalidated")
