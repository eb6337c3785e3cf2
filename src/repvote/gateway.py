"""
repvote/gateway.py

Submission and read transport between clients and the poll ledgers.

Writes are "submit, then await confirmation": ``submit_*`` returns a
PendingTransaction at once and the command executes later, the way a
transaction is mined after it is broadcast. ``PendingTransaction.wait``
resolves with the execution result or raises the ledger's error.

InProcessGateway executes commands against an in-memory PollFactory in a
background nursery, optionally after a confirmation delay, which is how
tests reproduce slow and ambiguous confirmations.

Usage:
    async with trio.open_nursery() as nursery:
        gateway = InProcessGateway(factory)
        gateway.bind(nursery)

        tx = await gateway.submit_vote("alice", poll_id, option=0, credits=9)
        vote = await tx.wait()
"""

import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import trio

from .errors import RepVoteError
from .protocol.factory import PollFactory
from .protocol.ledger import PollInfo, Vote
from .protocol.payout import ClaimRecord
from .protocol.reputation import ReputationSnapshot

logger = logging.getLogger("repvote.gateway")


class PendingTransaction:
    """Handle of a submitted write command."""

    def __init__(self, tx_id: str, kind: str, identity: str, poll_id: str):
        self.tx_id = tx_id
        self.kind = kind
        self.identity = identity
        self.poll_id = poll_id
        self.submitted_at = time.time()
        self.confirmed_at: Optional[float] = None
        self._done = trio.Event()
        self._result: Any = None
        self._error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def succeeded(self) -> bool:
        return self.done and self._error is None

    @property
    def result(self) -> Any:
        return self._result

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def resolve(self, result: Any) -> None:
        self._result = result
        self.confirmed_at = time.time()
        self._done.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self.confirmed_at = time.time()
        self._done.set()

    async def wait(self) -> Any:
        """Block until confirmed; raise the execution error if it failed."""
        await self._done.wait()
        if self._error is not None:
            raise self._error
        return self._result

    def __repr__(self) -> str:
        state = "pending" if not self.done else ("ok" if self._error is None else "failed")
        return f"PendingTransaction({self.tx_id}, {self.kind}, {state})"


class LedgerGateway(ABC):
    """Reads and write submissions against the poll ledgers."""

    # Reads

    @abstractmethod
    async def allowance(self, identity: str, poll_id: str) -> int:
        """Spend allowance granted by identity to the poll's ledger."""

    @abstractmethod
    async def balance_of(self, identity: str) -> int:
        ...

    @abstractmethod
    async def get_vote(self, poll_id: str, identity: str) -> Optional[Vote]:
        ...

    @abstractmethod
    async def has_claimed(self, poll_id: str, identity: str) -> bool:
        ...

    @abstractmethod
    async def get_poll_info(self, poll_id: str) -> PollInfo:
        ...

    @abstractmethod
    async def get_results(self, poll_id: str) -> List[int]:
        ...

    @abstractmethod
    async def get_winner(self, poll_id: str) -> Tuple[int, int]:
        ...

    @abstractmethod
    async def get_multiplier(self, identity: str) -> int:
        ...

    @abstractmethod
    async def get_user_stats(self, identity: str) -> ReputationSnapshot:
        ...

    # Writes

    @abstractmethod
    async def submit_approve(self, identity: str, poll_id: str, amount: int) -> PendingTransaction:
        ...

    @abstractmethod
    async def submit_vote(self, identity: str, poll_id: str, option: int, credits: int) -> PendingTransaction:
        ...

    @abstractmethod
    async def submit_claim(self, identity: str, poll_id: str) -> PendingTransaction:
        ...


class InProcessGateway(LedgerGateway):
    """
    Gateway over an in-memory PollFactory.

    Args:
        factory: Poll registry holding the ledgers
        confirmation_delay: Seconds between submission and execution
    """

    def __init__(self, factory: PollFactory, confirmation_delay: float = 0.0):
        self.factory = factory
        self.confirmation_delay = confirmation_delay
        self._nursery: Optional[trio.Nursery] = None
        self._tx_counter = itertools.count(1)
        self.transactions: List[PendingTransaction] = []
        self.submissions: Dict[str, int] = {"approve": 0, "vote": 0, "claim": 0}

    def bind(self, nursery: trio.Nursery) -> None:
        """Attach the nursery that executes submitted commands."""
        self._nursery = nursery

    # ========================================================================
    # READS
    # ========================================================================

    async def allowance(self, identity: str, poll_id: str) -> int:
        ledger = self.factory.get_poll(poll_id)
        return await self.factory.token.allowance(identity, ledger.address)

    async def balance_of(self, identity: str) -> int:
        return await self.factory.token.balance_of(identity)

    async def get_vote(self, poll_id: str, identity: str) -> Optional[Vote]:
        return self.factory.get_poll(poll_id).get_vote(identity)

    async def has_claimed(self, poll_id: str, identity: str) -> bool:
        return self.factory.get_poll(poll_id).has_claimed(identity)

    async def get_poll_info(self, poll_id: str) -> PollInfo:
        return self.factory.get_poll_info(poll_id)

    async def get_results(self, poll_id: str) -> List[int]:
        return list(self.factory.get_poll(poll_id).get_results())

    async def get_winner(self, poll_id: str) -> Tuple[int, int]:
        return self.factory.get_poll(poll_id).get_winner()

    async def get_multiplier(self, identity: str) -> int:
        return await self.factory.oracle.get_multiplier(identity)

    async def get_user_stats(self, identity: str) -> ReputationSnapshot:
        return await self.factory.oracle.get_user_stats(identity)

    # ========================================================================
    # WRITES
    # ========================================================================

    async def submit_approve(self, identity: str, poll_id: str, amount: int) -> PendingTransaction:
        ledger = self.factory.get_poll(poll_id)

        async def execute() -> bool:
            return await self.factory.token.approve(identity, ledger.address, amount)

        return self._submit("approve", identity, poll_id, execute)

    async def submit_vote(self, identity: str, poll_id: str, option: int, credits: int) -> PendingTransaction:
        ledger = self.factory.get_poll(poll_id)

        async def execute() -> Vote:
            return await ledger.record_vote(identity, option, credits)

        return self._submit("vote", identity, poll_id, execute)

    async def submit_claim(self, identity: str, poll_id: str) -> PendingTransaction:
        ledger = self.factory.get_poll(poll_id)

        async def execute() -> ClaimRecord:
            return await ledger.claim_winnings(identity)

        return self._submit("claim", identity, poll_id, execute)

    def _submit(
        self,
        kind: str,
        identity: str,
        poll_id: str,
        execute: Callable[[], Awaitable[Any]],
    ) -> PendingTransaction:
        if self._nursery is None:
            raise RuntimeError("Gateway not started. Call bind(nursery) first")

        tx = PendingTransaction(f"tx-{next(self._tx_counter)}", kind, identity, poll_id)
        self.transactions.append(tx)
        self.submissions[kind] += 1
        logger.debug(f"Submitted {tx.tx_id} ({kind}) for {identity} on {poll_id}")
        self._nursery.start_soon(self._execute, tx, execute)
        return tx

    async def _execute(self, tx: PendingTransaction, execute: Callable[[], Awaitable[Any]]) -> None:
        if self.confirmation_delay > 0:
            await trio.sleep(self.confirmation_delay)
        try:
            result = await execute()
        except RepVoteError as e:
            logger.info(f"{tx.tx_id} ({tx.kind}) reverted: {e}")
            tx.fail(e)
            return
        tx.resolve(result)
        logger.debug(f"{tx.tx_id} ({tx.kind}) confirmed")
