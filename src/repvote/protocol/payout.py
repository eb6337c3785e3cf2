"""
repvote/protocol/payout.py

Winner determination and proportional prize distribution.

After a poll ends, every voter who backed the winning option may claim
once:

    payout = total_bet_amount * voter_weight // winning_option_weight

Payouts are floored, so the sum over all winners never exceeds the pool.
Rounding dust and unclaimed winnings stay locked in the poll and are
reported by ``ClaimBook.unclaimed_amount``.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, Optional, Tuple, TYPE_CHECKING

import trio

from ..errors import PollStillActive, AlreadyClaimed, NothingToClaim
from .notifications import ClaimPaid

if TYPE_CHECKING:
    from .ledger import PollLedger

logger = logging.getLogger("repvote.protocol.payout")


def determine_winner(tallies: Iterable[int]) -> Tuple[int, int]:
    """
    Option with the highest tally.

    Ties go to the lowest option index. An empty or all-zero poll returns
    (0, 0).
    """
    winner, winning_weight = 0, 0
    for index, weight in enumerate(tallies):
        if weight > winning_weight:
            winner, winning_weight = index, weight
    return winner, winning_weight


def calculate_payout(total_bet: int, weight: int, winning_total: int) -> int:
    """Share of the pool for a weight on the winning option, floored."""
    if winning_total <= 0 or weight <= 0:
        return 0
    return total_bet * weight // winning_total


@dataclass(frozen=True)
class ClaimRecord:
    """A successful claim; never reset."""
    identity: str
    poll_id: str
    amount: int
    timestamp: int

    def to_dict(self) -> dict:
        return asdict(self)


class ClaimBook:
    """
    Claim bookkeeping for one poll.

    The check-then-mark of a claim runs under a lock private to the
    identity, so repeated concurrent claims by one voter pay at most once
    while different voters claim in parallel.
    """

    def __init__(self, ledger: "PollLedger"):
        self._ledger = ledger
        self._records: Dict[str, ClaimRecord] = {}
        self._locks: Dict[str, trio.Lock] = {}
        self.total_paid = 0

    def has_claimed(self, identity: str) -> bool:
        return identity in self._records

    def get_record(self, identity: str) -> Optional[ClaimRecord]:
        return self._records.get(identity)

    def unclaimed_amount(self) -> int:
        return self._ledger.total_bet_amount - self.total_paid

    def preview_payouts(self) -> Dict[str, int]:
        """Projected payout for every voter on the current leading option."""
        ledger = self._ledger
        winner, winning_total = ledger.get_winner()
        return {
            vote.identity: calculate_payout(ledger.total_bet_amount, vote.weight, winning_total)
            for vote in ledger.iter_votes()
            if vote.option == winner
        }

    async def claim(self, identity: str) -> ClaimRecord:
        """
        Pay out an identity's share of the pool.

        Raises:
            PollStillActive: poll has not ended
            AlreadyClaimed: identity was already paid
            NothingToClaim: identity did not back the winning option
        """
        ledger = self._ledger
        if ledger.is_active():
            raise PollStillActive(f"Poll {ledger.poll_id} ends at {ledger.end_time}")

        lock = self._locks.setdefault(identity, trio.Lock())
        async with lock:
            if identity in self._records:
                raise AlreadyClaimed(f"{identity} already claimed from poll {ledger.poll_id}")

            winner, winning_total = ledger.get_winner()
            vote = ledger.get_vote(identity)
            if vote is None or vote.option != winner or winning_total == 0:
                raise NothingToClaim(f"{identity} has no winning vote in poll {ledger.poll_id}")

            amount = calculate_payout(ledger.total_bet_amount, vote.weight, winning_total)
            if self.total_paid + amount > ledger.total_bet_amount:
                logger.error(
                    f"Claim of {amount} would exceed pool of poll {ledger.poll_id} "
                    f"(paid {self.total_paid} of {ledger.total_bet_amount})"
                )
                raise NothingToClaim(f"Prize pool of poll {ledger.poll_id} is exhausted")

            # Reserve before the transfer so parallel claims see it
            self.total_paid += amount
            try:
                if amount > 0:
                    await ledger.token.transfer(ledger.address, identity, amount)
            except BaseException:
                self.total_paid -= amount
                raise

            record = ClaimRecord(
                identity=identity,
                poll_id=ledger.poll_id,
                amount=amount,
                timestamp=ledger.now(),
            )
            self._records[identity] = record

        logger.info(f"Claim paid on poll {ledger.poll_id}: {identity} <- {amount}")
        if ledger.hub is not None:
            ledger.hub.publish(ClaimPaid(
                poll_id=ledger.poll_id,
                identity=identity,
                amount=amount,
                timestamp=record.timestamp,
            ))
        return record
