"""
repvote/protocol/token.py

Stake token consumed by poll ledgers.

A voter approves a poll ledger as spender, then the ledger pulls the
credits into the poll's prize pool with ``transfer_from`` when the vote is
recorded. Claims are paid back out of the ledger's balance with
``transfer``.
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, Tuple

from ..config import FAUCET_AMOUNT
from ..errors import InsufficientBalance, InsufficientAllowance

logger = logging.getLogger("repvote.protocol.token")


class StakeToken(ABC):
    """Token interface used by the ledger and the gateway."""

    @abstractmethod
    async def balance_of(self, account: str) -> int:
        ...

    @abstractmethod
    async def allowance(self, owner: str, spender: str) -> int:
        ...

    @abstractmethod
    async def approve(self, owner: str, spender: str, amount: int) -> bool:
        ...

    @abstractmethod
    async def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        ...

    @abstractmethod
    async def transfer(self, sender: str, recipient: str, amount: int) -> None:
        ...


class InMemoryStakeToken(StakeToken):
    """
    Simple ERC20-like ledger kept in memory.

    ``faucet`` mints FAUCET_AMOUNT to the caller and exists for tests and
    the demo server.
    """

    def __init__(self, symbol: str = "REP", faucet_amount: int = FAUCET_AMOUNT):
        self.symbol = symbol
        self.faucet_amount = faucet_amount
        self._balances: Dict[str, int] = defaultdict(int)
        self._allowances: Dict[Tuple[str, str], int] = defaultdict(int)
        self.total_supply = 0

    def mint(self, account: str, amount: int) -> None:
        self._balances[account] += amount
        self.total_supply += amount

    async def faucet(self, account: str) -> int:
        self.mint(account, self.faucet_amount)
        logger.info(f"Faucet sent {self.faucet_amount} {self.symbol} to {account}")
        return self.faucet_amount

    async def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    async def allowance(self, owner: str, spender: str) -> int:
        return self._allowances.get((owner, spender), 0)

    async def approve(self, owner: str, spender: str, amount: int) -> bool:
        if amount < 0:
            raise ValueError("Approval amount must not be negative")
        self._allowances[(owner, spender)] = amount
        logger.debug(f"{owner} approved {spender} for {amount}")
        return True

    async def transfer_from(self, spender: str, owner: str, recipient: str, amount: int) -> None:
        if self._allowances.get((owner, spender), 0) < amount:
            raise InsufficientAllowance(
                f"Allowance {self._allowances.get((owner, spender), 0)} below {amount}"
            )
        if self._balances.get(owner, 0) < amount:
            raise InsufficientBalance(f"Balance {self._balances.get(owner, 0)} below {amount}")
        self._allowances[(owner, spender)] -= amount
        self._balances[owner] -= amount
        self._balances[recipient] += amount

    async def transfer(self, sender: str, recipient: str, amount: int) -> None:
        if self._balances.get(sender, 0) < amount:
            raise InsufficientBalance(f"Balance {self._balances.get(sender, 0)} below {amount}")
        self._balances[sender] -= amount
        self._balances[recipient] += amount
