"""Token ledger interface and an in-process implementation."""
from collections import defaultdict
from typing import Protocol

from sorosub.errors import TransferError, ValidationError
from sorosub.logging import get_logger

logger = get_logger(__name__)


class TokenLedger(Protocol):
    """Balance queries and all-or-nothing transfers for many tokens."""

    async def balance(self, token: str, account: str) -> int:
        ...

    async def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        ...

    async def transfer_from(
        self, token: str, spender: str, sender: str, recipient: str, amount: int
    ) -> None:
        ...


class InMemoryTokenLedger:
    """
    Token ledger held in process memory.

    Used for local runs and tests. Mirrors the semantics of the remote ledger:
    a transfer either moves the full amount or raises TransferError and
    changes nothing.
    """

    def __init__(self):
        self._balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._allowances: dict[str, dict[tuple[str, str], int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self.transfers: list[tuple[str, str, str, int]] = []

    def mint(self, token: str, account: str, amount: int) -> None:
        if amount <= 0:
            raise ValidationError("Mint amount must be positive")
        self._balances[token][account] += amount

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise ValidationError("Allowance cannot be negative")
        self._allowances[token][(owner, spender)] = amount

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances[token][(owner, spender)]

    def burn_all(self, token: str, account: str) -> None:
        self._balances[token][account] = 0

    async def balance(self, token: str, account: str) -> int:
        return self._balances[token][account]

    async def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        self._check_amount(amount)
        if self._balances[token][sender] < amount:
            raise TransferError(f"Insufficient {token} balance for {sender}")
        self._move(token, sender, recipient, amount)

    async def transfer_from(
        self, token: str, spender: str, sender: str, recipient: str, amount: int
    ) -> None:
        self._check_amount(amount)
        allowed = self._allowances[token][(sender, spender)]
        if allowed < amount:
            raise TransferError(f"Insufficient {token} allowance from {sender} to {spender}")
        if self._balances[token][sender] < amount:
            raise TransferError(f"Insufficient {token} balance for {sender}")
        self._allowances[token][(sender, spender)] = allowed - amount
        self._move(token, sender, recipient, amount)

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount <= 0:
            raise TransferError("Transfer amount must be positive")

    def _move(self, token: str, sender: str, recipient: str, amount: int) -> None:
        self._balances[token][sender] -= amount
        self._balances[token][recipient] += amount
        self.transfers.append((sender, recipient, token, amount))
        logger.debug(
            "token_transferred",
            token=token,
            sender=sender,
            recipient=recipient,
            amount=str(amount),
        )
