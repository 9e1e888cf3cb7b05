"""Debt ledger for BNPL-financed payments."""
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from sorosub.database import unit_of_work
from sorosub.errors import (
    ArithmeticOverflowError, DebtTokenMismatchError, ExceedsDebtError,
    NotFoundError, StateError, ValidationError
)
from sorosub.models import UserDebt, I128_MAX
from sorosub.services.admin import AdminConfig
from sorosub.services.auth import Authorizer
from sorosub.services.clock import SystemClock
from sorosub.services.events import EventPublisher, DEBT_REPAID
from sorosub.services.lease import extend_lease
from sorosub.services.locks import locks, debt_key
from sorosub.services.token_ledger import TokenLedger
from sorosub import metrics

logger = structlog.get_logger()


class DebtLedger:
    """
    Tracks what each subscriber owes the liquidity pool.

    One record per subscriber in a single token. A zero balance is never
    stored: the record is deleted the moment it is repaid in full.
    """

    def __init__(
        self,
        db: Session,
        ledger: TokenLedger,
        clock=None,
        events: Optional[EventPublisher] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.events = events or EventPublisher(db)

    def find(self, subscriber: str, for_update: bool = False) -> Optional[UserDebt]:
        if for_update:
            return self.db.get(
                UserDebt, subscriber, with_for_update=True, populate_existing=True
            )
        return self.db.get(UserDebt, subscriber)

    def get(self, subscriber: str) -> Optional[UserDebt]:
        """Outstanding debt, or None when the subscriber owes nothing."""
        return self.find(subscriber)

    def record_debt(self, subscriber: str, amount: int, token: str, now: int) -> UserDebt:
        """
        Stage an increase of the subscriber's debt on the current session.

        The caller must hold the subscriber's debt lock and commit.

        Raises:
            DebtTokenMismatchError: If debt is already owed in another token
            ArithmeticOverflowError: If the total would exceed 128 bits
        """
        debt = self.find(subscriber, for_update=True)
        if debt is None:
            debt = UserDebt(subscriber=subscriber, amount=0, token=token)
            self.db.add(debt)
        elif debt.token != token:
            raise DebtTokenMismatchError(
                f"Outstanding debt is in {debt.token}; cannot finance in {token}"
            )

        total = debt.amount + amount
        if total > I128_MAX:
            raise ArithmeticOverflowError("Debt would exceed the 128-bit range")

        debt.amount = total
        debt.token = token
        extend_lease(debt, now)
        return debt

    async def repay(
        self,
        authorizer: Authorizer,
        config: Optional[AdminConfig],
        subscriber: str,
        amount: int,
    ) -> int:
        """
        Repay part or all of a subscriber's debt to the liquidity pool.

        Args:
            authorizer: Authorization bound to the caller
            config: Bootstrap configuration (None if not initialized)
            subscriber: The indebted subscriber
            amount: Amount to repay

        Returns:
            Remaining debt (0 once cleared)

        Raises:
            AuthorizationError: If the caller is not the subscriber
            ValidationError: If amount is not positive
            NotFoundError: If the subscriber has no debt
            ExceedsDebtError: If amount is more than is owed
            StateError: If the liquidity pool is not initialized
            TransferError: If the ledger declines the repayment transfer
        """
        authorizer.require(subscriber)
        if amount <= 0:
            raise ValidationError("Repayment amount must be positive")

        async with locks.hold(debt_key(subscriber)):
            with unit_of_work(self.db):
                debt = self.find(subscriber, for_update=True)
                if debt is None:
                    raise NotFoundError("No debt found for user")
                if amount > debt.amount:
                    raise ExceedsDebtError("Repayment amount exceeds debt")
                if config is None:
                    raise StateError("Liquidity pool not initialized")

                token = debt.token
                remaining = debt.amount - amount
                if remaining == 0:
                    self.db.delete(debt)
                else:
                    debt.amount = remaining
                    extend_lease(debt, self.clock.now())

                self.events.publish(DEBT_REPAID, {
                    "subscriber": subscriber,
                    "token": token,
                    "amount": str(amount),
                    "remaining": str(remaining),
                })

                await self.ledger.transfer(token, subscriber, config.liquidity_pool, amount)

        metrics.record_repayment(amount, cleared=remaining == 0)
        logger.info("debt_repaid",
                    subscriber=subscriber,
                    amount=str(amount),
                    remaining=str(remaining))

        return remaining
