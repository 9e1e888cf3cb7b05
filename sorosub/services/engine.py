"""Payment collection engine.

Decides, per call, whether a subscription payment is due and how it is paid:
1. Direct: the subscriber covers the amount and earns credit score
2. BNPL: the liquidity pool pays the merchant and the subscriber takes on debt
3. Rejected: neither is possible, nothing changes

Everything a collection touches (subscription, debt, outbox) is staged on one
session and committed only after the single token transfer succeeds.
"""
import time
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from sorosub.config import settings
from sorosub.database import unit_of_work
from sorosub.errors import (
    InsufficientFundsAndCreditError, NotFoundError, SorosubError,
    StateError, TemporalError
)
from sorosub.logging import log_payment
from sorosub.models import Subscription
from sorosub.scoring import is_bnpl_eligible, next_score
from sorosub.services.admin import AdminConfig
from sorosub.services.auth import Authorizer
from sorosub.services.clock import SystemClock
from sorosub.services.debt import DebtLedger
from sorosub.services.events import (
    EventPublisher, BNPL_TRIGGERED, PAYMENT_COLLECTED
)
from sorosub.services.lease import extend_lease
from sorosub.services.locks import locks, debt_key, subscription_key
from sorosub.services.registry import SubscriptionRegistry, is_due
from sorosub.services.token_ledger import TokenLedger
from sorosub import metrics

logger = structlog.get_logger()

BRANCH_DIRECT = "direct"
BRANCH_BNPL = "bnpl"


@dataclass
class CollectionResult:
    """Outcome of a successful collection."""
    branch: str
    amount: int  # amount transferred to the merchant
    credit_score: int
    last_payment_time: int
    debt_amount: Optional[int] = None  # total owed after a BNPL payment


class PaymentEngine:
    """
    Orchestrates payment collection.

    This service coordinates:
    1. Authorization of the collection trigger
    2. Eligibility checks against the clock
    3. The balance query and the direct/BNPL/reject decision
    4. Credit score and debt ledger updates
    5. Outbox events for completed payments
    """

    def __init__(
        self,
        db: Session,
        ledger: TokenLedger,
        clock=None,
        events: Optional[EventPublisher] = None,
        engine_account: Optional[str] = None,
        collect_policy: Optional[str] = None,
    ):
        """
        Initialize the payment engine.

        Args:
            db: SQLAlchemy database session
            ledger: Token ledger used for balances and transfers
            clock: Ledger clock (defaults to wall-clock time)
            events: Event publisher (defaults to one bound to ``db``)
            engine_account: Spender holding the allowances (defaults to settings)
            collect_policy: Who may trigger collection (defaults to settings)
        """
        self.db = db
        self.ledger = ledger
        self.clock = clock or SystemClock()
        self.events = events or EventPublisher(db)
        self.engine_account = engine_account or settings.engine_account
        self.collect_policy = collect_policy or settings.collect_authorization
        self.registry = SubscriptionRegistry(db, clock=self.clock, events=self.events)
        self.debts = DebtLedger(db, ledger, clock=self.clock, events=self.events)

    async def collect(
        self,
        authorizer: Authorizer,
        config: Optional[AdminConfig],
        subscriber: str,
        merchant: str,
    ) -> CollectionResult:
        """
        Collect the payment due on a subscription.

        Args:
            authorizer: Authorization bound to the caller
            config: Bootstrap configuration (None if not initialized)
            subscriber: Paying party
            merchant: Receiving party

        Returns:
            CollectionResult describing the branch taken and amount transferred

        Raises:
            AuthorizationError: If the caller may not trigger this collection
            NotFoundError: If the subscription does not exist
            StateError: If the subscription is inactive, or BNPL is needed
                before the liquidity pool is initialized
            TemporalError: If the payment interval has not elapsed
            InsufficientFundsAndCreditError: If neither branch can pay
            DebtTokenMismatchError: If BNPL would mix tokens in one debt
            TransferError: If the ledger declines the transfer
        """
        authorizer.require_collect(merchant, self.collect_policy)
        start_time = time.perf_counter()

        try:
            # Lock order: subscription pair, then subscriber debt
            async with locks.hold(subscription_key(subscriber, merchant)), \
                    locks.hold(debt_key(subscriber)):
                with unit_of_work(self.db):
                    result = await self._collect(config, subscriber, merchant)
        except SorosubError as e:
            metrics.record_collection_failure(e.code)
            logger.warning("collection_failed",
                           subscriber=subscriber,
                           merchant=merchant,
                           error=e.detail,
                           error_code=e.code)
            raise

        duration_seconds = time.perf_counter() - start_time
        metrics.record_collection(result.branch, result.amount, duration_seconds)
        log_payment(
            logger,
            subscriber=subscriber,
            merchant=merchant,
            branch=result.branch,
            amount=result.amount,
            credit_score=result.credit_score,
            duration_ms=duration_seconds * 1000,
            debt_amount=result.debt_amount,
        )
        return result

    async def _collect(
        self, config: Optional[AdminConfig], subscriber: str, merchant: str
    ) -> CollectionResult:
        subscription = self.registry.find(subscriber, merchant, for_update=True)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        if not subscription.is_active:
            raise StateError("Subscription is not active")

        now = self.clock.now()
        if not is_due(subscription, now):
            raise TemporalError("Payment interval has not passed yet")

        balance = await self.ledger.balance(subscription.token, subscriber)

        if balance >= subscription.amount:
            return await self._pay_direct(subscription, now)
        if is_bnpl_eligible(subscription.credit_score):
            return await self._pay_with_bnpl(subscription, config, now)

        raise InsufficientFundsAndCreditError(
            "Insufficient balance and credit score too low for BNPL"
        )

    async def _pay_direct(self, subscription: Subscription, now: int) -> CollectionResult:
        subscription.credit_score = next_score(subscription.credit_score)
        subscription.last_payment_time = now
        extend_lease(subscription, now)

        self.events.publish(PAYMENT_COLLECTED, {
            "subscriber": subscription.subscriber,
            "merchant": subscription.merchant,
            "token": subscription.token,
            "amount": str(subscription.amount),
            "credit_score": subscription.credit_score,
        })

        await self.ledger.transfer_from(
            subscription.token,
            self.engine_account,
            subscription.subscriber,
            subscription.merchant,
            subscription.amount,
        )

        return CollectionResult(
            branch=BRANCH_DIRECT,
            amount=subscription.amount,
            credit_score=subscription.credit_score,
            last_payment_time=now,
        )

    async def _pay_with_bnpl(
        self, subscription: Subscription, config: Optional[AdminConfig], now: int
    ) -> CollectionResult:
        if config is None:
            raise StateError("Liquidity pool not initialized")

        debt = self.debts.record_debt(
            subscription.subscriber, subscription.amount, subscription.token, now
        )

        # Financed payments advance the schedule but earn no credit
        subscription.last_payment_time = now
        extend_lease(subscription, now)

        self.events.publish(BNPL_TRIGGERED, {
            "subscriber": subscription.subscriber,
            "merchant": subscription.merchant,
            "token": subscription.token,
            "amount": str(subscription.amount),
            "debt_amount": str(debt.amount),
            "credit_score": subscription.credit_score,
        })

        await self.ledger.transfer_from(
            subscription.token,
            self.engine_account,
            config.liquidity_pool,
            subscription.merchant,
            subscription.amount,
        )

        logger.info("bnpl_triggered",
                    subscriber=subscription.subscriber,
                    merchant=subscription.merchant,
                    amount=str(subscription.amount),
                    credit_score=subscription.credit_score)

        return CollectionResult(
            branch=BRANCH_BNPL,
            amount=subscription.amount,
            credit_score=subscription.credit_score,
            last_payment_time=now,
            debt_amount=debt.amount,
        )
