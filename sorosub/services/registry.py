"""Subscription registry: create, read, cancel and due-date checks."""
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from sorosub.database import unit_of_work
from sorosub.errors import ConflictError, NotFoundError, StateError, ValidationError
from sorosub.models import Subscription, I128_MAX, INT64_MAX
from sorosub.services.auth import Authorizer
from sorosub.services.clock import SystemClock
from sorosub.services.events import (
    EventPublisher, SUBSCRIPTION_CANCELLED, SUBSCRIPTION_CREATED
)
from sorosub.services.lease import extend_lease
from sorosub.services.locks import locks, subscription_key

logger = structlog.get_logger()


def is_due(subscription: Subscription, now: int) -> bool:
    """First payment is always due; later ones once a full interval has passed."""
    if subscription.last_payment_time == 0:
        return True
    return now >= subscription.last_payment_time + subscription.interval_seconds


class SubscriptionRegistry:
    """
    CRUD over subscriptions keyed by (subscriber, merchant).

    At most one active subscription exists per pair. Records are never
    deleted here, only deactivated; creating over an inactive record resets
    its whole payment history.
    """

    def __init__(self, db: Session, clock=None, events: Optional[EventPublisher] = None):
        """
        Initialize the registry.

        Args:
            db: SQLAlchemy database session
            clock: Ledger clock (defaults to wall-clock time)
            events: Event publisher (defaults to one bound to ``db``)
        """
        self.db = db
        self.clock = clock or SystemClock()
        self.events = events or EventPublisher(db)

    async def create(
        self,
        authorizer: Authorizer,
        subscriber: str,
        merchant: str,
        token: str,
        amount: int,
        interval: int,
    ) -> Subscription:
        """
        Create a subscription, or revive a cancelled one with a clean history.

        Raises:
            AuthorizationError: If the caller is not the subscriber
            ValidationError: If amount or interval is out of range
            ConflictError: If an active subscription already exists
        """
        authorizer.require(subscriber)
        _validate_terms(token, amount, interval)

        async with locks.hold(subscription_key(subscriber, merchant)):
            with unit_of_work(self.db):
                now = self.clock.now()
                subscription = self.find(subscriber, merchant, for_update=True)

                if subscription is not None and subscription.is_active:
                    raise ConflictError("Active subscription already exists")

                if subscription is None:
                    subscription = Subscription(subscriber=subscriber, merchant=merchant)
                    self.db.add(subscription)

                subscription.token = token
                subscription.amount = amount
                subscription.interval_seconds = interval
                subscription.last_payment_time = 0
                subscription.is_active = True
                subscription.credit_score = 0
                extend_lease(subscription, now)

                self.events.publish(SUBSCRIPTION_CREATED, {
                    "subscriber": subscriber,
                    "merchant": merchant,
                    "token": token,
                    "amount": str(amount),
                    "interval": interval,
                })

        logger.info("subscription_created",
                    subscriber=subscriber,
                    merchant=merchant,
                    token=token,
                    amount=str(amount),
                    interval=interval)

        return subscription

    def find(
        self, subscriber: str, merchant: str, for_update: bool = False
    ) -> Optional[Subscription]:
        """Load a subscription, optionally row-locked until the session commits."""
        if for_update:
            return self.db.get(
                Subscription,
                (subscriber, merchant),
                with_for_update=True,
                populate_existing=True,
            )
        return self.db.get(Subscription, (subscriber, merchant))

    def get(self, subscriber: str, merchant: str) -> Subscription:
        subscription = self.find(subscriber, merchant)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    async def cancel(self, authorizer: Authorizer, subscriber: str, merchant: str) -> Subscription:
        """
        Deactivate a subscription.

        Raises:
            AuthorizationError: If the caller is not the subscriber
            NotFoundError: If no subscription exists for the pair
            StateError: If the subscription is already inactive
        """
        authorizer.require(subscriber)

        async with locks.hold(subscription_key(subscriber, merchant)):
            with unit_of_work(self.db):
                subscription = self.find(subscriber, merchant, for_update=True)
                if subscription is None:
                    raise NotFoundError("Subscription not found")
                if not subscription.is_active:
                    raise StateError("Subscription is not active")

                subscription.is_active = False
                extend_lease(subscription, self.clock.now())

                self.events.publish(SUBSCRIPTION_CANCELLED, {
                    "subscriber": subscriber,
                    "merchant": merchant,
                })

        logger.info("subscription_cancelled", subscriber=subscriber, merchant=merchant)

        return subscription

    def can_process(self, subscriber: str, merchant: str) -> bool:
        subscription = self.find(subscriber, merchant)
        if subscription is None or not subscription.is_active:
            return False
        return is_due(subscription, self.clock.now())

    def get_credit_score(self, subscriber: str, merchant: str) -> int:
        return self.get(subscriber, merchant).credit_score


def _validate_terms(token: str, amount: int, interval: int) -> None:
    if not token:
        raise ValidationError("Token must be provided")
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    if amount > I128_MAX:
        raise ValidationError("Amount exceeds the 128-bit range")
    if interval <= 0:
        raise ValidationError("Interval must be greater than 0")
    if interval > INT64_MAX:
        raise ValidationError("Interval exceeds the supported range")
