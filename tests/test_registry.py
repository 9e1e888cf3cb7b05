"""Tests for subscription creation, cancellation and due-date checks."""
import pytest

from sorosub.errors import AuthorizationError, ConflictError, NotFoundError, StateError, ValidationError
from sorosub.models import OutboundEvent, Subscription
from sorosub.services.auth import Authorizer
from sorosub.services.lease import SECONDS_PER_DAY
from sorosub.services.registry import SubscriptionRegistry

from tests.conftest import AMOUNT, INTERVAL, MERCHANT, START, SUBSCRIBER, TOKEN


@pytest.fixture
def registry(db_session, clock):
    return SubscriptionRegistry(db_session, clock=clock)


async def _create(registry, authorizer, amount=AMOUNT, interval=INTERVAL):
    return await registry.create(authorizer, SUBSCRIBER, MERCHANT, TOKEN, amount, interval)


class TestCreate:

    @pytest.mark.asyncio
    async def test_new_subscription_starts_clean(self, registry, as_subscriber):
        subscription = await _create(registry, as_subscriber)

        assert subscription.amount == AMOUNT
        assert subscription.interval_seconds == INTERVAL
        assert subscription.token == TOKEN
        assert subscription.last_payment_time == 0
        assert subscription.is_active is True
        assert subscription.credit_score == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,interval", [(0, INTERVAL), (-5, INTERVAL), (AMOUNT, 0), (2**127, INTERVAL)])
    async def test_invalid_terms_write_nothing(self, registry, as_subscriber, db_session, amount, interval):
        with pytest.raises(ValidationError):
            await _create(registry, as_subscriber, amount=amount, interval=interval)

        assert db_session.query(Subscription).count() == 0
        assert db_session.query(OutboundEvent).count() == 0

    @pytest.mark.asyncio
    async def test_requires_subscriber_authorization(self, registry, as_merchant, db_session):
        with pytest.raises(AuthorizationError):
            await _create(registry, as_merchant)

        assert db_session.query(Subscription).count() == 0

    @pytest.mark.asyncio
    async def test_unauthenticated_caller_rejected(self, registry):
        with pytest.raises(AuthorizationError):
            await _create(registry, Authorizer(None))

    @pytest.mark.asyncio
    async def test_duplicate_active_subscription_conflicts(self, registry, as_subscriber):
        await _create(registry, as_subscriber)

        with pytest.raises(ConflictError):
            await _create(registry, as_subscriber, amount=AMOUNT * 2)

        assert registry.get(SUBSCRIBER, MERCHANT).amount == AMOUNT

    @pytest.mark.asyncio
    async def test_recreate_after_cancel_resets_history(self, registry, as_subscriber, db_session, clock):
        subscription = await _create(registry, as_subscriber)
        subscription.credit_score = 40
        subscription.last_payment_time = clock.now()
        db_session.commit()
        await registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

        recreated = await _create(registry, as_subscriber, amount=AMOUNT * 3)

        assert recreated.is_active is True
        assert recreated.amount == AMOUNT * 3
        assert recreated.last_payment_time == 0
        assert recreated.credit_score == 0
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_create_refreshes_lease_and_emits_event(self, registry, as_subscriber, db_session):
        subscription = await _create(registry, as_subscriber)

        assert subscription.lease_expires_at == START + 30 * SECONDS_PER_DAY
        event = db_session.query(OutboundEvent).one()
        assert event.topic == "subscription.created"
        assert event.payload["amount"] == str(AMOUNT)
        assert event.status == "pending"

    @pytest.mark.asyncio
    async def test_amounts_keep_full_128_bit_precision(self, registry, as_subscriber, db_session):
        huge = 2**127 - 1
        await _create(registry, as_subscriber, amount=huge)
        db_session.expire_all()

        assert registry.get(SUBSCRIBER, MERCHANT).amount == huge


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_deactivates(self, registry, as_subscriber):
        await _create(registry, as_subscriber)

        cancelled = await registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

        assert cancelled.is_active is False
        assert registry.can_process(SUBSCRIBER, MERCHANT) is False

    @pytest.mark.asyncio
    async def test_double_cancel_is_rejected(self, registry, as_subscriber, db_session):
        await _create(registry, as_subscriber)
        await registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

        with pytest.raises(StateError):
            await registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

        topics = [e.topic for e in db_session.query(OutboundEvent).all()]
        assert topics.count("subscription.cancelled") == 1

    @pytest.mark.asyncio
    async def test_cancel_unknown_subscription(self, registry, as_subscriber):
        with pytest.raises(NotFoundError):
            await registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

    @pytest.mark.asyncio
    async def test_merchant_cannot_cancel(self, registry, as_subscriber, as_merchant):
        await _create(registry, as_subscriber)

        with pytest.raises(AuthorizationError):
            await registry.cancel(as_merchant, SUBSCRIBER, MERCHANT)

        assert registry.get(SUBSCRIBER, MERCHANT).is_active is True


class TestQueries:

    def test_get_unknown_subscription(self, registry):
        with pytest.raises(NotFoundError):
            registry.get(SUBSCRIBER, MERCHANT)

    def test_credit_score_of_unknown_subscription(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_credit_score(SUBSCRIBER, MERCHANT)

    def test_can_process_unknown_subscription(self, registry):
        assert registry.can_process(SUBSCRIBER, MERCHANT) is False

    @pytest.mark.asyncio
    async def test_can_process_first_payment(self, registry, as_subscriber):
        await _create(registry, as_subscriber)

        assert registry.can_process(SUBSCRIBER, MERCHANT) is True

    @pytest.mark.asyncio
    async def test_can_process_follows_interval(self, registry, as_subscriber, db_session, clock):
        subscription = await _create(registry, as_subscriber)
        subscription.last_payment_time = clock.now()
        db_session.commit()

        assert registry.can_process(SUBSCRIBER, MERCHANT) is False

        clock.advance(INTERVAL - 1)
        assert registry.can_process(SUBSCRIBER, MERCHANT) is False

        clock.advance(1)
        assert registry.can_process(SUBSCRIBER, MERCHANT) is True
