"""
Payment engine tests.

Cover the three collection branches (direct, BNPL, rejected), the interval
boundary, authorization policy, and the guarantee that a failed collection
leaves subscriptions, debts, outbox and balances untouched.
"""
import asyncio

import pytest

from sorosub.config import settings
from sorosub.errors import (
    AuthorizationError, DebtTokenMismatchError, InsufficientFundsAndCreditError,
    NotFoundError, StateError, TemporalError, TransferError
)
from sorosub.models import OutboundEvent, UserDebt
from sorosub.services.auth import Authorizer
from sorosub.services.engine import PaymentEngine
from sorosub.services.lease import SECONDS_PER_DAY
from sorosub.services.locks import locks
from sorosub.services.registry import SubscriptionRegistry
from sorosub.services.token_ledger import InMemoryTokenLedger

from tests.conftest import (
    AMOUNT, INTERVAL, MERCHANT, OTHER_TOKEN, POOL, START, SUBSCRIBER, TOKEN
)

LEASE = 30 * SECONDS_PER_DAY


@pytest.fixture
def engine(db_session, ledger, clock):
    return PaymentEngine(db_session, ledger, clock=clock)


async def _subscribe(db_session, clock, credit_score=0, token=TOKEN):
    registry = SubscriptionRegistry(db_session, clock=clock)
    subscription = await registry.create(
        Authorizer(SUBSCRIBER), SUBSCRIBER, MERCHANT, token, AMOUNT, INTERVAL
    )
    if credit_score:
        subscription.credit_score = credit_score
        db_session.commit()
    return subscription


def _snapshot(db_session, ledger):
    """Everything a rejected collection must leave unchanged."""
    db_session.expire_all()
    subscription = SubscriptionRegistry(db_session).get(SUBSCRIBER, MERCHANT)
    debt = db_session.get(UserDebt, SUBSCRIBER)
    return {
        "credit_score": subscription.credit_score,
        "last_payment_time": subscription.last_payment_time,
        "lease": subscription.lease_expires_at,
        "debt": None if debt is None else (debt.amount, debt.token),
        "events": db_session.query(OutboundEvent).count(),
        "transfers": len(ledger.transfers),
    }


class TestDirectPayment:

    @pytest.mark.asyncio
    async def test_first_collect_pays_merchant_and_scores(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock)
        subscriber_before = await ledger.balance(TOKEN, SUBSCRIBER)

        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.branch == "direct"
        assert result.amount == AMOUNT
        assert result.credit_score == 10
        assert result.last_payment_time == START
        assert await ledger.balance(TOKEN, MERCHANT) == AMOUNT
        assert await ledger.balance(TOKEN, SUBSCRIBER) == subscriber_before - AMOUNT
        assert ledger.transfers == [(SUBSCRIBER, MERCHANT, TOKEN, AMOUNT)]
        assert ledger.allowance(TOKEN, SUBSCRIBER, settings.engine_account) == AMOUNT * 19

    @pytest.mark.asyncio
    async def test_first_collect_ignores_elapsed_time(self, engine, db_session, clock, as_merchant, config):
        await _subscribe(db_session, clock)
        clock.advance(1)

        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.branch == "direct"

    @pytest.mark.asyncio
    async def test_repeat_before_interval_is_too_early(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock)
        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)
        clock.advance(INTERVAL - 1)
        before = _snapshot(db_session, ledger)

        with pytest.raises(TemporalError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert _snapshot(db_session, ledger) == before

    @pytest.mark.asyncio
    async def test_collect_exactly_at_interval_boundary(self, engine, db_session, clock, as_merchant, config):
        await _subscribe(db_session, clock)
        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)
        clock.advance(INTERVAL)

        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.credit_score == 20
        assert result.last_payment_time == START + INTERVAL

    @pytest.mark.asyncio
    async def test_direct_payment_refreshes_lease(self, engine, db_session, clock, as_merchant, config):
        await _subscribe(db_session, clock)
        clock.advance(SECONDS_PER_DAY)

        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        db_session.expire_all()
        subscription = engine.registry.get(SUBSCRIBER, MERCHANT)
        assert subscription.lease_expires_at == START + SECONDS_PER_DAY + LEASE

    @pytest.mark.asyncio
    async def test_direct_payment_emits_event(self, engine, db_session, clock, as_merchant, config):
        await _subscribe(db_session, clock)

        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        event = db_session.query(OutboundEvent).filter_by(topic="payment.collected").one()
        assert event.payload["subscriber"] == SUBSCRIBER
        assert event.payload["amount"] == str(AMOUNT)
        assert event.payload["credit_score"] == 10

    @pytest.mark.asyncio
    async def test_direct_payment_works_before_initialization(self, engine, db_session, clock, as_merchant):
        await _subscribe(db_session, clock)

        result = await engine.collect(as_merchant, None, SUBSCRIBER, MERCHANT)

        assert result.branch == "direct"


class TestBnpl:

    @pytest.mark.asyncio
    async def test_pool_pays_and_debt_is_recorded(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock, credit_score=60)
        ledger.burn_all(TOKEN, SUBSCRIBER)
        pool_before = await ledger.balance(TOKEN, POOL)

        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.branch == "bnpl"
        assert result.amount == AMOUNT
        assert result.debt_amount == AMOUNT
        assert result.credit_score == 60
        assert result.last_payment_time == START
        assert await ledger.balance(TOKEN, POOL) == pool_before - AMOUNT
        assert await ledger.balance(TOKEN, MERCHANT) == AMOUNT

        debt = engine.debts.get(SUBSCRIBER)
        assert debt.amount == AMOUNT
        assert debt.token == TOKEN

    @pytest.mark.asyncio
    async def test_bnpl_refreshes_subscription_and_debt_leases(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock, credit_score=60)
        ledger.burn_all(TOKEN, SUBSCRIBER)
        clock.advance(SECONDS_PER_DAY)

        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        db_session.expire_all()
        expected = START + SECONDS_PER_DAY + LEASE
        assert engine.registry.get(SUBSCRIBER, MERCHANT).lease_expires_at == expected
        assert engine.debts.get(SUBSCRIBER).lease_expires_at == expected

    @pytest.mark.asyncio
    async def test_debt_accumulates_and_score_stays(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock, credit_score=60)
        ledger.burn_all(TOKEN, SUBSCRIBER)

        await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)
        clock.advance(INTERVAL)
        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.debt_amount == 2 * AMOUNT
        assert engine.registry.get_credit_score(SUBSCRIBER, MERCHANT) == 60
        topics = [e.topic for e in db_session.query(OutboundEvent).all()]
        assert topics.count("bnpl.triggered") == 2

    @pytest.mark.asyncio
    async def test_score_of_exactly_50_is_rejected(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock, credit_score=50)
        ledger.burn_all(TOKEN, SUBSCRIBER)
        pool_before = await ledger.balance(TOKEN, POOL)
        before = _snapshot(db_session, ledger)

        with pytest.raises(InsufficientFundsAndCreditError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert _snapshot(db_session, ledger) == before
        assert before["debt"] is None
        assert await ledger.balance(TOKEN, POOL) == pool_before
        assert await ledger.balance(TOKEN, MERCHANT) == 0

    @pytest.mark.asyncio
    async def test_score_of_51_is_financed(self, engine, db_session, ledger, clock, as_merchant, config):
        await _subscribe(db_session, clock, credit_score=51)
        ledger.burn_all(TOKEN, SUBSCRIBER)

        result = await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert result.branch == "bnpl"

    @pytest.mark.asyncio
    async def test_bnpl_requires_initialized_pool(self, engine, db_session, ledger, clock, as_merchant):
        await _subscribe(db_session, clock, credit_score=60)
        ledger.burn_all(TOKEN, SUBSCRIBER)
        before = _snapshot(db_session, ledger)

        with pytest.raises(StateError):
            await engine.collect(as_merchant, None, SUBSCRIBER, MERCHANT)

        assert _snapshot(db_session, ledger) == before

    @pytest.mark.asyncio
    async def test_second_token_while_in_debt_is_rejected(self, db_session, ledger, clock, as_merchant, config):
        ledger.mint(OTHER_TOKEN, POOL, AMOUNT * 10)
        ledger.approve(OTHER_TOKEN, POOL, settings.engine_account, AMOUNT * 10)
        db_session.add(UserDebt(subscriber=SUBSCRIBER, amount=5, token=TOKEN, lease_expires_at=START))
        db_session.commit()
        await _subscribe(db_session, clock, credit_score=60, token=OTHER_TOKEN)
        engine = PaymentEngine(db_session, ledger, clock=clock)
        before = _snapshot(db_session, ledger)

        with pytest.raises(DebtTokenMismatchError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert _snapshot(db_session, ledger) == before
        assert before["debt"] == (5, TOKEN)


class TestRejections:

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, engine, as_merchant, config, db_session):
        with pytest.raises(NotFoundError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

    @pytest.mark.asyncio
    async def test_cancelled_subscription(self, engine, db_session, ledger, clock, as_merchant, as_subscriber, config):
        await _subscribe(db_session, clock)
        await engine.registry.cancel(as_subscriber, SUBSCRIBER, MERCHANT)

        with pytest.raises(StateError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert ledger.transfers == []

    @pytest.mark.asyncio
    async def test_failed_transfer_changes_nothing(self, db_session, clock, as_merchant, config):
        # Funded but the engine was never granted an allowance
        ledger = InMemoryTokenLedger()
        ledger.mint(TOKEN, SUBSCRIBER, AMOUNT)
        engine = PaymentEngine(db_session, ledger, clock=clock)
        await _subscribe(db_session, clock)
        before = _snapshot(db_session, ledger)

        with pytest.raises(TransferError):
            await engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT)

        assert _snapshot(db_session, ledger) == before
        assert before["credit_score"] == 0
        assert before["last_payment_time"] == 0


class TestCollectAuthorization:

    @pytest.mark.asyncio
    async def test_merchant_policy_rejects_other_callers(self, engine, db_session, clock, as_subscriber, config):
        await _subscribe(db_session, clock)

        with pytest.raises(AuthorizationError):
            await engine.collect(as_subscriber, config, SUBSCRIBER, MERCHANT)

    @pytest.mark.asyncio
    async def test_open_policy_lets_anyone_trigger(self, db_session, ledger, clock, config):
        engine = PaymentEngine(db_session, ledger, clock=clock, collect_policy="open")
        await _subscribe(db_session, clock)

        result = await engine.collect(Authorizer("GSOMEONE"), config, SUBSCRIBER, MERCHANT)

        assert result.branch == "direct"


class YieldingLedger(InMemoryTokenLedger):
    """Ledger whose balance query yields to the event loop, inviting interleaving."""

    async def balance(self, token, account):
        await asyncio.sleep(0)
        return await super().balance(token, account)


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_collects_on_same_pair_serialize(self, db_session, clock, as_merchant, config):
        ledger = YieldingLedger()
        ledger.mint(TOKEN, SUBSCRIBER, AMOUNT * 10)
        ledger.approve(TOKEN, SUBSCRIBER, settings.engine_account, AMOUNT * 10)
        engine = PaymentEngine(db_session, ledger, clock=clock)
        await _subscribe(db_session, clock)

        results = await asyncio.gather(
            engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT),
            engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], TemporalError)
        assert len(ledger.transfers) == 1
        assert len(locks) == 0


class StalledLedger(InMemoryTokenLedger):
    """Ledger whose pulls never complete until the caller gives up."""

    def __init__(self):
        super().__init__()
        self.pull_started = asyncio.Event()

    async def transfer_from(self, token, spender, sender, recipient, amount):
        self.pull_started.set()
        await asyncio.Event().wait()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_collect_leaves_nothing_staged(self, db_session, clock, as_merchant, config):
        ledger = StalledLedger()
        ledger.mint(TOKEN, SUBSCRIBER, AMOUNT * 10)
        ledger.approve(TOKEN, SUBSCRIBER, settings.engine_account, AMOUNT * 10)
        engine = PaymentEngine(db_session, ledger, clock=clock)
        await _subscribe(db_session, clock)
        before = _snapshot(db_session, ledger)

        task = asyncio.create_task(engine.collect(as_merchant, config, SUBSCRIBER, MERCHANT))
        await ledger.pull_started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # A later write on the same session must not carry the abandoned payment
        await SubscriptionRegistry(db_session, clock=clock).create(
            Authorizer(SUBSCRIBER), SUBSCRIBER, "GOTHERMERCHANT", TOKEN, AMOUNT, INTERVAL
        )

        after = _snapshot(db_session, ledger)
        assert after["credit_score"] == before["credit_score"] == 0
        assert after["last_payment_time"] == before["last_payment_time"] == 0
        assert after["lease"] == before["lease"]
        assert db_session.query(OutboundEvent).filter_by(topic="payment.collected").count() == 0
        assert ledger.transfers == []
        assert len(locks) == 0
