"""API route handlers for the SoroSub payment service."""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from sorosub.api.dependencies import (
    get_admin_config, get_authorizer, get_clock, get_token_ledger
)
from sorosub.database import get_db
from sorosub.errors import NotFoundError
from sorosub.logging import get_logger, TimedOperation
from sorosub.models import Subscription
from sorosub.schemas import (
    AdminConfigResponse, InitializeRequest, InitializedResponse, LiquidityPoolResponse,
    SubscriptionCreateRequest, SubscriptionResponse, CanProcessResponse,
    CreditScoreResponse, CollectionResponse,
    DebtResponse, RepayRequest, RepayResponse,
)
from sorosub.services.admin import AdminConfig, AdminService
from sorosub.services.auth import Authorizer
from sorosub.services.debt import DebtLedger
from sorosub.services.engine import PaymentEngine
from sorosub.services.events import EventPublisher
from sorosub.services.registry import SubscriptionRegistry
from sorosub.services.token_ledger import TokenLedger

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


# =============================================================================
# ADMIN
# =============================================================================

@router.post("/admin/initialize", response_model=AdminConfigResponse, tags=["admin"])
async def initialize(
    request_body: InitializeRequest,
    db: Session = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    clock=Depends(get_clock),
):
    """
    Bootstrap the service with its admin and liquidity pool.

    Succeeds exactly once; every later call is rejected with 409.
    """
    config = await AdminService(db).initialize(
        authorizer, request_body.admin, request_body.liquidity_pool, clock.now()
    )
    return AdminConfigResponse(admin=config.admin, liquidity_pool=config.liquidity_pool)


@router.get("/admin/initialized", response_model=InitializedResponse, tags=["admin"])
async def is_initialized(db: Session = Depends(get_db)):
    return InitializedResponse(initialized=AdminService(db).is_initialized())


@router.get("/admin/liquidity-pool", response_model=LiquidityPoolResponse, tags=["admin"])
async def get_liquidity_pool(db: Session = Depends(get_db)):
    return LiquidityPoolResponse(liquidity_pool=AdminService(db).get_liquidity_pool())


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=201, tags=["subscriptions"])
async def create_subscription(
    request_body: SubscriptionCreateRequest,
    db: Session = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    clock=Depends(get_clock),
):
    """
    Create a subscription from the calling subscriber to a merchant.

    The first payment can be collected immediately; later ones once the
    interval has elapsed. Creating over a cancelled subscription starts a
    fresh history with a credit score of 0.
    """
    registry = SubscriptionRegistry(db, clock=clock)
    with TimedOperation("subscription_create", logger,
                        subscriber=request_body.subscriber,
                        merchant=request_body.merchant):
        subscription = await registry.create(
            authorizer,
            request_body.subscriber,
            request_body.merchant,
            request_body.token,
            request_body.amount,
            request_body.interval,
        )
    response = _subscription_response(subscription)
    await _deliver_events(db)
    return response


@router.get(
    "/subscriptions/{subscriber}/{merchant}",
    response_model=SubscriptionResponse,
    tags=["subscriptions"],
)
async def get_subscription(
    subscriber: str,
    merchant: str,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    registry = SubscriptionRegistry(db, clock=clock)
    return _subscription_response(registry.get(subscriber, merchant))


@router.post(
    "/subscriptions/{subscriber}/{merchant}/cancel",
    response_model=SubscriptionResponse,
    tags=["subscriptions"],
)
async def cancel_subscription(
    subscriber: str,
    merchant: str,
    db: Session = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    clock=Depends(get_clock),
):
    """Deactivate a subscription. Only the subscriber may cancel."""
    registry = SubscriptionRegistry(db, clock=clock)
    with TimedOperation("subscription_cancel", logger, subscriber=subscriber, merchant=merchant):
        subscription = await registry.cancel(authorizer, subscriber, merchant)
    response = _subscription_response(subscription)
    await _deliver_events(db)
    return response


@router.get(
    "/subscriptions/{subscriber}/{merchant}/can-process",
    response_model=CanProcessResponse,
    tags=["subscriptions"],
)
async def can_process_payment(
    subscriber: str,
    merchant: str,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """Whether a collection would pass the active and interval checks right now."""
    registry = SubscriptionRegistry(db, clock=clock)
    return CanProcessResponse(can_process=registry.can_process(subscriber, merchant))


@router.get(
    "/subscriptions/{subscriber}/{merchant}/credit-score",
    response_model=CreditScoreResponse,
    tags=["subscriptions"],
)
async def get_credit_score(
    subscriber: str,
    merchant: str,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    registry = SubscriptionRegistry(db, clock=clock)
    return CreditScoreResponse(credit_score=registry.get_credit_score(subscriber, merchant))


@router.post(
    "/subscriptions/{subscriber}/{merchant}/collect",
    response_model=CollectionResponse,
    tags=["payments"],
)
async def collect_payment(
    subscriber: str,
    merchant: str,
    db: Session = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    config: Optional[AdminConfig] = Depends(get_admin_config),
    clock=Depends(get_clock),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    """
    Collect the payment due on a subscription.

    This endpoint:
    1. Checks the subscription is active and the interval has elapsed
    2. Pays the merchant from the subscriber's balance when it covers the amount
    3. Otherwise pays from the liquidity pool if the credit score is above 50,
       recording the amount as debt
    4. Otherwise rejects with 402 and changes nothing
    """
    engine = PaymentEngine(db, ledger, clock=clock)
    result = await engine.collect(authorizer, config, subscriber, merchant)
    await _deliver_events(db)
    return CollectionResponse(
        branch=result.branch,
        amount=result.amount,
        credit_score=result.credit_score,
        last_payment_time=result.last_payment_time,
        debt_amount=result.debt_amount,
    )


# =============================================================================
# DEBTS
# =============================================================================

@router.get("/debts/{subscriber}", response_model=DebtResponse, tags=["debts"])
async def get_user_debt(
    subscriber: str,
    db: Session = Depends(get_db),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    """Outstanding BNPL debt. 404 when the subscriber owes nothing."""
    debt = DebtLedger(db, ledger).get(subscriber)
    if debt is None:
        raise NotFoundError("No debt found for user")
    return DebtResponse(subscriber=debt.subscriber, amount=debt.amount, token=debt.token)


@router.post("/debts/{subscriber}/repay", response_model=RepayResponse, tags=["debts"])
async def repay_debt(
    subscriber: str,
    request_body: RepayRequest,
    db: Session = Depends(get_db),
    authorizer: Authorizer = Depends(get_authorizer),
    config: Optional[AdminConfig] = Depends(get_admin_config),
    clock=Depends(get_clock),
    ledger: TokenLedger = Depends(get_token_ledger),
):
    """Repay BNPL debt to the liquidity pool. Returns what is still owed."""
    debts = DebtLedger(db, ledger, clock=clock)
    with TimedOperation("debt_repay", logger, subscriber=subscriber):
        remaining = await debts.repay(authorizer, config, subscriber, request_body.amount)
    await _deliver_events(db)
    return RepayResponse(subscriber=subscriber, repaid=request_body.amount, remaining=remaining)


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscriber=subscription.subscriber,
        merchant=subscription.merchant,
        token=subscription.token,
        amount=subscription.amount,
        interval=subscription.interval_seconds,
        last_payment_time=subscription.last_payment_time,
        is_active=subscription.is_active,
        credit_score=subscription.credit_score,
    )


async def _deliver_events(db: Session) -> None:
    """Push committed outbox events to the sink. Never fails the request."""
    try:
        await EventPublisher(db).deliver_pending()
    except Exception as e:
        logger.error("event_delivery_error", error=str(e))
