"""Shared fixtures: in-memory database, token ledger and a manual clock."""
import os

# Must be set before sorosub.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENT_SINK_URL"] = ""
os.environ["COLLECT_AUTHORIZATION"] = "merchant"

import pytest

from sorosub.config import settings
from sorosub.database import Base, SessionLocal, engine
from sorosub.services.admin import AdminConfig
from sorosub.services.auth import Authorizer
from sorosub.services.clock import ManualClock
from sorosub.services.token_ledger import InMemoryTokenLedger

SUBSCRIBER = "GSUBSCRIBER"
MERCHANT = "GMERCHANT"
ADMIN = "GADMIN"
POOL = "GPOOL"
TOKEN = "USDC"
OTHER_TOKEN = "EURC"

AMOUNT = 1_000_000_000
INTERVAL = 2_592_000  # 30 days
START = 1_700_000_000


@pytest.fixture
def db_session():
    """Fresh schema per test on the shared in-memory SQLite connection."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return ManualClock(start=START)


@pytest.fixture
def ledger():
    """Token ledger with a funded subscriber and pool, both approving the engine."""
    ledger = InMemoryTokenLedger()
    ledger.mint(TOKEN, SUBSCRIBER, AMOUNT * 10)
    ledger.mint(TOKEN, POOL, AMOUNT * 100)
    ledger.approve(TOKEN, SUBSCRIBER, settings.engine_account, AMOUNT * 20)
    ledger.approve(TOKEN, POOL, settings.engine_account, AMOUNT * 100)
    return ledger


@pytest.fixture
def config():
    return AdminConfig(admin=ADMIN, liquidity_pool=POOL)


@pytest.fixture
def as_subscriber():
    return Authorizer(SUBSCRIBER)


@pytest.fixture
def as_merchant():
    return Authorizer(MERCHANT)
