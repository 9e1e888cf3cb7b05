"""SQLAlchemy ORM models for the SoroSub payment service."""
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, BigInteger, Boolean, DateTime,
    Integer, Text, JSON
)
from sqlalchemy.types import TypeDecorator

from sorosub.database import Base

# Ledger amounts are signed 128-bit values
I128_MAX = 2**127 - 1
I128_MIN = -(2**127)
INT64_MAX = 2**63 - 1  # timestamps and intervals live in BIGINT columns

ADMIN_CONFIG_ID = 1


class Int128(TypeDecorator):
    """Exact 128-bit integer stored as a decimal string.

    BIGINT tops out at 2**63 - 1 and SQLite NUMERIC degrades to REAL past
    that, so amounts go to the database as text.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = int(value)
        if not I128_MIN <= value <= I128_MAX:
            raise ValueError(f"{value} does not fit in 128 bits")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Subscription(Base):
    """A recurring payment from a subscriber to a merchant."""
    __tablename__ = "subscription"

    subscriber = Column(Text, primary_key=True)
    merchant = Column(Text, primary_key=True)
    token = Column(Text, nullable=False)
    amount = Column(Int128, nullable=False)
    interval_seconds = Column(BigInteger, nullable=False)
    last_payment_time = Column(BigInteger, nullable=False, default=0)  # 0 = never paid
    is_active = Column(Boolean, nullable=False, default=True)
    credit_score = Column(BigInteger, nullable=False, default=0)
    lease_expires_at = Column(BigInteger, nullable=False, index=True)


class UserDebt(Base):
    """Outstanding BNPL financing owed by a subscriber to the liquidity pool."""
    __tablename__ = "user_debt"

    subscriber = Column(Text, primary_key=True)
    amount = Column(Int128, nullable=False)
    token = Column(Text, nullable=False)
    lease_expires_at = Column(BigInteger, nullable=False, index=True)


class AdminConfigRecord(Base):
    """Single-row bootstrap configuration."""
    __tablename__ = "admin_config"

    id = Column(Integer, primary_key=True, default=ADMIN_CONFIG_ID)
    admin = Column(Text, nullable=False)
    liquidity_pool = Column(Text, nullable=False)
    initialized_at = Column(BigInteger, nullable=False)


class OutboundEvent(Base):
    """Outbox entry for an event awaiting delivery to the event sink."""
    __tablename__ = "outbound_event"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    topic = Column(Text, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    target_url = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    last_attempt_at = Column(DateTime(timezone=True))
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
