"""Record leases.

Every successful write pushes a record's expiry out to a fixed horizon.
Reclaiming lapsed records is a storage concern run by operators through
``reap_expired``; business operations never look at leases.
"""
from typing import Optional, Union

from sqlalchemy.orm import Session

from sorosub.config import settings
from sorosub.logging import get_logger
from sorosub.models import Subscription, UserDebt

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def lease_horizon(now: int, ttl_days: Optional[int] = None) -> int:
    """Expiry timestamp for a record written at ``now``."""
    days = settings.record_ttl_days if ttl_days is None else ttl_days
    return now + days * SECONDS_PER_DAY


def extend_lease(record: Union[Subscription, UserDebt], now: int) -> None:
    record.lease_expires_at = lease_horizon(now)


def reap_expired(db: Session, now: int) -> dict[str, int]:
    """
    Delete subscription and debt records whose lease lapsed before ``now``.

    Returns:
        Number of deleted rows per record kind
    """
    subscriptions = (
        db.query(Subscription)
        .filter(Subscription.lease_expires_at < now)
        .delete(synchronize_session=False)
    )
    debts = (
        db.query(UserDebt)
        .filter(UserDebt.lease_expires_at < now)
        .delete(synchronize_session=False)
    )
    db.commit()

    logger.info("expired_records_reaped", subscriptions=subscriptions, debts=debts, now=now)

    return {"subscriptions": subscriptions, "debts": debts}
