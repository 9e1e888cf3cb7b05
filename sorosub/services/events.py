"""Event publication through a transactional outbox."""
import uuid
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog
from sqlalchemy.orm import Session

from sorosub.config import settings
from sorosub.models import OutboundEvent
from sorosub import metrics

logger = structlog.get_logger()

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
PAYMENT_COLLECTED = "payment.collected"
BNPL_TRIGGERED = "bnpl.triggered"
DEBT_REPAID = "debt.repaid"


class EventPublisher:
    """
    Publishes domain events to the event sink.

    Events are staged in the outbox table on the caller's session, so they
    commit (or roll back) together with the business change that produced
    them. Delivery happens afterwards and never affects the business outcome:
    - Persistence of delivery attempts
    - Bounded retry tracking
    - Async delivery over HTTP
    """

    def __init__(
        self,
        db: Session,
        target_url: Optional[str] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the event publisher.

        Args:
            db: SQLAlchemy database session
            target_url: Event sink URL (defaults to settings.event_sink_url)
            max_attempts: Delivery attempts before an event is marked failed
            transport: Optional httpx transport (e.g. a MockTransport in tests)
        """
        self.db = db
        self.target_url = settings.event_sink_url if target_url is None else target_url
        self.max_attempts = max_attempts or settings.event_max_attempts
        self.transport = transport

    def publish(self, topic: str, payload: dict[str, Any]) -> OutboundEvent:
        """Stage an event in the outbox. Committed by the caller."""
        event = OutboundEvent(
            id=str(uuid.uuid4()),
            topic=topic,
            payload={"event": topic, **payload},
            target_url=self.target_url,
            status="pending",
            attempts=0,
            created_at=datetime.utcnow(),
        )
        self.db.add(event)
        metrics.EVENTS_PUBLISHED.labels(topic=topic).inc()
        return event

    def _update_queue_depth(self) -> None:
        """Update the outbox depth metric."""
        pending_count = (
            self.db.query(OutboundEvent)
            .filter(OutboundEvent.status == "pending")
            .count()
        )
        metrics.set_event_queue_depth(pending_count)

    async def _deliver(self, event: OutboundEvent) -> bool:
        """
        Attempt to deliver one event.

        Args:
            event: The outbox record to deliver

        Returns:
            True if delivery succeeded
        """
        if not event.target_url:
            return False

        logger.info("delivering_event",
                    event_id=event.id,
                    topic=event.topic,
                    target_url=event.target_url)

        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            try:
                response = await client.post(
                    event.target_url,
                    json=event.payload,
                    headers={"Content-Type": "application/json"},
                )

                event.attempts += 1
                event.last_attempt_at = datetime.utcnow()

                if response.status_code < 400:
                    event.status = "delivered"
                    self.db.commit()
                    logger.info("event_delivered",
                                event_id=event.id,
                                status_code=response.status_code)
                    return True

                event.status = "failed" if event.attempts >= self.max_attempts else "pending"
                self.db.commit()
                logger.warning("event_delivery_failed",
                               event_id=event.id,
                               status_code=response.status_code,
                               attempts=event.attempts)
                return False

            except httpx.RequestError as e:
                event.attempts += 1
                event.last_attempt_at = datetime.utcnow()
                event.status = "failed" if event.attempts >= self.max_attempts else "pending"
                self.db.commit()

                logger.error("event_request_error",
                             event_id=event.id,
                             error=str(e),
                             attempts=event.attempts)
                return False

    async def deliver_pending(self) -> int:
        """
        Deliver all pending events that haven't exceeded max attempts.

        Events left pending by an earlier failed attempt count as retries.

        Returns:
            Number of events successfully delivered
        """
        pending = (
            self.db.query(OutboundEvent)
            .filter(OutboundEvent.status == "pending")
            .filter(OutboundEvent.attempts < self.max_attempts)
            .order_by(OutboundEvent.created_at)
            .all()
        )

        delivered = 0
        for event in pending:
            if not event.target_url:
                continue
            is_retry = event.attempts > 0
            success = await self._deliver(event)
            metrics.record_event_delivery(success=success, is_retry=is_retry)
            if success:
                delivered += 1

        if pending:
            logger.info("pending_events_delivered",
                        total=len(pending),
                        delivered=delivered)

        self._update_queue_depth()

        return delivered
