import json
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from stoodio.core.clock import utcnow
from stoodio.models.bookings import Booking
from stoodio.models.events import OutboxEvent

logger = logging.getLogger(__name__)


def _json_default(o: Any):
    if isinstance(o, (datetime, date, time)):
        return o.isoformat()
    if isinstance(o, Decimal):
        return str(o)
    raise TypeError(f"{type(o).__name__} is not JSON serializable")


def publish_event(db: Session, topic: str, payload: dict[str, Any]) -> OutboxEvent:
    """
    Queue a domain event in the outbox.

    Must be called inside the caller's transaction so the event commits (or
    rolls back) together with the state change it describes.
    """
    event = OutboxEvent(
        topic=topic,
        payload=json.dumps(payload, default=_json_default, separators=(",", ":")),
        created_at=utcnow(),
    )
    db.add(event)
    return event


def booking_payload(booking: Booking, **extra: Any) -> dict[str, Any]:
    payload = {
        "booking_id": booking.id,
        "status": booking.status,
        "date": booking.date,
        "start_time": booking.start_time,
        "participant_ids": sorted(booking.participant_ids()),
    }
    payload.update(extra)
    return payload


def dispatch_pending_events(
    db: Session,
    deliver: Callable[[str, dict[str, Any]], None],
    *,
    limit: int = 100,
) -> int:
    """
    Hand undelivered events to ``deliver`` in insertion order.

    A failing event is left undelivered with its error recorded, so the next
    run retries it. Returns how many events were delivered.
    """
    events = db.scalars(
        select(OutboxEvent)
        .where(OutboxEvent.delivered_at.is_(None))
        .order_by(OutboxEvent.id)
        .limit(limit)
    ).all()

    delivered = 0
    for event in events:
        event.attempts += 1
        try:
            deliver(event.topic, json.loads(event.payload))
        except Exception as exc:
            event.last_error = str(exc)[:500]
            logger.warning("outbox event %s (%s) delivery failed: %s", event.id, event.topic, exc)
            continue
        event.delivered_at = utcnow()
        event.last_error = None
        delivered += 1
    db.commit()
    return delivered


def log_delivery(topic: str, payload: dict[str, Any]) -> None:
    """Default sink: structured log line the notification service tails."""
    logger.info("domain_event %s", topic, extra={"topic": topic, "payload": payload})
