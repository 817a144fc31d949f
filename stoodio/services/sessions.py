"""
Active session runtime.

A confirmed booking is EN_ROUTE until its engineer starts the session,
then IN_SESSION until they end it, which completes the booking. The state
lives in Redis only; the booking row keeps its own status.
"""
import enum
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from stoodio.core.clock import utcnow
from stoodio.core.config import settings
from stoodio.core.exceptions import InvalidStateError, NotAuthorizedError, ValidationError
from stoodio.core.redis_config import get_redis_client
from stoodio.database.db import atomic
from stoodio.models.bookings import Booking, BookingStatus
from stoodio.services.bookings import complete_booking, get_booking
from stoodio.services.events import booking_payload, publish_event

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    EN_ROUTE = "EN_ROUTE"
    IN_SESSION = "IN_SESSION"


def _session_key(booking_id: int) -> str:
    return f"session:{booking_id}"


def get_session_state(db: Session, *, booking_id: int) -> Optional[SessionState]:
    """Current runtime state, or ``None`` when the booking is not confirmed."""
    booking = get_booking(db, booking_id)
    if booking.status != BookingStatus.CONFIRMED.value:
        return None
    state = get_redis_client().hget(_session_key(booking_id), "state")
    return SessionState(state) if state else SessionState.EN_ROUTE


def _is_assigned_engineer(booking: Booking, engineer_id: int) -> bool:
    return booking.engineer_id is not None and booking.engineer_id == engineer_id


def start_session(
    db: Session,
    *,
    booking_id: int,
    engineer_id: int,
    now: Optional[datetime] = None,
) -> Optional[SessionState]:
    """
    EN_ROUTE -> IN_SESSION.

    Anyone other than the assigned engineer gets a silent no-op (``None``).
    The session cannot start before its scheduled time.
    """
    now = now or utcnow()
    booking = get_booking(db, booking_id)
    if booking.status != BookingStatus.CONFIRMED.value:
        raise InvalidStateError(
            f"Booking is {booking.status}, only confirmed bookings can start.",
            details={"booking_id": booking_id, "status": booking.status},
        )
    if not _is_assigned_engineer(booking, engineer_id):
        logger.info("user %s is not the engineer on booking %s, ignoring start", engineer_id, booking_id)
        return None
    if settings.ENFORCE_SESSION_START_TIME and now < booking.starts_at:
        raise InvalidStateError(
            "The session cannot start before its scheduled time.",
            details={"booking_id": booking_id, "starts_at": booking.starts_at.isoformat()},
        )

    client = get_redis_client()
    key = _session_key(booking_id)
    if client.hget(key, "state") == SessionState.IN_SESSION.value:
        return SessionState.IN_SESSION

    client.hset(
        key,
        mapping={
            "state": SessionState.IN_SESSION.value,
            "engineer_id": str(engineer_id),
            "started_at": now.isoformat(),
        },
    )
    client.expire(key, settings.SESSION_STATE_TTL_SECONDS)
    try:
        with atomic(db):
            publish_event(db, "session.started", booking_payload(booking, engineer_id=engineer_id, started_at=now))
    except Exception:
        client.delete(key)
        raise
    logger.info("session for booking %s started by engineer %s", booking_id, engineer_id)
    return SessionState.IN_SESSION


def end_session(
    db: Session,
    *,
    booking_id: int,
    engineer_id: int,
    confirm: bool = False,
    now: Optional[datetime] = None,
) -> Booking:
    """IN_SESSION -> completed booking. Ending is final, so it must be confirmed."""
    client = get_redis_client()
    key = _session_key(booking_id)
    booking = get_booking(db, booking_id)
    if booking.status == BookingStatus.COMPLETED.value:
        client.delete(key)
        return booking
    if not confirm:
        raise ValidationError("Ending a session must be confirmed.")
    if not _is_assigned_engineer(booking, engineer_id):
        raise NotAuthorizedError("Only the assigned engineer can end the session.")
    if client.hget(key, "state") != SessionState.IN_SESSION.value:
        raise InvalidStateError("The session has not started.", details={"booking_id": booking_id})

    booking = complete_booking(db, booking_id=booking_id, requester_id=engineer_id, now=now)
    client.delete(key)
    return booking
