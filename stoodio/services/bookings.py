"""
Booking command service.

Every operation re-reads the acting user and the booking from the store,
checks its preconditions, then moves the status with a conditional UPDATE
on the expected status. Ledger effects and outbox events are written in
the same transaction, so a failed command leaves nothing behind.
"""
import logging
from contextlib import ExitStack
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from stoodio.core.clock import utcnow
from stoodio.core.exceptions import (
    AlreadyClaimedError,
    ConflictError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from stoodio.core.redis_config import get_redis_client, resource_lock
from stoodio.database.db import atomic
from stoodio.models.bookings import (
    APPROVAL_STATUSES,
    BLOCKING_STATUSES,
    Booking,
    BookingRequestType,
    BookingStatus,
    can_transition,
)
from stoodio.models.users import User, UserRole
from stoodio.services import wallet
from stoodio.services.events import booking_payload, publish_event
from stoodio.services.job_board import is_job_visible, next_visible_at

logger = logging.getLogger(__name__)

MAX_DURATION_HOURS = Decimal("24")
_BLOCKING = [s.value for s in BLOCKING_STATUSES]


# ---------- loading & validation ----------
def get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found.", details={"booking_id": booking_id})
    return booking


def _load_actor(db: Session, user_id: int) -> User:
    """Canonical user record of whoever is acting; suspended users cannot act."""
    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise NotAuthorizedError("Unknown or inactive user.", details={"user_id": user_id})
    return user


def _load_target(db: Session, user_id: int, role: UserRole) -> User:
    user = db.get(User, user_id)
    if not user or not user.is_active or user.role != role.value:
        raise NotFoundError(
            f"No active {role.value.lower()} with id {user_id}.",
            details={"user_id": user_id, "role": role.value},
        )
    return user


def _validate_schedule(booking_date: Optional[date], start_time: Optional[time], duration) -> Decimal:
    missing = [
        name
        for name, value in (("date", booking_date), ("start_time", start_time), ("duration", duration))
        if value is None
    ]
    if missing:
        raise ValidationError("Missing required booking fields.", details={"missing": missing})
    duration = Decimal(str(duration))
    if duration <= 0 or duration > MAX_DURATION_HOURS:
        raise ValidationError("Duration must be between 0 and 24 hours.", details={"duration": str(duration)})
    return duration


def _validate_amount(name: str, value, required: bool = False) -> Optional[Decimal]:
    if value is None:
        if required:
            raise ValidationError("Missing required booking fields.", details={"missing": [name]})
        return None
    amount = wallet.money(value)
    if amount < 0:
        raise ValidationError(f"{name} cannot be negative.", details={name: str(amount)})
    return amount


# ---------- slot conflicts ----------
def _slot_lock_key(kind: str, resource_id: int) -> str:
    return f"slot_lock:{kind}:{resource_id}"


def _candidates_near(db: Session, booking_date: date, *criteria) -> list[Booking]:
    # A session of at most 24h can only overlap bookings dated the day
    # before, the same day or the day after.
    return list(
        db.scalars(
            select(Booking).where(
                Booking.status.in_(_BLOCKING),
                Booking.date.between(booking_date - timedelta(days=1), booking_date + timedelta(days=1)),
                *criteria,
            )
        ).all()
    )


def find_overlap(
    db: Session,
    *,
    starts_at: datetime,
    ends_at: datetime,
    stoodio_id: Optional[int] = None,
    room_name: Optional[str] = None,
    engineer_id: Optional[int] = None,
    producer_id: Optional[int] = None,
    exclude_id: Optional[int] = None,
) -> Optional[Booking]:
    """First slot-holding booking that collides with the given resources, if any."""
    day = starts_at.date()
    candidates: list[Booking] = []
    if stoodio_id is not None:
        candidates += [
            b
            for b in _candidates_near(db, day, Booking.stoodio_id == stoodio_id)
            if room_name is None or b.room_name is None or b.room_name == room_name
        ]
    if engineer_id is not None:
        candidates += _candidates_near(
            db,
            day,
            (Booking.engineer_id == engineer_id) | (Booking.requested_engineer_id == engineer_id),
        )
    if producer_id is not None:
        candidates += _candidates_near(db, day, Booking.producer_id == producer_id)

    for booking in sorted(candidates, key=lambda b: b.id):
        if booking.id != exclude_id and booking.overlaps(starts_at, ends_at):
            return booking
    return None


def _raise_conflict(conflict: Booking) -> None:
    raise ConflictError(
        "Slot unavailable: the resource is already booked at that time.",
        details={"conflicting_booking_id": conflict.id},
    )


# ---------- creation ----------
def create_direct_booking(
    db: Session,
    *,
    requester_id: int,
    request_type: str,
    booking_date: Optional[date],
    start_time: Optional[time],
    duration,
    total_cost,
    engineer_pay_rate=0,
    stoodio_id: Optional[int] = None,
    room_name: Optional[str] = None,
    room_cost=None,
    requested_engineer_id: Optional[int] = None,
    producer_id: Optional[int] = None,
    pull_up_fee=None,
    bill_to_label: bool = False,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Book a stoodio room, a specific engineer or a producer directly.

    Requests aimed at a person wait for that person's approval, or for the
    artist's label first when the label is paying. A plain room booking is
    confirmed straight away. The slot is checked under a Redis lock per
    resource so two requests cannot both take it.
    """
    now = now or utcnow()
    try:
        request_type = BookingRequestType(request_type)
    except ValueError:
        raise ValidationError(f"Unknown request type {request_type!r}.")
    duration = _validate_schedule(booking_date, start_time, duration)
    total_cost = _validate_amount("total_cost", total_cost, required=True)
    engineer_pay_rate = _validate_amount("engineer_pay_rate", engineer_pay_rate) or Decimal("0")
    room_cost = _validate_amount("room_cost", room_cost)
    pull_up_fee = _validate_amount("pull_up_fee", pull_up_fee)

    if request_type == BookingRequestType.SPECIFIC_ENGINEER and requested_engineer_id is None:
        raise ValidationError("A specific-engineer request needs requested_engineer_id.")
    if request_type == BookingRequestType.PRODUCER_PULL_UP and producer_id is None:
        raise ValidationError("A pull-up request needs producer_id.")
    if requested_engineer_id is not None and producer_id is not None:
        raise ValidationError("Request either an engineer or a producer, not both.")
    if stoodio_id is None and requested_engineer_id is None and producer_id is None:
        raise ValidationError("A booking needs a stoodio, engineer or producer.")
    if request_type == BookingRequestType.BRING_YOUR_OWN:
        engineer_pay_rate = Decimal("0")

    starts_at = datetime.combine(booking_date, start_time)
    ends_at = starts_at + timedelta(hours=float(duration))

    lock_keys = sorted(
        _slot_lock_key(kind, resource_id)
        for kind, resource_id in (
            ("stoodio", stoodio_id),
            ("engineer", requested_engineer_id),
            ("producer", producer_id),
        )
        if resource_id is not None
    )

    with ExitStack() as stack:
        client = get_redis_client()
        for key in lock_keys:
            stack.enter_context(resource_lock(client, key))

        with atomic(db):
            requester = _load_actor(db, requester_id)
            if requester.role == UserRole.STOODIO.value:
                raise NotAuthorizedError("Stoodioz post open jobs instead of booking directly.")
            if stoodio_id is not None:
                _load_target(db, stoodio_id, UserRole.STOODIO)
            if requested_engineer_id is not None:
                _load_target(db, requested_engineer_id, UserRole.ENGINEER)
            if producer_id is not None:
                _load_target(db, producer_id, UserRole.PRODUCER)

            label_id = None
            if bill_to_label:
                if requester.role != UserRole.ARTIST.value or requester.label_id is None:
                    raise ValidationError("Only artists signed to a label can bill the label.")
                label_id = requester.label_id

            conflict = find_overlap(
                db,
                starts_at=starts_at,
                ends_at=ends_at,
                stoodio_id=stoodio_id,
                room_name=room_name,
                engineer_id=requested_engineer_id,
                producer_id=producer_id,
            )
            if conflict:
                logger.warning("direct booking by user %s rejected, overlaps booking %s", requester.id, conflict.id)
                _raise_conflict(conflict)

            if label_id is not None:
                status = BookingStatus.PENDING_LABEL_APPROVAL
            elif requested_engineer_id is not None or producer_id is not None:
                status = BookingStatus.PENDING_APPROVAL
            else:
                status = BookingStatus.CONFIRMED

            booking = Booking(
                status=status.value,
                posted_by=requester.role,
                request_type=request_type.value,
                date=booking_date,
                start_time=start_time,
                duration=duration,
                engineer_pay_rate=engineer_pay_rate,
                total_cost=total_cost,
                room_cost=room_cost,
                pull_up_fee=pull_up_fee,
                booked_by_id=requester.id,
                artist_id=requester.id if requester.role == UserRole.ARTIST.value else None,
                stoodio_id=stoodio_id,
                room_name=room_name,
                requested_engineer_id=requested_engineer_id,
                producer_id=producer_id,
                label_id=label_id,
                latitude=latitude,
                longitude=longitude,
                created_at=now,
                confirmed_at=now if status == BookingStatus.CONFIRMED else None,
            )
            db.add(booking)
            db.flush()  # gets booking.id

            publish_event(db, "booking.created", booking_payload(booking))
            if status == BookingStatus.CONFIRMED:
                publish_event(db, "booking.confirmed", booking_payload(booking))
            logger.info("booking %s created by user %s as %s", booking.id, requester.id, booking.status)
            return booking


def post_open_job(
    db: Session,
    *,
    stoodio_id: int,
    booking_date: Optional[date],
    start_time: Optional[time],
    duration,
    engineer_pay_rate,
    total_cost=None,
    room_name: Optional[str] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Put an unclaimed engineering job on the board, stamped with its posting time."""
    now = now or utcnow()
    with atomic(db):
        stoodio = _load_actor(db, stoodio_id)
        if stoodio.role != UserRole.STOODIO.value:
            raise NotAuthorizedError("Only stoodioz can post jobs.")

        duration = _validate_schedule(booking_date, start_time, duration)
        engineer_pay_rate = _validate_amount("engineer_pay_rate", engineer_pay_rate, required=True)
        total_cost = _validate_amount("total_cost", total_cost)
        if total_cost is None:
            total_cost = wallet.money(engineer_pay_rate * duration)

        booking = Booking(
            status=BookingStatus.PENDING.value,
            posted_by=UserRole.STOODIO.value,
            request_type=BookingRequestType.FIND_AVAILABLE.value,
            date=booking_date,
            start_time=start_time,
            duration=duration,
            engineer_pay_rate=engineer_pay_rate,
            total_cost=total_cost,
            booked_by_id=stoodio.id,
            stoodio_id=stoodio.id,
            room_name=room_name,
            latitude=latitude if latitude is not None else stoodio.latitude,
            longitude=longitude if longitude is not None else stoodio.longitude,
            created_at=now,
            posted_at=now,
        )
        db.add(booking)
        db.flush()

        publish_event(db, "job.posted", booking_payload(booking, engineer_pay_rate=engineer_pay_rate))
        logger.info("job %s posted by stoodio %s", booking.id, stoodio.id)
        return booking


# ---------- claiming & approval ----------
def accept_job(
    db: Session,
    *,
    booking_id: int,
    engineer_id: int,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Claim an open job for an engineer.

    The claim is a single ``UPDATE ... WHERE status = 'PENDING'``: of several
    engineers racing for the same job exactly one update hits a row, the
    rest get ``AlreadyClaimedError``.
    """
    now = now or utcnow()
    with resource_lock(get_redis_client(), _slot_lock_key("engineer", engineer_id)):
        with atomic(db):
            engineer = _load_actor(db, engineer_id)
            if engineer.role != UserRole.ENGINEER.value:
                raise NotAuthorizedError("Only engineers can accept jobs.")
            booking = get_booking(db, booking_id)

            if booking.posted_by != UserRole.STOODIO.value:
                raise InvalidStateError("Booking is not an open job.", details={"booking_id": booking_id})
            if booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value):
                raise AlreadyClaimedError("Job no longer available.", details={"booking_id": booking_id})
            if booking.status != BookingStatus.PENDING.value:
                raise InvalidStateError(
                    f"Job is {booking.status}.", details={"booking_id": booking_id, "status": booking.status}
                )
            if not is_job_visible(booking, engineer.ranking_tier, now):
                raise NotAuthorizedError(
                    "Job is not yet visible for your ranking tier.",
                    details={"visible_at": next_visible_at(booking, engineer.ranking_tier).isoformat()},
                )

            conflict = find_overlap(
                db, starts_at=booking.starts_at, ends_at=booking.ends_at, engineer_id=engineer.id
            )
            if conflict:
                _raise_conflict(conflict)

            payout = wallet.money(booking.engineer_pay_rate * booking.duration)
            res = db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .where(Booking.status == BookingStatus.PENDING.value)
                .values(
                    status=BookingStatus.CONFIRMED.value,
                    engineer_id=engineer.id,
                    engineer_payout=payout,
                    confirmed_at=now,
                )
            )
            if res.rowcount != 1:  # type: ignore
                logger.warning("engineer %s lost the race for job %s", engineer.id, booking_id)
                raise AlreadyClaimedError("Job no longer available.", details={"booking_id": booking_id})

            db.refresh(booking)
            publish_event(db, "job.accepted", booking_payload(booking, engineer_id=engineer.id))
            publish_event(db, "booking.confirmed", booking_payload(booking))
            logger.info("job %s accepted by engineer %s", booking_id, engineer.id)
            return booking


def _expected_approver(booking: Booking) -> Optional[int]:
    if booking.status == BookingStatus.PENDING_LABEL_APPROVAL.value:
        return booking.label_id
    return booking.requested_engineer_id or booking.producer_id


def _load_for_approval(db: Session, booking_id: int, approver_id: int) -> tuple[Booking, User]:
    approver = _load_actor(db, approver_id)
    booking = get_booking(db, booking_id)
    if BookingStatus(booking.status) not in APPROVAL_STATUSES:
        raise InvalidStateError(
            f"Booking is {booking.status}, not awaiting approval.",
            details={"booking_id": booking_id, "status": booking.status},
        )
    if approver.id != _expected_approver(booking):
        raise NotAuthorizedError("Only the requested party can answer this request.")
    return booking, approver


def _transition(db: Session, booking: Booking, expected: str, **values) -> None:
    """Conditional status write; fails if someone moved the booking first."""
    if not can_transition(expected, values["status"]):
        raise InvalidStateError(
            f"Booking cannot go from {expected} to {values['status']}.",
            details={"booking_id": booking.id, "status": expected},
        )
    res = db.execute(
        update(Booking).where(Booking.id == booking.id).where(Booking.status == expected).values(**values)
    )
    if res.rowcount != 1:  # type: ignore
        raise InvalidStateError(
            "Booking changed while processing, refresh and retry.",
            details={"booking_id": booking.id, "expected_status": expected},
        )
    db.refresh(booking)


def approve_request(
    db: Session,
    *,
    booking_id: int,
    approver_id: int,
    now: Optional[datetime] = None,
) -> Booking:
    now = now or utcnow()
    with atomic(db):
        booking, approver = _load_for_approval(db, booking_id, approver_id)
        values = {"status": BookingStatus.CONFIRMED.value, "confirmed_at": now}
        if booking.requested_engineer_id is not None:
            values.update(
                engineer_id=booking.requested_engineer_id,
                requested_engineer_id=None,
                engineer_payout=wallet.money(booking.engineer_pay_rate * booking.duration),
            )
        _transition(db, booking, booking.status, **values)

        publish_event(db, "booking.confirmed", booking_payload(booking, approved_by=approver.id))
        logger.info("booking %s approved by user %s", booking.id, approver.id)
        return booking


def deny_request(
    db: Session,
    *,
    booking_id: int,
    approver_id: int,
    now: Optional[datetime] = None,
) -> Booking:
    """Turn a request down. A payment already escrowed for it is refunded."""
    now = now or utcnow()
    with atomic(db):
        booking, approver = _load_for_approval(db, booking_id, approver_id)
        _transition(db, booking, booking.status, status=BookingStatus.DENIED.value)
        refunds = wallet.reverse_booking_charges(db, booking, now)

        publish_event(
            db,
            "booking.denied",
            booking_payload(booking, denied_by=approver.id, refunded=[r.id for r in refunds]),
        )
        logger.info("booking %s denied by user %s (%d refunds)", booking.id, approver.id, len(refunds))
        return booking


# ---------- completion & cancellation ----------
def _completing_parties(booking: Booking) -> set[int]:
    parties = {booking.engineer_id, booking.producer_id, booking.stoodio_id, booking.booked_by_id}
    parties.discard(None)
    return parties  # type: ignore[return-value]


def complete_booking(
    db: Session,
    *,
    booking_id: int,
    requester_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Mark a confirmed booking completed and settle its money.

    Completing an already completed booking returns it unchanged, so a
    client retrying after a dropped response never pays twice.
    """
    now = now or utcnow()
    with atomic(db):
        booking = get_booking(db, booking_id)
        if booking.status == BookingStatus.COMPLETED.value:
            logger.info("booking %s already completed, nothing to do", booking_id)
            return booking
        if requester_id is not None:
            requester = _load_actor(db, requester_id)
            if requester.id not in _completing_parties(booking):
                raise NotAuthorizedError("Only booking participants can complete it.")
        if booking.status != BookingStatus.CONFIRMED.value:
            raise InvalidStateError(
                f"Booking is {booking.status}, only confirmed bookings can complete.",
                details={"booking_id": booking_id, "status": booking.status},
            )

        res = db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.CONFIRMED.value)
            .values(status=BookingStatus.COMPLETED.value, completed_at=now)
        )
        if res.rowcount != 1:  # type: ignore
            db.refresh(booking)
            if booking.status == BookingStatus.COMPLETED.value:
                return booking
            raise InvalidStateError("Booking changed while completing.", details={"booking_id": booking_id})
        db.refresh(booking)

        wallet.settle_completed_booking(db, booking, now)

        credited = {booking.payer_id, booking.engineer_id, booking.producer_id}
        credited.discard(None)
        db.execute(
            update(User)
            .where(User.id.in_(credited))
            .values(sessions_completed=User.sessions_completed + 1),
            execution_options={"synchronize_session": "fetch"},
        )

        publish_event(db, "booking.completed", booking_payload(booking))
        logger.info("booking %s completed", booking_id)
        return booking


def cancel_booking(
    db: Session,
    *,
    booking_id: int,
    requester_id: int,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Cancel a booking that has not started yet.

    Any charge already taken for it is reversed with a new REFUND row; the
    original charge stays in the ledger as it was.
    """
    now = now or utcnow()
    with atomic(db):
        requester = _load_actor(db, requester_id)
        booking = get_booking(db, booking_id)
        if requester.id not in booking.participant_ids():
            raise NotAuthorizedError("Only booking participants can cancel it.")
        if booking.is_terminal:
            raise InvalidStateError(
                f"Booking is already {booking.status}.",
                details={"booking_id": booking_id, "status": booking.status},
            )
        if now >= booking.starts_at:
            raise InvalidStateError(
                "The session has already started and can no longer be cancelled.",
                details={"booking_id": booking_id, "starts_at": booking.starts_at.isoformat()},
            )

        _transition(
            db,
            booking,
            booking.status,
            status=BookingStatus.CANCELLED.value,
            cancelled_at=now,
            cancelled_by_id=requester.id,
        )
        refunds = wallet.reverse_booking_charges(db, booking, now)

        publish_event(
            db,
            "booking.cancelled",
            booking_payload(booking, cancelled_by=requester.id, refunded=[r.id for r in refunds]),
        )
        logger.info("booking %s cancelled by user %s (%d refunds)", booking_id, requester.id, len(refunds))
        return booking


def list_bookings_for_user(db: Session, *, user_id: int) -> list[Booking]:
    user = _load_actor(db, user_id)
    return list(
        db.scalars(
            select(Booking)
            .where(
                (Booking.booked_by_id == user.id)
                | (Booking.artist_id == user.id)
                | (Booking.engineer_id == user.id)
                | (Booking.producer_id == user.id)
                | (Booking.stoodio_id == user.id)
                | (Booking.label_id == user.id)
                | (Booking.requested_engineer_id == user.id)
            )
            .order_by(Booking.date, Booking.created_at, Booking.id)
        ).all()
    )
