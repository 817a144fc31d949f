import contextlib

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stoodio.core.exceptions import NotAuthorizedError
from stoodio.database.db import get_db
from stoodio.models.users import User
from stoodio.routes.deps import get_current_user
from stoodio.schemas.bookings import BookingOut, DirectBookingRequest
from stoodio.services import bookings as booking_service
from stoodio.tasks import dispatch_outbox_task

router = APIRouter(prefix="/bookings", tags=["bookings"])


def enqueue_dispatch() -> None:
    # enqueue durable background work to fan out the outbox
    with contextlib.suppress(Exception):
        dispatch_outbox_task.delay()


@router.post("", response_model=BookingOut, status_code=201)
def create_booking(
    payload: DirectBookingRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    booking = booking_service.create_direct_booking(
        db,
        requester_id=user.id,
        request_type=payload.request_type.value,
        booking_date=payload.date,
        start_time=payload.start_time,
        duration=payload.duration,
        total_cost=payload.total_cost,
        engineer_pay_rate=payload.engineer_pay_rate,
        stoodio_id=payload.stoodio_id,
        room_name=payload.room_name,
        room_cost=payload.room_cost,
        requested_engineer_id=payload.requested_engineer_id,
        producer_id=payload.producer_id,
        pull_up_fee=payload.pull_up_fee,
        bill_to_label=payload.bill_to_label,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    enqueue_dispatch()
    return booking


@router.get("", response_model=list[BookingOut])
def my_bookings(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return booking_service.list_bookings_for_user(db, user_id=user.id)


@router.get("/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.get_booking(db, booking_id)
    if user.id not in booking.participant_ids():
        raise NotAuthorizedError("Only booking participants can view it.")
    return booking


@router.post("/{booking_id}/approve", response_model=BookingOut)
def approve_booking(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.approve_request(db, booking_id=booking_id, approver_id=user.id)
    enqueue_dispatch()
    return booking


@router.post("/{booking_id}/deny", response_model=BookingOut)
def deny_booking(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.deny_request(db, booking_id=booking_id, approver_id=user.id)
    enqueue_dispatch()
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.cancel_booking(db, booking_id=booking_id, requester_id=user.id)
    enqueue_dispatch()
    return booking


@router.post("/{booking_id}/complete", response_model=BookingOut)
def complete_booking(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.complete_booking(db, booking_id=booking_id, requester_id=user.id)
    enqueue_dispatch()
    return booking
