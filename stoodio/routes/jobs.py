from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stoodio.database.db import get_db
from stoodio.models.users import User
from stoodio.routes.bookings import enqueue_dispatch
from stoodio.routes.deps import get_current_user
from stoodio.schemas.bookings import BookingOut, JobPostRequest
from stoodio.services import bookings as booking_service
from stoodio.services.job_board import list_visible_jobs

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=BookingOut, status_code=201)
def post_job(payload: JobPostRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.post_open_job(
        db,
        stoodio_id=user.id,
        booking_date=payload.date,
        start_time=payload.start_time,
        duration=payload.duration,
        engineer_pay_rate=payload.engineer_pay_rate,
        total_cost=payload.total_cost,
        room_name=payload.room_name,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    enqueue_dispatch()
    return booking


@router.get("", response_model=list[BookingOut])
def job_board(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Open jobs the calling engineer's tier can see right now."""
    return list_visible_jobs(db, engineer_id=user.id)


@router.post("/{booking_id}/accept", response_model=BookingOut)
def accept_job(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    booking = booking_service.accept_job(db, booking_id=booking_id, engineer_id=user.id)
    enqueue_dispatch()
    return booking
