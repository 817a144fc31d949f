from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stoodio.database.db import get_db
from stoodio.models.users import User
from stoodio.routes.bookings import enqueue_dispatch
from stoodio.routes.deps import get_current_user
from stoodio.schemas.bookings import BookingOut
from stoodio.schemas.sessions import EndSessionRequest, SessionOut
from stoodio.services import sessions as session_service

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/{booking_id}", response_model=SessionOut)
def session_state(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return SessionOut(booking_id=booking_id, state=session_service.get_session_state(db, booking_id=booking_id))


@router.post("/{booking_id}/start", response_model=SessionOut)
def start_session(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    state = session_service.start_session(db, booking_id=booking_id, engineer_id=user.id)
    if state is None:
        # not this user's session; report what it is without changing it
        state = session_service.get_session_state(db, booking_id=booking_id)
    enqueue_dispatch()
    return SessionOut(booking_id=booking_id, state=state)


@router.post("/{booking_id}/end", response_model=BookingOut)
def end_session(
    booking_id: int,
    payload: EndSessionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    booking = session_service.end_session(db, booking_id=booking_id, engineer_id=user.id, confirm=payload.confirm)
    enqueue_dispatch()
    return booking
