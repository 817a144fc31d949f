"""
Open job board.

A job is a booking a stoodio posted that nobody has claimed yet. Engineers
see it once their tier's delay has elapsed since it was posted.
"""
from datetime import datetime
from typing import Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from stoodio.core.clock import utcnow
from stoodio.core.exceptions import NotAuthorizedError
from stoodio.models.bookings import Booking, BookingStatus
from stoodio.models.users import RankingTier, User, UserRole
from stoodio.services.ranking import visibility_delay


def is_open_job(booking: Booking) -> bool:
    return booking.posted_by == UserRole.STOODIO.value and booking.status == BookingStatus.PENDING.value


def next_visible_at(booking: Booking, tier: Optional[Union[RankingTier, str]]) -> datetime:
    posted_at = booking.posted_at or booking.created_at
    return posted_at + visibility_delay(tier)


def is_job_visible(booking: Booking, tier: Optional[Union[RankingTier, str]], now: datetime) -> bool:
    return is_open_job(booking) and now >= next_visible_at(booking, tier)


def resolve_visible_jobs(
    bookings: Iterable[Booking],
    tier: Optional[Union[RankingTier, str]],
    now: datetime,
) -> list[Booking]:
    """Filter to jobs visible to ``tier`` at ``now``, soonest session first."""
    visible = [b for b in bookings if is_job_visible(b, tier, now)]
    return sorted(visible, key=lambda b: (b.date, b.created_at, b.id))


def list_visible_jobs(db: Session, *, engineer_id: int, now: Optional[datetime] = None) -> list[Booking]:
    engineer = db.get(User, engineer_id)
    if not engineer or not engineer.is_active or engineer.role != UserRole.ENGINEER.value:
        raise NotAuthorizedError("Only engineers can browse the job board.")

    candidates = db.scalars(
        select(Booking).where(
            Booking.posted_by == UserRole.STOODIO.value,
            Booking.status == BookingStatus.PENDING.value,
        )
    ).all()
    return resolve_visible_jobs(candidates, engineer.ranking_tier, now or utcnow())
