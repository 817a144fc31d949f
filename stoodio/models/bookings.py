import enum
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Time
from sqlalchemy.orm import Mapped, mapped_column

from stoodio.database.db import Base


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_LABEL_APPROVAL = "PENDING_LABEL_APPROVAL"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DENIED = "DENIED"


class BookingRequestType(str, enum.Enum):
    FIND_AVAILABLE = "FIND_AVAILABLE"
    SPECIFIC_ENGINEER = "SPECIFIC_ENGINEER"
    BRING_YOUR_OWN = "BRING_YOUR_OWN"
    PRODUCER_PULL_UP = "PRODUCER_PULL_UP"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DENIED})
APPROVAL_STATUSES = frozenset({BookingStatus.PENDING_APPROVAL, BookingStatus.PENDING_LABEL_APPROVAL})

# Statuses that hold a time slot on a room, engineer or producer
BLOCKING_STATUSES = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.PENDING_APPROVAL,
        BookingStatus.PENDING_LABEL_APPROVAL,
        BookingStatus.CONFIRMED,
    }
)

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.PENDING_APPROVAL: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.DENIED, BookingStatus.CANCELLED}
    ),
    BookingStatus.PENDING_LABEL_APPROVAL: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.DENIED, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.DENIED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return BookingStatus(target) in BOOKING_TRANSITIONS[BookingStatus(current)]


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    posted_by: Mapped[str] = mapped_column(String(16), nullable=False)
    request_type: Mapped[str] = mapped_column(String(32), nullable=False)

    date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    engineer_pay_rate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    room_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    pull_up_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    # engineer_pay_rate * duration, frozen when an engineer is confirmed
    engineer_payout: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))

    booked_by_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    artist_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    engineer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    producer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    stoodio_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    label_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    requested_engineer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), index=True)
    room_name: Mapped[Optional[str]] = mapped_column(String(120))

    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_by_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(hours=float(self.duration))

    @property
    def is_terminal(self) -> bool:
        return BookingStatus(self.status) in TERMINAL_STATUSES

    @property
    def payer_id(self) -> int:
        """Label-approved bookings are paid by the label, everything else by the booker."""
        return self.label_id or self.booked_by_id

    def overlaps(self, starts_at: datetime, ends_at: datetime) -> bool:
        return self.starts_at < ends_at and starts_at < self.ends_at

    def participant_ids(self) -> set[int]:
        ids = {
            self.booked_by_id,
            self.artist_id,
            self.engineer_id,
            self.producer_id,
            self.stoodio_id,
            self.label_id,
            self.requested_engineer_id,
        }
        ids.discard(None)
        return ids  # type: ignore[return-value]
