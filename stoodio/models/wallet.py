import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stoodio.database.db import Base

if TYPE_CHECKING:
    from stoodio.models.users import User


class TransactionCategory(str, enum.Enum):
    ADD_FUNDS = "ADD_FUNDS"
    SESSION_PAYMENT = "SESSION_PAYMENT"
    SESSION_PAYOUT = "SESSION_PAYOUT"
    PLATFORM_FEE = "PLATFORM_FEE"
    TIP_PAYMENT = "TIP_PAYMENT"
    TIP_PAYOUT = "TIP_PAYOUT"
    REFUND = "REFUND"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Transaction(Base):
    """
    One signed wallet movement. Rows are only ever inserted.

    ``idempotency_key`` ties a row to the event that produced it
    (booking transition, checkout session, ...) so a retried operation
    cannot append it twice.
    """

    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=TransactionStatus.COMPLETED.value)
    related_booking_id: Mapped[Optional[int]] = mapped_column(ForeignKey("bookings.id"), index=True)
    related_user_name: Mapped[Optional[str]] = mapped_column(String(200))
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    reverses_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallet_transactions.id"))
    note: Mapped[Optional[str]] = mapped_column(String(500))

    user: Mapped["User"] = relationship(back_populates="wallet_transactions", foreign_keys=[user_id])
