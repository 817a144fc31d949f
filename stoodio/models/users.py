import enum
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, Float, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stoodio.database.db import Base

if TYPE_CHECKING:
    from stoodio.models.wallet import Transaction


class UserRole(str, enum.Enum):
    ARTIST = "ARTIST"
    ENGINEER = "ENGINEER"
    PRODUCER = "PRODUCER"
    STOODIO = "STOODIO"
    LABEL = "LABEL"


class RankingTier(str, enum.Enum):
    """Reputation tiers, lowest first. Declaration order is the rank order."""

    PROVISIONAL = "Provisional"
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"
    ELITE = "Elite"

    @property
    def rank(self) -> int:
        return list(RankingTier).index(self)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), unique=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    ranking_tier: Mapped[str] = mapped_column(String(16), nullable=False, default=RankingTier.PROVISIONAL.value)
    sessions_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    on_time_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    completion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Cached sum of wallet_transactions.amount, rewritten on every append
    wallet_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    # Advertised hourly rate on the profile; bookings keep their own snapshot
    pay_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    # Artists signed to a label
    label_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))

    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)

    wallet_transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        order_by="Transaction.id",
        foreign_keys="Transaction.user_id",
    )
