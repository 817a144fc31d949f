from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
    description: str
    amount: Decimal
    category: str
    status: str
    related_booking_id: Optional[int] = None
    related_user_name: Optional[str] = None
    reverses_id: Optional[int] = None


class WalletOut(BaseModel):
    user_id: int
    wallet_balance: Decimal
    ledger_consistent: bool
    transactions: list[TransactionOut]


class TipRequest(BaseModel):
    booking_id: int = Field(ge=1)
    amount: Decimal = Field(gt=0)
    request_id: Optional[str] = Field(default=None, max_length=64)
    note: Optional[str] = Field(default=None, max_length=500)


class PayoutRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    request_id: Optional[str] = Field(default=None, max_length=64)


class CheckoutCompleted(BaseModel):
    checkout_session_id: str = Field(min_length=1, max_length=64)
    kind: Literal["wallet_topup", "tip", "booking"]
    payer_id: int = Field(ge=1)
    amount: Decimal = Field(gt=0)
    booking_id: Optional[int] = Field(default=None, ge=1)
    note: Optional[str] = Field(default=None, max_length=500)


class CheckoutResult(BaseModel):
    applied: bool
