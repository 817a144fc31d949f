import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from stoodio.models.bookings import BookingRequestType


class DirectBookingRequest(BaseModel):
    request_type: BookingRequestType
    date: dt.date
    start_time: dt.time
    duration: Decimal = Field(gt=0, le=24)
    total_cost: Decimal = Field(ge=0)
    engineer_pay_rate: Decimal = Field(default=Decimal("0"), ge=0)
    stoodio_id: Optional[int] = Field(default=None, ge=1)
    room_name: Optional[str] = Field(default=None, max_length=120)
    room_cost: Optional[Decimal] = Field(default=None, ge=0)
    requested_engineer_id: Optional[int] = Field(default=None, ge=1)
    producer_id: Optional[int] = Field(default=None, ge=1)
    pull_up_fee: Optional[Decimal] = Field(default=None, ge=0)
    bill_to_label: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class JobPostRequest(BaseModel):
    date: dt.date
    start_time: dt.time
    duration: Decimal = Field(gt=0, le=24)
    engineer_pay_rate: Decimal = Field(ge=0)
    total_cost: Optional[Decimal] = Field(default=None, ge=0)
    room_name: Optional[str] = Field(default=None, max_length=120)
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    posted_by: str
    request_type: str
    date: dt.date
    start_time: dt.time
    duration: Decimal
    engineer_pay_rate: Decimal
    total_cost: Decimal
    room_cost: Optional[Decimal] = None
    pull_up_fee: Optional[Decimal] = None
    engineer_payout: Optional[Decimal] = None
    booked_by_id: int
    artist_id: Optional[int] = None
    engineer_id: Optional[int] = None
    producer_id: Optional[int] = None
    stoodio_id: Optional[int] = None
    label_id: Optional[int] = None
    requested_engineer_id: Optional[int] = None
    room_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: dt.datetime
    posted_at: Optional[dt.datetime] = None
    confirmed_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None
