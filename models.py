import uuid
import datetime as dt
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


class PaymentMethod(str, Enum):
    PAY_ON_ARRIVAL = "pay_on_arrival"
    PAY_NOW = "pay_now"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_token() -> str:
    return str(uuid.uuid4())


class TimeSlot(SQLModel, table=True):
    __tablename__ = "time_slots"
    __table_args__ = (
        UniqueConstraint("date", "time", name="unique_time_slot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    date: dt.date = Field(index=True)
    time: str  # display label, e.g. "10:00 AM"
    max_capacity: int  # visitor ceiling
    max_bookings: int  # booking-count ceiling


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"

    id: Optional[int] = Field(default=None, primary_key=True)
    booking_reference: Optional[str] = Field(default=None, unique=True, index=True, max_length=16)
    full_name: str
    email: str
    phone: str
    date: dt.date = Field(index=True)
    time: str = Field(index=True)
    number_of_visitors: Optional[int] = Field(default=1)
    total_amount: float = 0
    payment_method: PaymentMethod = PaymentMethod.PAY_ON_ARRIVAL
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: BookingStatus = BookingStatus.CONFIRMED
    square_order_id: Optional[str] = None
    cancellation_token: str = Field(default_factory=_new_token, unique=True, index=True)
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[dt.datetime] = None
    reschedule_count: int = 0
    created_at: dt.datetime = Field(default_factory=_utcnow)
