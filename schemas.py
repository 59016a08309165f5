from typing import Dict, List, Optional

from pydantic import BaseModel

from models import PaymentMethod


# Request bodies keep the website form's camelCase keys.
# Required fields are Optional here so that a missing value becomes
# a "Missing required fields." response instead of a schema error.
class BookingCreate(BaseModel):
    fullName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    visitDate: Optional[str] = None
    preferredTime: Optional[str] = None
    numberOfVisitors: Optional[int] = None
    totalAmount: Optional[float] = None
    paymentMethod: PaymentMethod = PaymentMethod.PAY_ON_ARRIVAL


class BookingConfirmation(BaseModel):
    success: bool
    message: str


class PaymentRedirect(BaseModel):
    success: bool
    requiresPayment: bool
    paymentUrl: str
    bookingId: int
    message: str


class BookingSummary(BaseModel):
    reference: Optional[str]
    customerName: str
    email: str
    date: str
    time: str
    visitors: Optional[int]
    amount: float
    status: str
    paymentStatus: str
    rescheduleCount: int = 0


class TokenPreview(BaseModel):
    valid: bool
    booking: BookingSummary


class CancelRequest(BaseModel):
    cancellationToken: Optional[str] = None
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    cancellationToken: Optional[str] = None
    newDate: Optional[str] = None
    newTime: Optional[str] = None
    reason: Optional[str] = None


class ContactCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    type: str = "general_contact"
    flower: Optional[str] = None
    notes: Optional[str] = None


# date -> bookable time labels
AvailabilityMap = Dict[str, List[str]]
