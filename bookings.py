import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from availability import SlotUsage, get_slot_usage
from booking_reference import ReferenceGenerationError, generate_unique_booking_reference
from config import Settings
from errors import (
    BookingError,
    BookingLimitReached,
    CapacityExceeded,
    DataAccessError,
    InternalError,
    InvalidDate,
    InvalidEmail,
    InvalidVisitorCount,
    MissingFields,
    PastDate,
)
from models import Booking, BookingStatus, PaymentMethod, PaymentStatus
from schemas import BookingCreate

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class BookingRequest:
    full_name: str
    email: str
    phone: str
    visit_date: date
    time: str
    number_of_visitors: int
    total_amount: float
    payment_method: PaymentMethod


def business_today(settings: Settings, now: Optional[datetime] = None) -> date:
    """Today's date at the farm, which is not necessarily the server's date."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(settings.business_timezone)).date()


def parse_visit_date(value: str) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise InvalidDate()


def validate_booking_request(
    data: BookingCreate, settings: Settings, now: Optional[datetime] = None
) -> BookingRequest:
    """Field-level checks, in the order the website reports them."""
    # 1. Required fields (0 visitors counts as missing)
    required = (
        data.fullName,
        data.email,
        data.phone,
        data.visitDate,
        data.preferredTime,
        data.numberOfVisitors,
    )
    if any(not value for value in required):
        raise MissingFields()

    # 2. Email shape
    email = data.email.strip()
    if not EMAIL_PATTERN.match(email):
        raise InvalidEmail()

    # 3. No past dates, judged in the business timezone
    visit_date = parse_visit_date(data.visitDate)
    if visit_date < business_today(settings, now):
        raise PastDate()

    # 4. Party size
    limit = settings.max_visitors_per_booking
    if data.numberOfVisitors < 1 or data.numberOfVisitors > limit:
        raise InvalidVisitorCount(f"Number of visitors must be between 1 and {limit}.")

    return BookingRequest(
        full_name=data.fullName.strip(),
        email=email,
        phone=data.phone.strip(),
        visit_date=visit_date,
        time=data.preferredTime,
        number_of_visitors=data.numberOfVisitors,
        total_amount=data.totalAmount or 0,
        payment_method=data.paymentMethod,
    )


def check_capacity(usage: SlotUsage, requested: int) -> None:
    # Booking-count limit is checked before the visitor limit
    if usage.current_booking_count >= usage.max_bookings:
        raise BookingLimitReached(usage.max_bookings)

    if usage.current_visitor_count + requested > usage.max_capacity:
        raise CapacityExceeded(usage.remaining_capacity, requested)


async def create_booking(
    session: AsyncSession,
    data: BookingCreate,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Booking:
    """Validate a booking request and insert it.

    The slot read, the capacity check and the insert share one transaction,
    with the slot row locked where the database supports it. Exactly one row
    is written on success and none on any failure.
    """
    request = validate_booking_request(data, settings, now)
    logger.info(
        f"Booking attempt for {request.visit_date} {request.time}: "
        f"{request.number_of_visitors} visitor(s), {request.payment_method.value}"
    )

    try:
        usage = await get_slot_usage(session, request.visit_date, request.time, lock=True)
        check_capacity(usage, request.number_of_visitors)

        reference = await generate_unique_booking_reference(session, business_today(settings, now))
        booking = Booking(
            booking_reference=reference,
            full_name=request.full_name,
            email=request.email,
            phone=request.phone,
            date=request.visit_date,
            time=request.time,
            number_of_visitors=request.number_of_visitors,
            total_amount=request.total_amount,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING,
            status=BookingStatus.CONFIRMED,
        )
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
    except BookingError:
        await session.rollback()
        raise
    except ReferenceGenerationError as e:
        await session.rollback()
        logger.error(str(e))
        raise InternalError() from e
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Booking insert failed: {e}")
        raise DataAccessError(f"Booking failed: {e}") from e

    logger.info(f"Booking {booking.id} ({booking.booking_reference}) created")
    return booking


async def delete_booking(session: AsyncSession, booking_id: int) -> bool:
    """Remove a booking row. Returns False when there was nothing to remove."""
    try:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            logger.warning(f"Booking {booking_id} not found, nothing to delete")
            return False
        await session.delete(booking)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Failed to delete booking {booking_id}: {e}")
        raise DataAccessError() from e
    logger.info(f"Booking {booking_id} deleted")
    return True


async def get_booking_by_token(session: AsyncSession, token: str) -> Optional[Booking]:
    try:
        result = await session.execute(select(Booking).where(Booking.cancellation_token == token))
    except SQLAlchemyError as e:
        logger.error(f"Booking lookup by token failed: {e}")
        raise DataAccessError() from e
    return result.scalars().first()
