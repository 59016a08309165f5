"""Customer-initiated cancellation and rescheduling, authorised by the
cancellation token emailed with the booking confirmation."""

import logging
import re
from datetime import date, datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from availability import get_slot_usage
from bookings import business_today, check_capacity, get_booking_by_token, parse_visit_date
from config import Settings
from errors import (
    BookingError,
    BookingNotFound,
    BookingNotModifiable,
    DataAccessError,
    InvalidToken,
    MissingFields,
    PastDate,
)
from models import Booking, BookingStatus

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


def check_token_format(token: Optional[str]) -> str:
    if not token:
        raise MissingFields("Cancellation token is required")
    if not TOKEN_PATTERN.match(token):
        raise InvalidToken()
    return token


async def load_modifiable_booking(
    session: AsyncSession,
    token: Optional[str],
    settings: Settings,
    now: Optional[datetime] = None,
    action: str = "cancel",
) -> Booking:
    """Fetch the booking behind a token and make sure it can still change."""
    token = check_token_format(token)
    booking = await get_booking_by_token(session, token)
    if booking is None:
        link = "reschedule" if action == "reschedule" else "cancellation"
        raise BookingNotFound(f"Invalid or expired {link} link")
    if booking.status == BookingStatus.CANCELLED:
        raise BookingNotModifiable()
    if booking.date < business_today(settings, now):
        raise PastDate(f"Cannot {action} bookings for past dates")
    return booking


async def cancel_booking(
    session: AsyncSession,
    token: Optional[str],
    reason: Optional[str],
    settings: Settings,
    now: Optional[datetime] = None,
) -> Booking:
    booking = await load_modifiable_booking(session, token, settings, now, action="cancel")

    booking.status = BookingStatus.CANCELLED
    booking.cancellation_reason = reason or None
    booking.cancelled_at = now or datetime.now(timezone.utc)
    try:
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Cancellation of booking {booking.id} failed: {e}")
        raise DataAccessError("Failed to process cancellation. Please try again.") from e

    logger.info(f"Booking {booking.id} cancelled")
    return booking


async def reschedule_booking(
    session: AsyncSession,
    token: Optional[str],
    new_date: Optional[str],
    new_time: Optional[str],
    settings: Settings,
    now: Optional[datetime] = None,
) -> Tuple[Booking, date, str]:
    """Move a booking to another slot.

    Returns the updated booking with its original date and time. The booking
    reference is left untouched.
    """
    if not token or not new_date or not new_time:
        raise MissingFields("Cancellation token, new date, and new time are required")

    target_date = parse_visit_date(new_date)
    if target_date < business_today(settings, now):
        raise PastDate("Cannot reschedule to past dates")

    booking = await load_modifiable_booking(session, token, settings, now, action="reschedule")
    original_date, original_time = booking.date, booking.time

    try:
        usage = await get_slot_usage(
            session, target_date, new_time, lock=True, exclude_booking_id=booking.id
        )
        check_capacity(usage, booking.number_of_visitors or 1)

        booking.date = target_date
        booking.time = new_time
        booking.reschedule_count = (booking.reschedule_count or 0) + 1
        session.add(booking)
        await session.commit()
        await session.refresh(booking)
    except BookingError:
        await session.rollback()
        raise
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Reschedule of booking {booking.id} failed: {e}")
        raise DataAccessError(f"Database error: {e}") from e

    logger.info(
        f"Booking {booking.id} rescheduled from {original_date} {original_time} "
        f"to {booking.date} {booking.time}"
    )
    return booking, original_date, original_time
