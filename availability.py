import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from errors import DataAccessError, SlotNotFound
from models import Booking, BookingStatus, TimeSlot

logger = logging.getLogger(__name__)


@dataclass
class SlotUsage:
    slot_id: int
    max_capacity: int
    max_bookings: int
    current_booking_count: int
    current_visitor_count: int

    @property
    def remaining_capacity(self) -> int:
        return self.max_capacity - self.current_visitor_count

    @property
    def is_full(self) -> bool:
        return (
            self.current_booking_count >= self.max_bookings
            or self.current_visitor_count >= self.max_capacity
        )


async def get_slot_usage(
    session: AsyncSession,
    visit_date: date,
    time: str,
    *,
    lock: bool = False,
    exclude_booking_id: Optional[int] = None,
) -> SlotUsage:
    """Return the configured limits of a slot and how much of it is taken.

    With ``lock=True`` the slot row is selected ``FOR UPDATE`` so concurrent
    writers to the same slot queue behind the current transaction.
    Cancelled bookings do not count against the slot.
    """
    slot_stmt = select(TimeSlot).where(TimeSlot.date == visit_date, TimeSlot.time == time)
    if lock:
        slot_stmt = slot_stmt.with_for_update()

    usage_stmt = select(Booking.id, Booking.number_of_visitors).where(
        Booking.date == visit_date,
        Booking.time == time,
        Booking.status != BookingStatus.CANCELLED,
    )
    if exclude_booking_id is not None:
        usage_stmt = usage_stmt.where(Booking.id != exclude_booking_id)

    try:
        slot = (await session.execute(slot_stmt)).scalars().first()
        if slot is None:
            logger.info(f"No time slot found for {visit_date} {time}")
            raise SlotNotFound()
        rows = (await session.execute(usage_stmt)).all()
    except SQLAlchemyError as e:
        logger.error(f"Slot usage query failed for {visit_date} {time}: {e}")
        raise DataAccessError(f"Could not verify availability: {e}") from e

    usage = SlotUsage(
        slot_id=slot.id,
        max_capacity=slot.max_capacity,
        max_bookings=slot.max_bookings,
        current_booking_count=len(rows),
        current_visitor_count=sum((visitors or 1) for _, visitors in rows),
    )
    logger.debug(f"Slot {visit_date} {time} usage: {usage}")
    return usage


async def list_available_times(session: AsyncSession, from_date: date) -> Dict[str, List[str]]:
    # Step 1: All configured slots from the given date onwards
    slot_stmt = (
        select(TimeSlot)
        .where(TimeSlot.date >= from_date)
        .order_by(TimeSlot.date, TimeSlot.id)
    )

    # Step 2: Booking and visitor counts per (date, time) in a single query
    usage_stmt = (
        select(
            Booking.date,
            Booking.time,
            func.count(Booking.id),
            func.sum(func.coalesce(Booking.number_of_visitors, 1)),
        )
        .where(Booking.date >= from_date, Booking.status != BookingStatus.CANCELLED)
        .group_by(Booking.date, Booking.time)
    )

    try:
        slots = (await session.execute(slot_stmt)).scalars().all()
        usage_rows = (await session.execute(usage_stmt)).all()
    except SQLAlchemyError as e:
        logger.error(f"Availability query failed: {e}")
        raise DataAccessError(f"Database error: {e}") from e

    # Key: (date, time) -> (booking_count, visitor_count)
    usage_map = {(d, t): (count, visitors or 0) for d, t, count, visitors in usage_rows}

    # Step 3: Keep the times that still have room on both limits
    availability: Dict[str, List[str]] = {}
    for slot in slots:
        booking_count, visitor_count = usage_map.get((slot.date, slot.time), (0, 0))
        if booking_count >= slot.max_bookings or visitor_count >= slot.max_capacity:
            continue
        availability.setdefault(slot.date.isoformat(), []).append(slot.time)

    return availability
