"""Human-readable booking references.

A reference looks like ``BG-20250721-8391``: the ``BG`` business prefix, the
date the booking was *created* (not the visit date, so rescheduling never
changes it) and a random four digit suffix. Uniqueness is enforced by retrying
the suffix against existing bookings.
"""

import logging
import random
import re
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from models import Booking

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "BG"
REFERENCE_PATTERN = re.compile(r"^BG-\d{8}-\d{4}$")
MAX_ATTEMPTS = 10


class ReferenceGenerationError(RuntimeError):
    """Raised when no free reference could be found for a creation date."""


def generate_booking_reference(created_on: date, rng: Optional[random.Random] = None) -> str:
    suffix = (rng or random).randrange(10000)
    return f"{REFERENCE_PREFIX}-{created_on.strftime('%Y%m%d')}-{suffix:04d}"


def validate_booking_reference(reference: str) -> bool:
    return bool(reference) and REFERENCE_PATTERN.match(reference) is not None


def extract_date_from_reference(reference: str) -> Optional[date]:
    """Return the creation date encoded in a reference, or None if it is malformed."""
    if not validate_booking_reference(reference):
        return None
    digits = reference[3:11]
    try:
        return date(int(digits[:4]), int(digits[4:6]), int(digits[6:]))
    except ValueError:
        # Well-formed but not a calendar date, e.g. BG-20251399-0001
        return None


async def generate_unique_booking_reference(
    session: AsyncSession,
    created_on: date,
    max_attempts: int = MAX_ATTEMPTS,
    rng: Optional[random.Random] = None,
) -> str:
    for attempt in range(1, max_attempts + 1):
        reference = generate_booking_reference(created_on, rng)
        result = await session.execute(
            select(Booking.id).where(Booking.booking_reference == reference)
        )
        if result.first() is None:
            return reference
        logger.info(f"Booking reference collision: {reference} (attempt {attempt}/{max_attempts})")

    raise ReferenceGenerationError(
        f"Failed to generate unique booking reference after {max_attempts} attempts "
        f"for date {created_on.isoformat()}"
    )


async def find_booking_by_reference(session: AsyncSession, reference: str) -> Optional[Booking]:
    if not validate_booking_reference(reference):
        return None
    result = await session.execute(select(Booking).where(Booking.booking_reference == reference))
    return result.scalars().first()
