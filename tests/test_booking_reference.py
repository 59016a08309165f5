import random
from datetime import date

import pytest

from booking_reference import (
    ReferenceGenerationError,
    extract_date_from_reference,
    find_booking_by_reference,
    generate_booking_reference,
    generate_unique_booking_reference,
    validate_booking_reference,
)
from models import Booking


class FixedRng:
    def __init__(self, value):
        self.value = value

    def randrange(self, stop):
        return self.value


def test_reference_format():
    reference = generate_booking_reference(date(2025, 7, 21), FixedRng(391))
    assert reference == "BG-20250721-0391"
    assert validate_booking_reference(reference)


def test_random_references_always_validate():
    rng = random.Random(7)
    for _ in range(200):
        assert validate_booking_reference(generate_booking_reference(date(2025, 1, 5), rng))


def test_extract_date_returns_creation_date():
    created_on = date(2024, 12, 31)
    reference = generate_booking_reference(created_on)
    assert extract_date_from_reference(reference) == created_on


@pytest.mark.parametrize(
    "reference",
    ["", "BG-2025072-1234", "bg-20250721-1234", "BG-20250721-12345", "XX-20250721-1234", "BG-20251399-0001"],
)
def test_malformed_references(reference):
    assert extract_date_from_reference(reference) is None


@pytest.mark.asyncio
async def test_unique_reference_retries_on_collision(session):
    session.add(Booking(
        booking_reference="BG-20250701-0042",
        full_name="Ada Visitor",
        email="ada@example.com",
        phone="780-555-0100",
        date=date(2025, 7, 10),
        time="10:00 AM",
    ))
    await session.commit()

    class SecondTimeLucky:
        values = iter([42, 43])

        def randrange(self, stop):
            return next(self.values)

    reference = await generate_unique_booking_reference(session, date(2025, 7, 1), rng=SecondTimeLucky())
    assert reference == "BG-20250701-0043"


@pytest.mark.asyncio
async def test_unique_reference_gives_up(session):
    session.add(Booking(
        booking_reference="BG-20250701-0042",
        full_name="Ada Visitor",
        email="ada@example.com",
        phone="780-555-0100",
        date=date(2025, 7, 10),
        time="10:00 AM",
    ))
    await session.commit()

    with pytest.raises(ReferenceGenerationError):
        await generate_unique_booking_reference(session, date(2025, 7, 1), max_attempts=3, rng=FixedRng(42))


@pytest.mark.asyncio
async def test_find_booking_by_reference(session):
    booking = Booking(
        booking_reference="BG-20250701-0042",
        full_name="Ada Visitor",
        email="ada@example.com",
        phone="780-555-0100",
        date=date(2025, 7, 10),
        time="10:00 AM",
    )
    session.add(booking)
    await session.commit()

    found = await find_booking_by_reference(session, "BG-20250701-0042")
    assert found.id == booking.id
    assert await find_booking_by_reference(session, "BG-20250701-0043") is None
    assert await find_booking_by_reference(session, "not-a-reference") is None
