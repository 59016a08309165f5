import json
from datetime import date

import httpx
import pytest
from sqlmodel import select

from conftest import SQUARE_LINKS, make_settings
from errors import PaymentLinkCreationFailed, PaymentUnavailable
from models import Booking, PaymentMethod
from payments import (
    NOTE_LIMIT,
    PaymentDetails,
    PaymentLinkError,
    build_booking_note,
    extract_order_id,
    missing_square_config,
    record_square_order_id,
    start_online_payment,
)


def _details(**overrides):
    values = dict(
        booking_id=17,
        full_name="Ada Visitor",
        email="ada@example.com",
        visit_date=date(2025, 7, 1),
        time="10:00 AM",
        number_of_visitors=3,
        total_amount=75.0,
    )
    values.update(overrides)
    return PaymentDetails(**values)


async def _pay_now_booking(session):
    booking = Booking(
        full_name="Ada Visitor",
        email="ada@example.com",
        phone="780-555-0100",
        date=date(2025, 7, 1),
        time="10:00 AM",
        number_of_visitors=3,
        total_amount=75.0,
        payment_method=PaymentMethod.PAY_NOW,
    )
    session.add(booking)
    await session.commit()
    await session.refresh(booking)
    return booking


def test_missing_square_config_lists_blank_keys():
    settings = make_settings(square_location_id=None, square_access_token="")
    assert missing_square_config(settings) == ["SQUARE_ACCESS_TOKEN", "SQUARE_LOCATION_ID"]
    assert missing_square_config(make_settings()) == []


def test_booking_note_has_cross_reference_fields():
    note = build_booking_note(_details())
    assert note == (
        "Visit: 2025-07-01 at 10:00 AM | Customer: Ada Visitor | Email: ada@example.com | "
        "Visitors: 3 | Booking: 17 | Amount: $75.00 CAD"
    )


def test_long_note_falls_back_to_essentials():
    note = build_booking_note(_details(full_name="A" * 400))
    assert len(note) <= NOTE_LIMIT
    assert "Visitors:" not in note
    assert note.endswith("Booking: 17")


def test_oversized_note_is_cut():
    note = build_booking_note(_details(full_name="A" * 600))
    assert len(note) == NOTE_LIMIT
    assert note.endswith("...")


def test_order_id_extraction():
    assert extract_order_id({"payment_link": {"order_id": "ord-1"}}) == "ord-1"
    assert extract_order_id({"payment_link": {}, "related_resources": {"orders": [{"id": "ord-2"}]}}) == "ord-2"
    assert extract_order_id({"payment_link": {"url": "https://pay"}}) is None
    assert extract_order_id({"payment_link": "https://pay", "related_resources": {"orders": "ord-3"}}) is None
    assert extract_order_id({"related_resources": {"orders": [{"id": 7}]}}) is None


@pytest.mark.asyncio
async def test_payment_link_request(square, mock_http):
    route = mock_http.post(SQUARE_LINKS).respond(
        200, json={"payment_link": {"url": "https://square.link/u/abc", "order_id": "ord-9"}}
    )

    link = await square.create_payment_link(_details())

    assert link.url == "https://square.link/u/abc"
    assert link.order_id == "ord-9"

    request = route.calls[0].request
    assert request.headers["Authorization"] == "Bearer sq-token"
    assert request.headers["Square-Version"] == "2023-10-18"
    body = json.loads(request.content)
    assert body["idempotency_key"] == "payment-link-17-1751328000000"
    line_item = body["order"]["line_items"][0]
    assert line_item["quantity"] == "3"
    assert line_item["base_price_money"] == {"amount": 2500, "currency": "CAD"}
    assert body["order"]["location_id"] == "LOC123"
    assert body["checkout_options"]["redirect_url"] == "https://farm.test/booking-success"


@pytest.mark.asyncio
async def test_unit_price_rounds_to_cents(square):
    body = square.build_request(_details(total_amount=100.0, number_of_visitors=3))
    assert body["order"]["line_items"][0]["base_price_money"]["amount"] == 3333


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"errors": [{"detail": "Invalid location"}]}),
        httpx.Response(200, json={"errors": [{"detail": "Card declined"}]}),
        httpx.Response(200, json={"payment_link": {}}),
        httpx.Response(200, json={"payment_link": "https://square.link/u/oops"}),
        httpx.Response(200, json={"payment_link": {"url": 42}}),
        httpx.Response(200, json={"errors": {"detail": "Not a list"}}),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
async def test_payment_link_failures(square, mock_http, response):
    mock_http.post(SQUARE_LINKS).mock(return_value=response)

    with pytest.raises(PaymentLinkError):
        await square.create_payment_link(_details())


@pytest.mark.asyncio
async def test_timeout_is_a_failure(square, mock_http):
    mock_http.post(SQUARE_LINKS).mock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(PaymentLinkError):
        await square.create_payment_link(_details())


@pytest.mark.asyncio
async def test_failed_link_deletes_booking(session, settings, square, mock_http):
    booking = await _pay_now_booking(session)
    booking_id = booking.id
    mock_http.post(SQUARE_LINKS).respond(500, json={"errors": [{"detail": "Server error"}]})

    with pytest.raises(PaymentLinkCreationFailed):
        await start_online_payment(session, booking, settings, square)

    assert await session.get(Booking, booking_id) is None


@pytest.mark.asyncio
async def test_unexpected_client_error_deletes_booking(session, settings, square, monkeypatch):
    booking = await _pay_now_booking(session)
    booking_id = booking.id

    async def broken(details):
        raise RuntimeError("boom")

    monkeypatch.setattr(square, "create_payment_link", broken)

    with pytest.raises(PaymentLinkCreationFailed):
        await start_online_payment(session, booking, settings, square)

    assert await session.get(Booking, booking_id) is None


@pytest.mark.asyncio
async def test_unconfigured_square_keeps_booking(session, square):
    booking = await _pay_now_booking(session)
    settings = make_settings(square_webhook_signature_key="")

    with pytest.raises(PaymentUnavailable):
        await start_online_payment(session, booking, settings, square)

    assert await session.get(Booking, booking.id) is not None


@pytest.mark.asyncio
async def test_record_order_id(session, session_factory):
    booking = await _pay_now_booking(session)

    await record_square_order_id(session_factory, booking.id, "ord-42")

    async with session_factory() as fresh:
        stored = (await fresh.execute(select(Booking).where(Booking.id == booking.id))).scalars().one()
    assert stored.square_order_id == "ord-42"


@pytest.mark.asyncio
async def test_record_order_id_skips_missing_ids(session, session_factory):
    booking = await _pay_now_booking(session)
    await record_square_order_id(session_factory, booking.id, None)
    await record_square_order_id(session_factory, 999, "ord-1")
