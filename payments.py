"""Square online checkout for "pay now" bookings."""

import logging
import math
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import SecretStr
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookings import delete_booking
from config import Settings
from errors import PaymentLinkCreationFailed, PaymentUnavailable
from models import Booking

logger = logging.getLogger(__name__)

SQUARE_BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}
SQUARE_API_VERSION = "2023-10-18"
PRODUCT_NAME = "Garden Visit"
NOTE_LIMIT = 500


class PaymentLinkError(RuntimeError):
    """Raised when Square does not hand back a usable payment link."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PaymentDetails:
    booking_id: int
    full_name: str
    email: str
    visit_date: date
    time: str
    number_of_visitors: int
    total_amount: float

    @classmethod
    def from_booking(cls, booking: Booking) -> "PaymentDetails":
        return cls(
            booking_id=booking.id,
            full_name=booking.full_name,
            email=booking.email,
            visit_date=booking.date,
            time=booking.time,
            number_of_visitors=booking.number_of_visitors or 1,
            total_amount=booking.total_amount,
        )


@dataclass
class PaymentLink:
    url: str
    order_id: Optional[str]


def _secret_value(value: SecretStr | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return str(value)


def missing_square_config(settings: Settings) -> List[str]:
    """Names of the Square settings that are not filled in."""
    required = {
        "SQUARE_APPLICATION_ID": settings.square_application_id,
        "SQUARE_APPLICATION_SECRET": settings.square_application_secret,
        "SQUARE_ACCESS_TOKEN": settings.square_access_token,
        "SQUARE_LOCATION_ID": settings.square_location_id,
        "SQUARE_WEBHOOK_SIGNATURE_KEY": settings.square_webhook_signature_key,
    }
    return [name for name, value in required.items() if not _secret_value(value)]


def build_booking_note(details: PaymentDetails, currency: str = "CAD") -> str:
    """Line-item note used to cross-reference a Square order with its booking.

    Square rejects notes over 500 characters; long names or emails fall back
    to the essential fields, hard-cut if even those do not fit.
    """
    amount = f"${details.total_amount:.2f} {currency}"
    note = (
        f"Visit: {details.visit_date.isoformat()} at {details.time} | "
        f"Customer: {details.full_name} | Email: {details.email} | "
        f"Visitors: {details.number_of_visitors} | Booking: {details.booking_id} | "
        f"Amount: {amount}"
    )
    if len(note) <= NOTE_LIMIT:
        return note

    logger.warning(f"Booking note truncated for booking {details.booking_id} ({len(note)} chars)")
    essential = (
        f"Visit: {details.visit_date.isoformat()} | Customer: {details.full_name} | "
        f"Email: {details.email} | Booking: {details.booking_id}"
    )
    if len(essential) > NOTE_LIMIT:
        return essential[: NOTE_LIMIT - 3] + "..."
    return essential


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_error_detail(errors: Any) -> Optional[str]:
    if isinstance(errors, list) and errors:
        errors = errors[0]
    detail = _as_dict(errors).get("detail")
    return str(detail) if detail else None


def extract_order_id(body: Dict[str, Any]) -> Optional[str]:
    # Square has returned the order id in both places depending on API version
    order_id = _as_dict(body.get("payment_link")).get("order_id")
    if isinstance(order_id, str) and order_id:
        return order_id
    orders = _as_dict(body.get("related_resources")).get("orders")
    if isinstance(orders, list) and orders and isinstance(orders[0], dict):
        order_id = orders[0].get("id")
        if isinstance(order_id, str) and order_id:
            return order_id
    return None


class SquareClient:
    """Thin client for the Square online-checkout payment-links endpoint."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=settings.square_timeout_seconds)
        self._clock = clock

    @property
    def base_url(self) -> str:
        return SQUARE_BASE_URLS[self.settings.square_environment]

    def build_request(self, details: PaymentDetails) -> Dict[str, Any]:
        currency = self.settings.square_currency
        # Half-up rounding to whole cents
        unit_price = math.floor(details.total_amount / details.number_of_visitors * 100 + 0.5)
        return {
            "idempotency_key": f"payment-link-{details.booking_id}-{int(self._clock() * 1000)}",
            "description": f"{PRODUCT_NAME} - {details.visit_date.isoformat()}",
            "order": {
                "location_id": self.settings.square_location_id,
                "line_items": [
                    {
                        "name": PRODUCT_NAME,
                        "quantity": str(details.number_of_visitors),
                        "base_price_money": {"amount": unit_price, "currency": currency},
                        "note": build_booking_note(details, currency),
                    }
                ],
            },
            "checkout_options": {
                "redirect_url": f"{self.settings.public_url.rstrip('/')}/booking-success",
                "ask_for_shipping_address": False,
            },
        }

    async def create_payment_link(self, details: PaymentDetails) -> PaymentLink:
        payload = self.build_request(details)
        headers = {
            "Authorization": f"Bearer {_secret_value(self.settings.square_access_token)}",
            "Content-Type": "application/json",
            "Square-Version": SQUARE_API_VERSION,
        }
        logger.info(f"Creating Square payment link for booking {details.booking_id}")

        try:
            response = await self._http.post(
                f"{self.base_url}/v2/online-checkout/payment-links",
                json=payload,
                headers=headers,
                timeout=self.settings.square_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise PaymentLinkError(f"Square request failed: {e}") from e

        try:
            body = _as_dict(response.json())
        except ValueError:
            body = {}

        errors = body.get("errors")
        if response.is_error or errors:
            detail = _first_error_detail(errors) or response.text
            raise PaymentLinkError(
                f"Square API error: {detail or 'Unknown error'}", status_code=response.status_code
            )

        url = _as_dict(body.get("payment_link")).get("url")
        if not isinstance(url, str) or not url:
            raise PaymentLinkError("No payment URL returned from Square", response.status_code)

        order_id = extract_order_id(body)
        if not order_id:
            logger.warning(f"Square returned no order id for booking {details.booking_id}")
        return PaymentLink(url=url, order_id=order_id)

    async def aclose(self) -> None:
        await self._http.aclose()


async def start_online_payment(
    session: AsyncSession,
    booking: Booking,
    settings: Settings,
    client: SquareClient,
) -> PaymentLink:
    """Get a hosted payment link for a freshly inserted pay-now booking.

    If Square fails the booking is deleted again, so a pay-now booking never
    exists without a way to pay for it.
    """
    missing = missing_square_config(settings)
    if missing:
        logger.error(f"Square configuration incomplete, missing: {', '.join(missing)}")
        raise PaymentUnavailable()

    try:
        return await client.create_payment_link(PaymentDetails.from_booking(booking))
    except PaymentLinkError as e:
        logger.error(f"Payment link creation failed for booking {booking.id}: {e}")
        await delete_booking(session, booking.id)
        raise PaymentLinkCreationFailed() from e
    except Exception as e:
        logger.exception(f"Unexpected error creating payment link for booking {booking.id}")
        await delete_booking(session, booking.id)
        raise PaymentLinkCreationFailed() from e


async def record_square_order_id(session_factory, booking_id: int, order_id: Optional[str]) -> None:
    """Store the Square order id on a booking; failures are only logged."""
    if not order_id:
        logger.warning(f"No Square order id to store for booking {booking_id}")
        return

    try:
        async with session_factory() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None:
                logger.warning(f"Booking {booking_id} vanished before order id {order_id} was stored")
                return
            booking.square_order_id = order_id
            session.add(booking)
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to store Square order id for booking {booking_id}: {e}")
        return

    logger.info(f"Stored Square order id {order_id} for booking {booking_id}")
