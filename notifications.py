"""Outbound notifications to the Make.com automation webhooks.

Every booking event is posted with the same payload shape, with ``None`` in
the sections an event does not use, so the automation scenario never has to
branch on the event type. Handlers never post directly: they put a
``Notification`` on the ``NotificationQueue`` and return, and the queue's
worker delivers it with retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config import Settings
from models import Booking, PaymentMethod

logger = logging.getLogger(__name__)

BOOKING_CONFIRMED = "booking_confirmed"
BOOKING_ERROR = "booking_error"
BOOKING_CANCELLED = "booking_cancelled"
BOOKING_CANCELLED_ADMIN = "booking_cancelled_admin"
BOOKING_RESCHEDULED = "booking_rescheduled"
CONTACT_FORM = "contact_form"

BOOKING_EVENTS = (
    BOOKING_CONFIRMED,
    BOOKING_ERROR,
    BOOKING_CANCELLED,
    BOOKING_CANCELLED_ADMIN,
    BOOKING_RESCHEDULED,
)

BACKOFF_FACTOR = 1.5


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BookingSnapshot:
    """The booking fields a webhook needs, detached from the database session."""

    id: int
    reference: Optional[str]
    full_name: str
    email: str
    phone: Optional[str]
    visit_date: str
    time: str
    number_of_visitors: Optional[int]
    total_amount: Optional[float]
    payment_method: Optional[str]
    created_at: Optional[str] = None
    square_order_id: Optional[str] = None
    square_payment_id: Optional[str] = None
    payment_completed_at: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    cancellation_token: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingSnapshot":
        return cls(
            id=booking.id,
            reference=booking.booking_reference,
            full_name=booking.full_name,
            email=booking.email,
            phone=booking.phone,
            visit_date=booking.date.isoformat(),
            time=booking.time,
            number_of_visitors=booking.number_of_visitors,
            total_amount=booking.total_amount,
            payment_method=booking.payment_method.value if booking.payment_method else None,
            created_at=booking.created_at.isoformat() if booking.created_at else None,
            square_order_id=booking.square_order_id,
            cancellation_token=booking.cancellation_token,
        )


@dataclass
class ContactSubmission:
    id: str
    type: str
    name: str
    email: str
    message: str
    subject: Optional[str] = None
    flower: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Notification:
    event_type: str
    booking: Optional[BookingSnapshot] = None
    contact: Optional[ContactSubmission] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        if self.booking is not None:
            return str(self.booking.id)
        if self.contact is not None:
            return self.contact.id
        return "-"


def _payment_status(event_type: str, booking: BookingSnapshot) -> str:
    if "cancelled" in event_type:
        return "cancelled"
    if event_type == BOOKING_RESCHEDULED:
        return "confirmed"
    paid = booking.payment_method == PaymentMethod.PAY_NOW.value and (
        booking.payment_completed_at or booking.square_payment_id
    )
    return "completed" if paid else "pending"


def build_booking_payload(
    event_type: str,
    booking: BookingSnapshot,
    *,
    cancellation_token: Optional[str] = None,
    cancellation_reason: Optional[str] = None,
    reschedule_reason: Optional[str] = None,
    original_date: Optional[str] = None,
    original_time: Optional[str] = None,
    error_info: Optional[Dict[str, str]] = None,
    email_type: Optional[str] = None,
    admin_email: Optional[str] = None,
) -> Dict[str, Any]:
    now = _utcnow_iso()
    has_original = bool(original_date and original_time)

    return {
        "event": event_type,
        "booking": {
            "id": booking.id,
            "reference": booking.reference,
            "customer": {
                "name": booking.full_name,
                "email": booking.email,
                "phone": booking.phone or None,
            },
            "visit": {
                "date": booking.visit_date,
                "time": booking.time,
                "visitors": booking.number_of_visitors or None,
                "amount": booking.total_amount or None,
            },
            "payment": {
                "method": booking.payment_method or None,
                "status": _payment_status(event_type, booking),
                "squareOrderId": booking.square_order_id,
                "squarePaymentId": booking.square_payment_id,
                "completedAt": booking.payment_completed_at,
                "details": booking.payment_details,
            },
            "original": {"date": original_date, "time": original_time} if has_original else None,
            "new": {
                "date": booking.visit_date,
                "time": booking.time,
                "visitors": booking.number_of_visitors,
                "amount": booking.total_amount,
            }
            if event_type == BOOKING_RESCHEDULED
            else None,
            "cancellation": {"reason": cancellation_reason, "cancelledAt": now}
            if cancellation_reason
            else None,
            "reschedule": {"reason": reschedule_reason, "rescheduledAt": now}
            if reschedule_reason
            else None,
            "error": {"message": error_info["message"], "type": error_info["type"]}
            if error_info
            else None,
            "metadata": {
                "createdAt": booking.created_at or now,
                "source": "website",
                "emailType": email_type,
                "cancellationToken": cancellation_token,
                "adminEmail": admin_email if event_type == BOOKING_CANCELLED_ADMIN else None,
                "timestamp": now if error_info else None,
            },
        },
    }


def build_contact_payload(contact: ContactSubmission) -> Dict[str, Any]:
    return {
        "event": "contact_message",
        "contact": {
            "id": contact.id,
            "type": contact.type,
            "customer": {"name": contact.name, "email": contact.email},
            "message": {
                "subject": contact.subject or None,
                "content": contact.message,
                "flower": contact.flower or None,
                "notes": contact.notes or None,
            },
            "metadata": {
                "createdAt": contact.created_at or _utcnow_iso(),
                "source": "website",
                "formType": contact.type,
            },
        },
    }


def log_webhook_attempt(
    key: str, event_type: str, success: bool, error_message: Optional[str] = None
) -> None:
    entry = {
        "bookingId": key,
        "eventType": event_type,
        "success": success,
        "errorMessage": error_message,
        "timestamp": _utcnow_iso(),
    }
    if success:
        logger.info(f"Webhook attempt logged: {entry}", extra={"webhook_attempt": entry})
    else:
        logger.warning(f"Webhook attempt logged: {entry}", extra={"webhook_attempt": entry})


class WebhookDispatcher:
    """Posts notification payloads to the configured automation URLs."""

    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
        self._sleep = sleep

    def url_for(self, event_type: str) -> Optional[str]:
        if event_type == CONTACT_FORM:
            return self.settings.make_contact_webhook_url
        if event_type in BOOKING_EVENTS:
            return self.settings.make_booking_webhook_url
        return None

    def build_payload(self, notification: Notification) -> Dict[str, Any]:
        if notification.event_type == CONTACT_FORM:
            return build_contact_payload(notification.contact)
        options = dict(notification.options)
        if notification.event_type == BOOKING_CANCELLED_ADMIN:
            options.setdefault("admin_email", self.settings.admin_email)
        return build_booking_payload(notification.event_type, notification.booking, **options)

    async def send(self, notification: Notification) -> bool:
        """Single delivery attempt. Returns False instead of raising."""
        url = self.url_for(notification.event_type)
        if not url:
            logger.error(f"No webhook URL configured for {notification.event_type}")
            return False

        payload = self.build_payload(notification)
        try:
            response = await self._http.post(
                url, json=payload, timeout=self.settings.webhook_timeout_seconds
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"{notification.event_type} webhook for {notification.key} failed: {e}")
            return False

        logger.info(f"{notification.event_type} webhook sent for {notification.key}")
        return True

    async def send_with_retry(self, notification: Notification) -> bool:
        if not self.url_for(notification.event_type):
            logger.error(f"No webhook URL configured for {notification.event_type}, not retrying")
            log_webhook_attempt(
                notification.key, notification.event_type, False, "No webhook URL configured"
            )
            return False

        max_attempts = self.settings.webhook_max_attempts
        delay = self.settings.webhook_initial_delay_ms / 1000

        for attempt in range(1, max_attempts + 1):
            success = await self.send(notification)
            log_webhook_attempt(
                notification.key,
                notification.event_type,
                success,
                None if success else f"attempt {attempt}/{max_attempts} failed",
            )
            if success:
                return True
            if attempt < max_attempts:
                logger.info(
                    f"Retrying {notification.event_type} webhook in {delay * 1000:.0f}ms "
                    f"(attempt {attempt + 1}/{max_attempts})"
                )
                await self._sleep(delay)
                delay *= BACKOFF_FACTOR

        logger.error(f"All {max_attempts} {notification.event_type} webhook attempts failed for {notification.key}")
        if notification.event_type == BOOKING_CONFIRMED and notification.booking is not None:
            await self.send_error_notification(
                notification.booking,
                message=f"Booking confirmation webhook failed after {max_attempts} attempts",
                error_type="webhook_failure",
            )
        return False

    async def send_error_notification(
        self, booking: BookingSnapshot, message: str, error_type: str
    ) -> bool:
        # Single attempt: a failing error webhook must not loop
        notification = Notification(
            BOOKING_ERROR,
            booking=booking,
            options={"error_info": {"message": message, "type": error_type}},
        )
        success = await self.send(notification)
        log_webhook_attempt(notification.key, BOOKING_ERROR, success)
        return success

    async def aclose(self) -> None:
        await self._http.aclose()


class NotificationQueue:
    """Background delivery of notifications, decoupled from request handling."""

    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-worker")
            logger.info("Notification worker started")

    def enqueue(self, notification: Notification) -> None:
        self._queue.put_nowait(notification)
        logger.debug(f"Queued {notification.event_type} for {notification.key}")

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self, timeout: float = 30.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self._queue.qsize()} notification(s) still queued at shutdown")
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Notification worker stopped")

    async def _run(self) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self.dispatcher.send_with_retry(notification)
            except Exception:
                # The worker outlives any single delivery
                logger.exception(f"Unexpected error delivering {notification.event_type}")
            finally:
                self._queue.task_done()


def confirmation_for(booking: Booking) -> Notification:
    return Notification(
        BOOKING_CONFIRMED,
        booking=BookingSnapshot.from_booking(booking),
        options={"cancellation_token": booking.cancellation_token},
    )


def cancellation_notices(booking: Booking, reason: Optional[str]) -> list[Notification]:
    snapshot = BookingSnapshot.from_booking(booking)
    shared = {
        "cancellation_reason": reason or "No reason provided",
        "cancellation_token": booking.cancellation_token,
    }
    return [
        Notification(
            BOOKING_CANCELLED,
            booking=snapshot,
            options={**shared, "email_type": "customer_cancellation_confirmation"},
        ),
        Notification(
            BOOKING_CANCELLED_ADMIN,
            booking=snapshot,
            options={**shared, "email_type": "admin_cancellation_notification"},
        ),
    ]


def reschedule_notice(
    booking: Booking, original_date: date, original_time: str, reason: Optional[str]
) -> Notification:
    return Notification(
        BOOKING_RESCHEDULED,
        booking=BookingSnapshot.from_booking(booking),
        options={
            "original_date": original_date.isoformat(),
            "original_time": original_time,
            "reschedule_reason": reason or "No reason provided",
            "cancellation_token": booking.cancellation_token,
            "email_type": "booking_updated",
        },
    )
