import logging
import uuid
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from availability import list_available_times
from booking_changes import cancel_booking, load_modifiable_booking, reschedule_booking
from booking_reference import find_booking_by_reference, validate_booking_reference
from bookings import EMAIL_PATTERN, business_today, create_booking
from config import Settings, configure_logging, get_settings
from database import async_session, get_session, init_db
from errors import (
    BookingNotFound,
    InvalidEmail,
    InvalidReference,
    MissingFields,
    register_exception_handlers,
)
from models import Booking, PaymentMethod
from notifications import (
    CONTACT_FORM,
    ContactSubmission,
    Notification,
    NotificationQueue,
    WebhookDispatcher,
    cancellation_notices,
    confirmation_for,
    reschedule_notice,
)
from payments import SquareClient, record_square_order_id, start_online_payment
from schemas import (
    AvailabilityMap,
    BookingConfirmation,
    BookingCreate,
    BookingSummary,
    CancelRequest,
    ContactCreate,
    PaymentRedirect,
    RescheduleRequest,
    TokenPreview,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Garden Visit Booking")
register_exception_handlers(app)

PAY_ON_ARRIVAL_MESSAGE = (
    "Thanks for booking! You can pay when you arrive. "
    "You'll receive a confirmation email shortly."
)


# --- Service wiring (set on app.state at startup) ---
def get_square_client(request: Request) -> SquareClient:
    return request.app.state.square


def get_notification_queue(request: Request) -> NotificationQueue:
    return request.app.state.notifications


def get_session_factory(request: Request):
    return request.app.state.session_factory


@app.on_event("startup")
async def on_startup():
    settings = get_settings()
    configure_logging(settings)
    await init_db()

    app.state.session_factory = async_session
    app.state.square = SquareClient(settings)
    app.state.notifications = NotificationQueue(WebhookDispatcher(settings))
    app.state.notifications.start()
    logger.info("Booking API started")


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.notifications.stop()
    await app.state.notifications.dispatcher.aclose()
    await app.state.square.aclose()


def _summary(booking: Booking) -> BookingSummary:
    return BookingSummary(
        reference=booking.booking_reference,
        customerName=booking.full_name,
        email=booking.email,
        date=booking.date.isoformat(),
        time=booking.time,
        visitors=booking.number_of_visitors,
        amount=booking.total_amount,
        status=booking.status.value,
        paymentStatus=booking.payment_status.value,
        rescheduleCount=booking.reschedule_count or 0,
    )


# --- Endpoint 1: GET /api/availability ---
@app.get("/api/availability", response_model=AvailabilityMap)
async def get_availability(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    return await list_available_times(session, business_today(settings))


# --- Endpoint 2: POST /api/bookings ---
@app.post("/api/bookings")
async def book_visit(
    booking_data: BookingCreate,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    square: SquareClient = Depends(get_square_client),
    notifications: NotificationQueue = Depends(get_notification_queue),
    session_factory=Depends(get_session_factory),
):
    booking = await create_booking(session, booking_data, settings)

    if booking.payment_method == PaymentMethod.PAY_NOW:
        link = await start_online_payment(session, booking, settings, square)
        background_tasks.add_task(record_square_order_id, session_factory, booking.id, link.order_id)
        # Confirmation is sent once Square reports the payment
        return PaymentRedirect(
            success=True,
            requiresPayment=True,
            paymentUrl=link.url,
            bookingId=booking.id,
            message="Booking created! Redirecting to payment...",
        )

    notifications.enqueue(confirmation_for(booking))
    return BookingConfirmation(success=True, message=PAY_ON_ARRIVAL_MESSAGE)


# --- Endpoint 3: GET /api/bookings/{reference} ---
@app.get("/api/bookings/{reference}", response_model=BookingSummary)
async def get_booking(reference: str, session: AsyncSession = Depends(get_session)):
    if not validate_booking_reference(reference):
        raise InvalidReference()
    booking = await find_booking_by_reference(session, reference)
    if booking is None:
        raise BookingNotFound("Booking not found")
    return _summary(booking)


# --- Endpoint 4: cancellation ---
@app.get("/api/cancel-booking", response_model=TokenPreview)
async def preview_cancellation(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    booking = await load_modifiable_booking(session, token, settings, action="cancel")
    return TokenPreview(valid=True, booking=_summary(booking))


@app.post("/api/cancel-booking")
async def cancel_visit(
    body: CancelRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifications: NotificationQueue = Depends(get_notification_queue),
):
    booking = await cancel_booking(session, body.cancellationToken, body.reason, settings)
    for notice in cancellation_notices(booking, body.reason):
        notifications.enqueue(notice)

    return {
        "success": True,
        "message": (
            "Your booking has been cancelled successfully. "
            "You will receive a confirmation email shortly."
        ),
        "booking": {
            "date": booking.date.isoformat(),
            "time": booking.time,
            "visitors": booking.number_of_visitors,
        },
    }


# --- Endpoint 5: rescheduling ---
@app.get("/api/reschedule-booking", response_model=TokenPreview)
async def preview_reschedule(
    token: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    booking = await load_modifiable_booking(session, token, settings, action="reschedule")
    return TokenPreview(valid=True, booking=_summary(booking))


@app.post("/api/reschedule-booking")
async def reschedule_visit(
    body: RescheduleRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    notifications: NotificationQueue = Depends(get_notification_queue),
):
    booking, original_date, original_time = await reschedule_booking(
        session, body.cancellationToken, body.newDate, body.newTime, settings
    )
    notifications.enqueue(reschedule_notice(booking, original_date, original_time, body.reason))

    return {
        "success": True,
        "message": (
            "Your booking has been rescheduled successfully. "
            "You will receive a confirmation email shortly."
        ),
        "booking": {
            "reference": booking.booking_reference,
            "originalDate": original_date.isoformat(),
            "originalTime": original_time,
            "newDate": booking.date.isoformat(),
            "newTime": booking.time,
            "visitors": booking.number_of_visitors,
        },
    }


# --- Endpoint 6: POST /api/contact ---
@app.post("/api/contact")
async def submit_contact(
    body: ContactCreate,
    notifications: NotificationQueue = Depends(get_notification_queue),
):
    if not body.name or not body.email or not body.message:
        raise MissingFields("Name, email, and message are required.")
    if not EMAIL_PATTERN.match(body.email.strip()):
        raise InvalidEmail()

    contact = ContactSubmission(
        id=str(uuid.uuid4()),
        type=body.type,
        name=body.name.strip(),
        email=body.email.strip(),
        message=body.message,
        subject=body.subject,
        flower=body.flower,
        notes=body.notes,
    )
    notifications.enqueue(Notification(CONTACT_FORM, contact=contact))
    return {"success": True, "message": "Thanks for reaching out! We'll get back to you soon."}


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
