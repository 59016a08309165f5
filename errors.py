"""Booking error taxonomy and its mapping onto HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base for errors that are reported to the client as ``{"error": message}``."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Booking request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingFields(BookingError):
    default_message = "Missing required fields."


class InvalidEmail(BookingError):
    default_message = "Invalid email format."


class InvalidDate(BookingError):
    default_message = "Invalid date format. Use YYYY-MM-DD."


class PastDate(BookingError):
    default_message = "Cannot book for past dates."


class InvalidVisitorCount(BookingError):
    default_message = "Number of visitors must be between 1 and 20."


class SlotNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Selected time slot is not available."


class BookingLimitReached(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, max_bookings: int) -> None:
        super().__init__(
            f"Maximum bookings reached for this time slot. "
            f"Only {max_bookings} bookings allowed per slot."
        )


class CapacityExceeded(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, remaining: int, requested: int) -> None:
        self.remaining = remaining
        super().__init__(
            f"Not enough visitor capacity remaining. "
            f"Only {remaining} spots available, but you requested {requested}."
        )


class DataAccessError(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Database error. Please try again."


class PaymentUnavailable(BookingError):
    default_message = (
        'Online payment is currently unavailable. '
        'Please select "Pay on Arrival" or try again later.'
    )


class PaymentLinkCreationFailed(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'Failed to create payment link. Please try again or select "Pay on Arrival".'


class InternalError(BookingError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error. Please try again."


class InvalidToken(BookingError):
    default_message = "Invalid cancellation token format"


class InvalidReference(BookingError):
    default_message = "Invalid booking reference format"


class BookingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Invalid or expired booking link"


class BookingNotModifiable(BookingError):
    default_message = "This booking has already been cancelled"


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} invalid body: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request body", "details": jsonable_errors(exc)},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"{request.method} {request.url.path} crashed")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": InternalError.default_message},
    )


def jsonable_errors(exc: RequestValidationError) -> list[str]:
    return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
