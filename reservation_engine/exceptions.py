from rest_framework import status
from rest_framework.exceptions import APIException

PAYMENT_NOT_COMPLETED = "Payment not completed, please try again"


class ReservationError(APIException):
    """Base class for engine failures.

    Rendered by DRF as ``{"error": message, ...extra}`` with ``status_code``.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Reservation request failed"
    default_code = "reservation_error"

    def __init__(self, message=None, **extra):
        self.message = message or self.default_detail
        super().__init__({"error": self.message}, self.default_code)
        # extras are data for the client (quotes, statuses), rendered as given
        self.detail.update(extra)


class InvalidDateRange(ReservationError):
    default_detail = "Invalid date range"
    default_code = "invalid_date_range"


class NoAvailability(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "No rooms available for the selected dates"
    default_code = "no_availability"


class StaleAllocation(ReservationError):
    """A claim lost a race; the allocator retries the next candidate."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "Room was claimed by another request"
    default_code = "stale_allocation"

    def __init__(self, room_number, reason):
        self.room_number = room_number
        self.reason = reason
        super().__init__(f"Room {room_number} could not be claimed: {reason}")


class QuoteChanged(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The price for this stay has changed, please review the new quote"
    default_code = "quote_changed"


class InvalidTransition(ReservationError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "invalid_transition"

    def __init__(self, booking_number, current, attempted, message=None):
        self.booking_number = booking_number
        self.current = current
        self.attempted = attempted
        super().__init__(
            message or f"Booking {booking_number} cannot move from {current} to {attempted}",
            booking_number=booking_number,
            current_status=current,
            attempted_status=attempted,
        )


class BookingExpired(InvalidTransition):
    default_code = "booking_expired"

    def __init__(self, booking_number, attempted):
        super().__init__(
            booking_number,
            "expired",
            attempted,
            message=f"Booking {booking_number} has expired, please make a new booking",
        )


class PaymentError(ReservationError):
    """Payment-stage failure. Guests only ever see the generic message."""

    default_detail = PAYMENT_NOT_COMPLETED

    def __init__(self, booking_number=None, reason="", provider=None):
        self.booking_number = booking_number
        self.reason = reason
        self.provider = provider
        super().__init__(PAYMENT_NOT_COMPLETED)

    def __str__(self):
        return f"{self.__class__.__name__}({self.booking_number}, {self.provider}): {self.reason}"


class PaymentVerificationFailed(PaymentError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_code = "payment_verification_failed"


class ProviderUnavailable(PaymentError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "provider_unavailable"


class ProviderRejected(PaymentError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "provider_rejected"


class UnknownProvider(ReservationError):
    default_detail = "Payment provider is not available"
    default_code = "unknown_provider"
