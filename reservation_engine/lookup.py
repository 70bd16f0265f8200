from rest_framework.exceptions import NotFound

from .models import Booking


def find_booking(booking_number):
    booking = (
        Booking.objects.select_related("room_type", "room")
        .filter(booking_number=booking_number)
        .first()
    )
    if booking is None:
        raise NotFound({"error": "Booking not found"})
    return booking


def payment_status(booking):
    """Summarise the booking's payment attempts for display."""
    statuses = {attempt.status for attempt in booking.payment_attempts.all()}
    for status in ("succeeded", "created", "failed"):
        if status in statuses:
            return status
    return "unpaid"
