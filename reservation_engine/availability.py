from datetime import timedelta

from django.conf import settings
from django.db.models import Exists, OuterRef
from django.utils import timezone

from .exceptions import InvalidDateRange
from .inventory import active_rooms
from .models import Booking


def validate_stay(check_in, check_out, today=None):
    """Reject ranges the allocator must never see."""
    today = today or timezone.localdate()
    if check_out <= check_in:
        raise InvalidDateRange("check_out must be after check_in")
    if check_in < today:
        raise InvalidDateRange("check_in cannot be in the past")
    horizon = today + timedelta(days=settings.BOOKING_HORIZON_DAYS)
    if check_out > horizon:
        raise InvalidDateRange(f"Bookings are only accepted up to {horizon.isoformat()}")


def overlapping_bookings(room, check_in, check_out, exclude=None):
    # half-open [check_in, check_out): same-day turnover is not a conflict
    qs = Booking.objects.filter(
        room=room,
        status__in=Booking.HOLDING_STATUSES,
        check_in__lt=check_out,
        check_out__gt=check_in,
    )
    if exclude is not None:
        qs = qs.exclude(pk=exclude.pk)
    return qs


def available_rooms_qs(room_type_id, check_in, check_out):
    overlap = Exists(
        Booking.objects.filter(
            room=OuterRef("pk"),
            status__in=Booking.HOLDING_STATUSES,
            check_in__lt=check_out,
            check_out__gt=check_in,
        )
    )
    return active_rooms(room_type_id).annotate(has_overlap=overlap).filter(has_overlap=False)


def find_available(room_type_id, check_in, check_out):
    """Candidate rooms for the range, ordered by room number."""
    return list(available_rooms_qs(room_type_id, check_in, check_out))
