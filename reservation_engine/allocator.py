"""Room allocation.

Candidates are read without locks. Each claim then locks the room row
(``select_for_update``), re-checks the interval inside the transaction and
bumps the room's ``version``. A claim whose interval was taken meanwhile sees
``StaleAllocation`` and moves on to the next candidate; claims for disjoint
stays on the same room simply wait their turn.
"""
from dataclasses import dataclass
from datetime import timedelta

import structlog
from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.db.models.functions import Length
from django.utils import timezone
from rest_framework import serializers

from .availability import find_available, overlapping_bookings, validate_stay
from .exceptions import NoAvailability, StaleAllocation
from .models import Booking, IndividualRoom, PromoCode
from .signals import emit_transition

logger = structlog.get_logger(__name__)

BOOKING_NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class GuestInfo:
    name: str
    email: str
    phone: str = ""
    count: int = 1
    special_requests: str = ""


def next_booking_number(today=None):
    today = today or timezone.localdate()
    prefix = f"{settings.BOOKING_NUMBER_PREFIX}{today:%Y%m%d}"
    last = (
        Booking.objects.filter(booking_number__startswith=prefix)
        # longer numbers sort after 9999
        .order_by(Length("booking_number").desc(), "-booking_number")
        .values_list("booking_number", flat=True)
        .first()
    )
    sequence = int(last[len(prefix):]) + 1 if last else 1
    return f"{prefix}{sequence:04d}"


def _create_booking(**fields):
    for _ in range(BOOKING_NUMBER_ATTEMPTS):
        try:
            with transaction.atomic():
                return Booking.objects.create(booking_number=next_booking_number(), **fields)
        except IntegrityError:
            # another request took the same per-day sequence number
            logger.info("booking_number.collision")
    raise IntegrityError("Could not assign a unique booking number")


def _use_promo(code):
    if not code:
        return
    used = (
        PromoCode.objects.filter(code=code)
        .filter(Q(max_uses__isnull=True) | Q(used_count__lt=F("max_uses")))
        .update(used_count=F("used_count") + 1)
    )
    if not used:
        # the quote was accepted with this discount; honour it
        logger.warning("promo.exhausted_during_allocation", code=code)


def _claim(room, room_type, check_in, check_out, guest, quote, now):
    with transaction.atomic():
        # claims on the same room queue here; disjoint stays then both succeed
        locked = IndividualRoom.objects.select_for_update().filter(pk=room.pk, is_active=True).first()
        if locked is None:
            raise StaleAllocation(room.number, "room deactivated")
        if overlapping_bookings(locked, check_in, check_out).exists():
            raise StaleAllocation(room.number, "interval already held")
        IndividualRoom.objects.filter(pk=locked.pk).update(version=F("version") + 1)

        booking = _create_booking(
            room_type=room_type,
            room=room,
            check_in=check_in,
            check_out=check_out,
            nights=quote.nights,
            guest_name=guest.name,
            guest_email=guest.email,
            guest_phone=guest.phone,
            guest_count=guest.count,
            special_requests=guest.special_requests,
            room_price_cents=quote.room_price_cents,
            promo_code=quote.promo_code,
            discount_cents=quote.discount_cents,
            total_cents=quote.total_cents,
            status=Booking.Status.PENDING_PAYMENT,
            expires_at=now + timedelta(minutes=settings.BOOKING_HOLD_MINUTES),
        )
        _use_promo(quote.promo_code)
        emit_transition(booking, None, booking.status)
    return booking


def allocate(room_type, check_in, check_out, guest, quote, today=None):
    """Hold one room of ``room_type`` for the stay and return the new Booking.

    Raises ``InvalidDateRange`` before touching inventory and
    ``NoAvailability`` once every candidate has been tried.
    """
    validate_stay(check_in, check_out, today=today)
    if guest.count > room_type.max_guests:
        raise serializers.ValidationError(
            {"guest_count": f"{room_type.name} accepts at most {room_type.max_guests} guests"}
        )

    for attempt in range(settings.ALLOCATION_PASSES):
        candidates = find_available(room_type.pk, check_in, check_out)
        if not candidates:
            break
        for room in candidates:
            try:
                booking = _claim(room, room_type, check_in, check_out, guest, quote, timezone.now())
            except StaleAllocation as exc:
                logger.info(
                    "allocation.stale",
                    room=exc.room_number,
                    reason=exc.reason,
                    room_type=room_type.pk,
                    attempt=attempt,
                )
                continue
            logger.info(
                "allocation.succeeded",
                booking_number=booking.booking_number,
                room=room.number,
                check_in=check_in.isoformat(),
                check_out=check_out.isoformat(),
            )
            return booking

    logger.warning(
        "allocation.exhausted",
        room_type=room_type.pk,
        check_in=check_in.isoformat(),
        check_out=check_out.isoformat(),
    )
    raise NoAvailability()
