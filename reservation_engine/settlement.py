"""
Booking lifecycle.

    pending_payment -> confirmed -> checked_in -> checked_out
    pending_payment -> expired
    pending_payment | confirmed -> cancelled

Every transition is a conditional UPDATE on the current status, so the
expiry sweep, duplicate confirmations and staff actions can race freely:
the first commit wins and the others observe the new status.
"""
from dataclasses import dataclass

import structlog
from django.db import IntegrityError, transaction
from django.db.models import Exists, OuterRef
from django.utils import timezone

from . import payments
from .exceptions import BookingExpired, InvalidTransition, PaymentError, PaymentVerificationFailed
from .lookup import find_booking
from .models import Booking, PaymentAttempt
from .payments import PaymentOutcome
from .signals import emit_transition

logger = structlog.get_logger(__name__)

Status = Booking.Status

TRANSITIONS = {
    Status.PENDING_PAYMENT: {Status.CONFIRMED, Status.EXPIRED, Status.CANCELLED},
    Status.CONFIRMED: {Status.CHECKED_IN, Status.CANCELLED},
    Status.CHECKED_IN: {Status.CHECKED_OUT},
    Status.CHECKED_OUT: set(),
    Status.EXPIRED: set(),
    Status.CANCELLED: set(),
}

SETTLED_STATUSES = (Status.CONFIRMED, Status.CHECKED_IN, Status.CHECKED_OUT)


@dataclass(frozen=True)
class ConfirmationResult:
    booking: Booking
    outcome: PaymentOutcome
    transitioned: bool


def can_transition(current, target):
    return target in TRANSITIONS.get(current, set())


def _sources(target):
    return [source for source, targets in TRANSITIONS.items() if target in targets]


def _transition(booking, target, **fields):
    """Move ``booking`` to ``target`` if it is still in a state that allows it."""
    now = timezone.now()
    moved = Booking.objects.filter(pk=booking.pk, status__in=_sources(target)).update(
        status=target, updated_at=now, **fields
    )
    return bool(moved)


def _apply(booking, target, **fields):
    previous = booking.status
    if not can_transition(previous, target):
        raise InvalidTransition(booking.booking_number, previous, target)
    with transaction.atomic():
        moved = _transition(booking, target, **fields)
        if moved:
            emit_transition(booking, previous, target)
    booking.refresh_from_db()
    if not moved:
        raise InvalidTransition(booking.booking_number, booking.status, target)
    logger.info(
        "booking.transition",
        booking_number=booking.booking_number,
        previous=previous,
        status=target,
    )
    return booking


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------

def initiate_payment(booking, provider_name, **options):
    """Open a payment with ``provider_name`` and record the attempt."""
    if booking.status == Status.EXPIRED or (
        booking.status == Status.PENDING_PAYMENT and booking.expires_at and booking.expires_at <= timezone.now()
    ):
        raise BookingExpired(booking.booking_number, "payment")
    if booking.status != Status.PENDING_PAYMENT:
        raise InvalidTransition(booking.booking_number, booking.status, "payment")

    client = payments.get_provider(provider_name)
    initiation = client.initiate(booking, **options)

    with transaction.atomic():
        PaymentAttempt.objects.create(
            booking=booking,
            provider=client.name,
            provider_reference=initiation.reference,
            amount_cents=booking.total_cents,
            currency=client.currency,
        )
        Booking.objects.filter(pk=booking.pk, status=Status.PENDING_PAYMENT).update(
            payment_provider=client.name,
            payment_reference=initiation.reference,
            updated_at=timezone.now(),
        )
    booking.payment_provider = client.name
    booking.payment_reference = initiation.reference
    logger.info(
        "payment.initiated",
        booking_number=booking.booking_number,
        provider=client.name,
        flow=initiation.flow.value,
        reference=initiation.reference,
    )
    return initiation


def _verify(booking, attempt):
    """Ask the provider what really happened to ``attempt``."""
    client = payments.get_provider(attempt.provider)
    try:
        payment = client.retrieve(attempt.provider_reference)
    except PaymentError as exc:
        exc.booking_number = exc.booking_number or booking.booking_number
        logger.warning(
            "payment.verification_error",
            booking_number=booking.booking_number,
            provider=attempt.provider,
            reference=attempt.provider_reference,
            error=exc.__class__.__name__,
            reason=exc.reason,
        )
        raise

    mismatches = []
    if payment.reference != attempt.provider_reference:
        mismatches.append(f"reference {payment.reference}")
    if payment.amount_cents != attempt.amount_cents or attempt.amount_cents != booking.total_cents:
        mismatches.append(f"amount {payment.amount_cents} != {booking.total_cents}")
    if payment.currency and payment.currency != attempt.currency.lower():
        mismatches.append(f"currency {payment.currency} != {attempt.currency}")
    if payment.booking_number and payment.booking_number != booking.booking_number:
        mismatches.append(f"booking {payment.booking_number}")
    if mismatches:
        reason = "; ".join(mismatches)
        logger.error(
            "payment.mismatch",
            booking_number=booking.booking_number,
            provider=attempt.provider,
            reference=attempt.provider_reference,
            reason=reason,
        )
        raise PaymentVerificationFailed(booking.booking_number, reason=reason, provider=attempt.provider)
    return payment


def _settle(booking, attempt):
    now = timezone.now()
    try:
        with transaction.atomic():
            PaymentAttempt.objects.filter(pk=attempt.pk, status=PaymentAttempt.Status.CREATED).update(
                status=PaymentAttempt.Status.SUCCEEDED, updated_at=now
            )
            moved = _transition(
                booking,
                Status.CONFIRMED,
                confirmed_at=now,
                payment_provider=attempt.provider,
                payment_reference=attempt.provider_reference,
            )
            if moved:
                emit_transition(booking, Status.PENDING_PAYMENT, Status.CONFIRMED)
    except IntegrityError:
        logger.error(
            "payment.duplicate_success",
            booking_number=booking.booking_number,
            provider=attempt.provider,
            reference=attempt.provider_reference,
        )
        raise PaymentVerificationFailed(
            booking.booking_number, reason="booking already paid by another payment", provider=attempt.provider
        )

    booking.refresh_from_db()
    if moved:
        logger.info(
            "payment.confirmed",
            booking_number=booking.booking_number,
            provider=attempt.provider,
            reference=attempt.provider_reference,
        )
        return ConfirmationResult(booking, PaymentOutcome.SUCCEEDED, True)

    if booking.status in SETTLED_STATUSES and booking.payment_reference == attempt.provider_reference:
        # a concurrent confirmation of the same payment got there first
        return ConfirmationResult(booking, PaymentOutcome.SUCCEEDED, False)

    # money moved but the hold is gone; support has to refund
    logger.error(
        "payment.succeeded_after_release",
        booking_number=booking.booking_number,
        status=booking.status,
        provider=attempt.provider,
        reference=attempt.provider_reference,
    )
    if booking.status == Status.EXPIRED:
        raise BookingExpired(booking.booking_number, Status.CONFIRMED)
    raise InvalidTransition(booking.booking_number, booking.status, Status.CONFIRMED)


def confirm_payment(booking_number, provider_reference=None, provider=None):
    """Confirm a booking's payment after re-verifying it with the provider.

    Safe to call repeatedly (return URL and webhook both fire): a booking that
    is already settled by this payment is re-verified and returned without
    emitting another transition.
    """
    booking = find_booking(booking_number)
    reference = provider_reference or booking.payment_reference
    if not reference:
        raise PaymentVerificationFailed(booking_number, reason="no payment reference")
    if booking.status == Status.EXPIRED:
        raise BookingExpired(booking_number, Status.CONFIRMED)
    if booking.status == Status.CANCELLED:
        raise InvalidTransition(booking_number, booking.status, Status.CONFIRMED)

    attempt = booking.payment_attempts.filter(provider_reference=reference).first()
    if attempt is None or (provider and attempt.provider != provider):
        logger.warning(
            "payment.unknown_reference",
            booking_number=booking_number,
            provider=provider,
            reference=reference,
        )
        raise PaymentVerificationFailed(
            booking_number, reason=f"reference {reference} does not belong to booking", provider=provider
        )

    if booking.status in SETTLED_STATUSES:
        if attempt.status != PaymentAttempt.Status.SUCCEEDED:
            raise PaymentVerificationFailed(
                booking_number, reason="booking already settled by another payment", provider=attempt.provider
            )
        payment = _verify(booking, attempt)
        if payment.outcome != PaymentOutcome.SUCCEEDED:
            logger.error(
                "payment.settled_but_not_paid",
                booking_number=booking_number,
                reference=reference,
                outcome=payment.outcome.value,
            )
            raise PaymentVerificationFailed(booking_number, reason=payment.detail, provider=attempt.provider)
        return ConfirmationResult(booking, PaymentOutcome.SUCCEEDED, False)

    if attempt.status == PaymentAttempt.Status.FAILED:
        raise PaymentVerificationFailed(booking_number, reason="payment attempt failed", provider=attempt.provider)

    payment = _verify(booking, attempt)
    if payment.outcome == PaymentOutcome.PENDING:
        logger.info("payment.pending", booking_number=booking_number, reference=reference)
        return ConfirmationResult(booking, PaymentOutcome.PENDING, False)
    if payment.outcome == PaymentOutcome.FAILED:
        PaymentAttempt.objects.filter(pk=attempt.pk, status=PaymentAttempt.Status.CREATED).update(
            status=PaymentAttempt.Status.FAILED,
            failure_reason=payment.detail[:255],
            updated_at=timezone.now(),
        )
        logger.warning(
            "payment.failed",
            booking_number=booking_number,
            reference=reference,
            detail=payment.detail,
        )
        raise PaymentVerificationFailed(booking_number, reason=payment.detail, provider=attempt.provider)
    return _settle(booking, attempt)


def handle_callback(provider_name, payload):
    """Confirm the payment a webhook refers to; unrelated events return None."""
    client = payments.get_provider(provider_name)
    callback = client.parse_callback(payload or {})
    if callback is None:
        return None
    booking_number = callback.booking_number
    if not booking_number:
        attempt = (
            PaymentAttempt.objects.select_related("booking")
            .filter(provider=client.name, provider_reference=callback.reference)
            .first()
        )
        if attempt is None:
            logger.warning("payment.callback_unmatched", provider=client.name, reference=callback.reference)
            return None
        booking_number = attempt.booking.booking_number
    return confirm_payment(booking_number, callback.reference, provider=client.name)


# ----------------------------------------------------------------------
# Holds and stay lifecycle
# ----------------------------------------------------------------------

def expire_stale_holds(now=None):
    """Release unpaid holds past their expiry. Returns the number expired."""
    now = now or timezone.now()
    paid = PaymentAttempt.objects.filter(booking=OuterRef("pk"), status=PaymentAttempt.Status.SUCCEEDED)
    stale = Booking.objects.filter(status=Status.PENDING_PAYMENT, expires_at__lt=now).filter(~Exists(paid))

    expired = 0
    for booking in list(stale):
        with transaction.atomic():
            moved = (
                Booking.objects.filter(pk=booking.pk, status=Status.PENDING_PAYMENT)
                .filter(~Exists(paid))
                .update(status=Status.EXPIRED, updated_at=now)
            )
            if moved:
                booking.status = Status.EXPIRED
                emit_transition(booking, Status.PENDING_PAYMENT, Status.EXPIRED)
        if moved:
            expired += 1
            logger.info("hold.expired", booking_number=booking.booking_number, room=booking.room_id)
    return expired


def check_in(booking_number, today=None):
    booking = find_booking(booking_number)
    today = today or timezone.localdate()
    if booking.status == Status.CONFIRMED and today < booking.check_in:
        raise InvalidTransition(
            booking_number,
            booking.status,
            Status.CHECKED_IN,
            message=f"Check-in for {booking_number} opens on {booking.check_in.isoformat()}",
        )
    return _apply(booking, Status.CHECKED_IN, checked_in_at=timezone.now())


def check_out(booking_number):
    booking = find_booking(booking_number)
    return _apply(booking, Status.CHECKED_OUT, checked_out_at=timezone.now())


def cancel(booking_number, reason=""):
    booking = find_booking(booking_number)
    return _apply(booking, Status.CANCELLED, cancelled_at=timezone.now(), cancellation_reason=reason[:255])
