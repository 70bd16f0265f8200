from django.db import transaction
from django.dispatch import Signal

# sent with booking=, previous=, status= once the transition has committed
booking_status_changed = Signal()


def emit_transition(booking, previous, status):
    transaction.on_commit(
        lambda: booking_status_changed.send(
            sender=booking.__class__, booking=booking, previous=previous, status=status
        )
    )
