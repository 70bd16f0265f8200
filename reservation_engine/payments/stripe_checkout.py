from typing import Any, Dict, Optional

from .base import (
    CallbackReference,
    PaymentFlow,
    PaymentOutcome,
    PaymentProvider,
    ProviderPayment,
    SessionInitiation,
)

SESSION_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}


class StripeCheckoutProvider(PaymentProvider):
    """Stripe Checkout: the guest pays on a hosted page and returns with a session id."""

    name = "stripe"
    flow = PaymentFlow.SESSION
    default_base_url = "https://api.stripe.com/v1"

    def auth(self):
        return None

    def headers(self) -> Dict[str, str]:
        return {**super().headers(), "Authorization": f"Bearer {self.secret_key}"}

    def initiate(self, booking, locale="en", payment_method_types=("card",), **options) -> SessionInitiation:
        number = booking.booking_number
        success_url = (
            f"{self.return_url}/{locale}/payment/stripe/return"
            f"?booking_number={number}&session_id={{CHECKOUT_SESSION_ID}}"
        )
        cancel_url = f"{self.return_url}/{locale}/checkout?booking_number={number}&canceled=1"
        session = self._create(
            "/checkout/sessions",
            {
                "mode": "payment",
                "success_url": success_url,
                "cancel_url": cancel_url,
                "customer_email": booking.guest_email,
                "client_reference_id": number,
                "line_items[0][price_data][currency]": self.currency,
                "line_items[0][price_data][unit_amount]": booking.total_cents,
                "line_items[0][price_data][product_data][name]": f"Room booking {number}",
                "line_items[0][quantity]": 1,
                "payment_method_types[]": list(payment_method_types),
                "metadata[booking_number]": number,
            },
            booking_number=number,
        )
        return SessionInitiation(provider=self.name, reference=session["id"], redirect_url=session.get("url", ""))

    def retrieve(self, reference: str) -> ProviderPayment:
        session = self._fetch("/checkout/sessions/{reference}", reference)
        if session.get("payment_status") == "paid":
            outcome = PaymentOutcome.SUCCEEDED
        elif session.get("status") == "expired":
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING
        metadata = session.get("metadata") or {}
        return ProviderPayment(
            reference=session.get("id", reference),
            outcome=outcome,
            amount_cents=int(session.get("amount_total") or 0),
            currency=(session.get("currency") or "").lower(),
            booking_number=metadata.get("booking_number") or session.get("client_reference_id"),
            detail=f"status={session.get('status')} payment_status={session.get('payment_status')}",
        )

    def parse_callback(self, payload: Dict[str, Any]) -> Optional[CallbackReference]:
        if payload.get("type") not in SESSION_EVENTS:
            return None
        session = (payload.get("data") or {}).get("object") or {}
        if not session.get("id"):
            return None
        metadata = session.get("metadata") or {}
        return CallbackReference(
            booking_number=metadata.get("booking_number") or session.get("client_reference_id"),
            reference=session["id"],
        )
