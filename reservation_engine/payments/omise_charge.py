from typing import Any, Dict, Optional

from ..exceptions import ProviderRejected
from .base import (
    CallbackReference,
    ChargeInitiation,
    PaymentFlow,
    PaymentOutcome,
    PaymentProvider,
    ProviderPayment,
)

FAILED_STATUSES = {"failed", "expired", "reversed"}


class OmiseChargeProvider(PaymentProvider):
    """Omise charges, created from a widget card token or a payment source."""

    name = "omise"
    flow = PaymentFlow.CHARGE
    default_base_url = "https://api.omise.co"

    def initiate(self, booking, card_token=None, source_type=None, locale="en", **options) -> ChargeInitiation:
        number = booking.booking_number
        charge = {
            "amount": booking.total_cents,
            "currency": self.currency,
            "return_uri": f"{self.return_url}/{locale}/payment/omise/return?booking_number={number}",
            "metadata[booking_number]": number,
        }
        if card_token:
            charge["card"] = card_token
        elif source_type:
            source = self._create(
                "/sources",
                {"amount": booking.total_cents, "currency": self.currency, "type": source_type},
                booking_number=number,
            )
            charge["source"] = source["id"]
        else:
            raise ProviderRejected(number, reason="card_token or source_type is required", provider=self.name)

        created = self._create("/charges", charge, booking_number=number)
        return ChargeInitiation(
            provider=self.name,
            reference=created["id"],
            status=created.get("status", ""),
            authorize_url=created.get("authorize_uri"),
        )

    def retrieve(self, reference: str) -> ProviderPayment:
        charge = self._fetch("/charges/{reference}", reference)
        status = charge.get("status")
        if charge.get("paid") or status == "successful":
            outcome = PaymentOutcome.SUCCEEDED
        elif status in FAILED_STATUSES:
            outcome = PaymentOutcome.FAILED
        else:
            outcome = PaymentOutcome.PENDING
        metadata = charge.get("metadata") or {}
        return ProviderPayment(
            reference=charge.get("id", reference),
            outcome=outcome,
            amount_cents=int(charge.get("amount") or 0),
            currency=(charge.get("currency") or "").lower(),
            booking_number=metadata.get("booking_number"),
            detail=charge.get("failure_message") or f"status={status}",
        )

    def parse_callback(self, payload: Dict[str, Any]) -> Optional[CallbackReference]:
        if not str(payload.get("key", "")).startswith("charge."):
            return None
        charge = payload.get("data") or {}
        if charge.get("object") != "charge" or not charge.get("id"):
            return None
        metadata = charge.get("metadata") or {}
        return CallbackReference(booking_number=metadata.get("booking_number"), reference=charge["id"])
