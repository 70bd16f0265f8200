from django.conf import settings

from ..exceptions import UnknownProvider
from .base import (
    CallbackReference,
    ChargeInitiation,
    PaymentFlow,
    PaymentInitiation,
    PaymentOutcome,
    PaymentProvider,
    ProviderPayment,
    SessionInitiation,
)
from .omise_charge import OmiseChargeProvider
from .stripe_checkout import StripeCheckoutProvider

PROVIDER_CLASSES = {
    StripeCheckoutProvider.name: StripeCheckoutProvider,
    OmiseChargeProvider.name: OmiseChargeProvider,
}


def get_provider(name) -> PaymentProvider:
    """Build the configured client for ``name``; unconfigured providers are unknown."""
    provider_class = PROVIDER_CLASSES.get((name or "").lower())
    config = settings.PAYMENT_PROVIDERS.get((name or "").lower()) or {}
    if provider_class is None or not config.get("secret_key"):
        raise UnknownProvider(f"Payment provider {name!r} is not available")
    return provider_class(
        config["secret_key"],
        base_url=config.get("base_url"),
        currency=settings.PAYMENT_CURRENCY,
        timeout=settings.PAYMENT_PROVIDER_TIMEOUT,
        max_retries=settings.PAYMENT_PROVIDER_MAX_RETRIES,
        deadline=settings.PAYMENT_PROVIDER_DEADLINE,
        backoff=settings.PAYMENT_RETRY_BACKOFF,
        return_url=settings.FRONTEND_URL,
    )


__all__ = [
    "CallbackReference",
    "ChargeInitiation",
    "OmiseChargeProvider",
    "PaymentFlow",
    "PaymentInitiation",
    "PaymentOutcome",
    "PaymentProvider",
    "ProviderPayment",
    "SessionInitiation",
    "StripeCheckoutProvider",
    "get_provider",
]
