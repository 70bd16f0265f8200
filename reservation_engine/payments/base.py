"""
Payment provider interface
==========================

Every provider exposes the same capability interface:

- ``initiate``: open a payment for a booking (hosted session or charge)
- ``retrieve``: ask the provider for the authoritative state of a payment
- ``parse_callback``: pull the payment reference out of a webhook payload

Providers come in two flavours, tagged by ``PaymentFlow``. A session-based
provider redirects the guest to a hosted page and later hands back a session
id; a charge-based provider receives a token from a client-side widget and
creates the charge directly. Callers never branch on provider payload shapes.
"""

import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import httpx
import structlog

from ..exceptions import PaymentVerificationFailed, ProviderRejected, ProviderUnavailable

logger = structlog.get_logger(__name__)

# provider ids are interpolated into URL paths
REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,100}$")


class PaymentFlow(str, Enum):
    SESSION = "session"
    CHARGE = "charge"


class PaymentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class SessionInitiation:
    """Guest must be sent to ``redirect_url``; ``reference`` is the session id."""
    provider: str
    reference: str
    redirect_url: str
    flow: PaymentFlow = PaymentFlow.SESSION

    def as_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "flow": self.flow.value,
            "reference": self.reference,
            "redirect_url": self.redirect_url,
        }


@dataclass(frozen=True)
class ChargeInitiation:
    """A charge exists; ``authorize_url`` is set when the guest must approve it."""
    provider: str
    reference: str
    status: str
    authorize_url: Optional[str] = None
    flow: PaymentFlow = PaymentFlow.CHARGE

    def as_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "flow": self.flow.value,
            "reference": self.reference,
            "charge_id": self.reference,
            "authorize_url": self.authorize_url,
            "status": self.status,
        }


PaymentInitiation = Union[SessionInitiation, ChargeInitiation]


@dataclass(frozen=True)
class ProviderPayment:
    """Provider-side view of a payment, as reported by the provider itself."""
    reference: str
    outcome: PaymentOutcome
    amount_cents: int
    currency: str
    booking_number: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class CallbackReference:
    booking_number: Optional[str]
    reference: str


class ProviderHTTPError(Exception):
    def __init__(self, status_code: int, body: Any):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Provider responded with {status_code}")


def retry_delay(attempt: int, base: float) -> float:
    """Exponential backoff with jitter."""
    if base <= 0:
        return 0.0
    delay = base * (2 ** attempt)
    return delay + random.uniform(0, delay / 2)


class PaymentProvider(ABC):
    """
    Base class for payment provider clients.

    Args:
        secret_key: Provider API secret
        base_url: API root, overridable for sandboxes
        currency: ISO currency code used for new payments
        timeout: Per-request timeout in seconds
        max_retries: Attempts for transport errors, timeouts and 5xx responses
        deadline: Budget in seconds for one call including retries and backoff
        backoff: Base delay for exponential backoff between attempts
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    name: str
    flow: PaymentFlow
    default_base_url: str

    def __init__(
        self,
        secret_key: str,
        *,
        base_url: Optional[str] = None,
        currency: str = "thb",
        timeout: float = 10.0,
        max_retries: int = 3,
        deadline: float = 15.0,
        backoff: float = 0.5,
        return_url: str = "",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.deadline = deadline
        self.backoff = backoff
        self.return_url = return_url.rstrip("/")
        self.transport = transport

    def auth(self) -> Optional[httpx.Auth]:
        # secret key as username, empty password
        return httpx.BasicAuth(self.secret_key, "")

    def headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    @abstractmethod
    def initiate(self, booking, **options) -> PaymentInitiation:
        pass

    @abstractmethod
    def retrieve(self, reference: str) -> ProviderPayment:
        pass

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> Optional[CallbackReference]:
        pass

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=self.auth(),
            headers=self.headers(),
            timeout=self.timeout,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None, booking_number=None):
        """Send a request, retrying transient failures.

        Raises:
            ProviderUnavailable: retries exhausted on timeouts, network errors or 5xx
            ProviderHTTPError: provider answered with a 4xx
        """
        last_error = ""
        started = time.monotonic()
        with self._client() as client:
            for attempt in range(self.max_retries):
                if attempt:
                    delay = retry_delay(attempt - 1, self.backoff)
                    if self.deadline - (time.monotonic() - started) <= delay:
                        logger.warning(
                            "provider.deadline_exceeded",
                            provider=self.name,
                            path=path,
                            attempts=attempt,
                            deadline=self.deadline,
                        )
                        break
                    time.sleep(delay)
                remaining = self.deadline - (time.monotonic() - started)
                try:
                    response = client.request(method, path, data=data, timeout=min(self.timeout, remaining))
                except httpx.TransportError as exc:
                    last_error = f"{exc.__class__.__name__}: {exc}"
                    logger.warning(
                        "provider.request_failed",
                        provider=self.name,
                        path=path,
                        attempt=attempt + 1,
                        error=last_error,
                    )
                    continue

                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        "provider.server_error",
                        provider=self.name,
                        path=path,
                        attempt=attempt + 1,
                        status_code=response.status_code,
                    )
                    continue

                body = self._json(response)
                if response.status_code >= 400:
                    raise ProviderHTTPError(response.status_code, body)
                return body

        raise ProviderUnavailable(booking_number, reason=last_error, provider=self.name)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {"message": "Invalid JSON response"}

    def _create(self, path: str, data: Dict[str, Any], booking_number: str) -> Dict[str, Any]:
        try:
            return self._request("POST", path, data=data, booking_number=booking_number)
        except ProviderHTTPError as exc:
            logger.error(
                "provider.initiation_rejected",
                provider=self.name,
                booking_number=booking_number,
                status_code=exc.status_code,
                body=exc.body,
            )
            raise ProviderRejected(booking_number, reason=str(exc.body), provider=self.name)

    def _fetch(self, path: str, reference: str) -> Dict[str, Any]:
        if not REFERENCE_PATTERN.match(reference or ""):
            raise PaymentVerificationFailed(reason=f"malformed reference {reference!r}", provider=self.name)
        try:
            return self._request("GET", path.format(reference=reference))
        except ProviderHTTPError as exc:
            # an unknown reference is never proof of payment
            raise PaymentVerificationFailed(
                reason=f"provider lookup of {reference} returned {exc.status_code}",
                provider=self.name,
            )
