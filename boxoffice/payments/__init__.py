"""
Payment provider contract.

Two gateways implement the same interface; the booking logic only ever talks
to a `PaymentProvider` and never knows which one is active. The active one is
chosen by the PAYMENT_PROVIDER setting at request time.

Every provider-facing failure is caught inside the adapter and comes back as
None / False / an invalid WebhookVerifyResult.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, TypedDict

from ..intents import MultiRegistrationIntent, RegistrationIntent
from ..log import log_debug
from ..model.db import Event
from .signatures import WebhookEvent, WebhookVerifyResult


class CheckoutSessionResult(TypedDict):
    session_id: str
    checkout_url: str


# paid | unpaid | failed
PAYMENT_STATUSES = ("paid", "unpaid", "failed")


@dataclass
class ValidatedPaymentSession:
    id: str
    payment_status: str
    payment_reference: Optional[str]
    # minor currency units, as reported by the provider
    amount_total: Optional[int]
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def is_multi(self) -> bool:
        return self.metadata.get("multi") == "1"


@dataclass
class WebhookSetupResult:
    success: bool
    endpoint_id: Optional[str] = None
    # signing secret for the registered endpoint
    secret: Optional[str] = None
    error: Optional[str] = None


class PaymentProvider(ABC):
    type: str
    # per-value metadata ceiling imposed by the gateway
    metadata_limit: int
    # webhook event type that means "checkout paid"
    checkout_completed_event_type: str

    @abstractmethod
    async def create_checkout_session(
        self, event: Event, intent: RegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]: ...

    @abstractmethod
    async def create_multi_checkout_session(
        self, intent: MultiRegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]: ...

    @abstractmethod
    async def retrieve_session(
        self, session_id: str
    ) -> Optional[ValidatedPaymentSession]: ...

    @abstractmethod
    async def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> WebhookVerifyResult: ...

    @abstractmethod
    async def refund_payment(self, payment_reference: str) -> bool: ...

    @abstractmethod
    async def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult: ...

    # session id the event refers to, or None if the event is not a
    # completed payment
    @abstractmethod
    def session_id_from_event(self, event: WebhookEvent) -> Optional[str]: ...

    # request header carrying the signature
    signature_header: str

    async def reset(self) -> None:
        """Drop cached gateway clients (e.g. after credentials change)."""

    async def close(self) -> None:
        """Release gateway clients at shutdown."""


async def get_active_provider(
    credentials, providers: Mapping[str, PaymentProvider]
) -> Optional[PaymentProvider]:
    provider_type = await credentials.get_active_provider_type()
    if not provider_type:
        log_debug("Payment", "No payment provider configured in settings")
        return None
    log_debug("Payment", f"Resolving payment provider: {provider_type}")
    return providers.get(provider_type)


def build_providers(credentials, transport=None) -> Dict[str, PaymentProvider]:
    # local imports keep the adapters out of the contract's import graph
    from .square import SquareProvider
    from .stripe import StripeProvider
    return {
        "stripe": StripeProvider(credentials, transport=transport),
        "square": SquareProvider(credentials, transport=transport),
    }


__all__ = [
    "CheckoutSessionResult", "ValidatedPaymentSession", "PaymentProvider",
    "WebhookSetupResult",
    "WebhookEvent", "WebhookVerifyResult", "get_active_provider",
    "build_providers", "PAYMENT_STATUSES",
]
