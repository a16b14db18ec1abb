# payments/stripe.py
"""
Stripe Checkout adapter (primary gateway).

Talks to the REST API directly with httpx: form-encoded requests with
bracketed keys, Bearer auth with the secret key. STRIPE_API_BASE can point
at stripe-mock.
"""
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from .. import config
from ..intents import MultiRegistrationIntent, RegistrationIntent
from ..log import ErrorCode, log_debug, log_error
from ..model.db import Event
from . import (
    CheckoutSessionResult, PaymentProvider, ValidatedPaymentSession,
    WebhookSetupResult,
)
from .helpers import (
    HTTP_TIMEOUT_SECONDS, ClientCache, build_multi_intent_metadata,
    build_single_intent_metadata, enforce_metadata_limits,
    extract_session_metadata,
    has_required_session_metadata, safe_call, to_checkout_result,
)
from .signatures import (
    WebhookEvent, WebhookVerifyResult, verify_timestamped_signature,
)

# Stripe metadata values: max 500 characters
METADATA_MAX_VALUE_LENGTH = 500

COMPLETED_EVENT_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)

FormFields = List[Tuple[str, str]]


def _line_item(
    i: int, currency: str, name: str, unit_amount: int, quantity: int
) -> FormFields:
    p = f"line_items[{i}]"
    return [
        (f"{p}[price_data][currency]", currency),
        (f"{p}[price_data][product_data][name]", name),
        (f"{p}[price_data][unit_amount]", str(unit_amount)),
        (f"{p}[quantity]", str(quantity)),
    ]


def _session_form(
    line_items: FormFields,
    metadata: Dict[str, str],
    email: str,
    base_url: str,
) -> FormFields:
    form: FormFields = [
        ("mode", "payment"),
        ("customer_email", email),
        ("success_url",
         f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"),
        ("cancel_url", f"{base_url}/payment/cancel"),
    ]
    form.extend(line_items)
    form.extend((f"metadata[{k}]", v) for k, v in metadata.items())
    return form


def _payment_status(session: Mapping[str, Any]) -> str:
    if session.get("status") == "expired":
        return "failed"
    # no_payment_required is not a payment: never fulfilled
    if session.get("payment_status") == "paid":
        return "paid"
    return "unpaid"


class StripeProvider(PaymentProvider):
    type = "stripe"
    metadata_limit = METADATA_MAX_VALUE_LENGTH
    checkout_completed_event_type = "checkout.session.completed"
    signature_header = "stripe-signature"

    def __init__(
        self,
        credentials,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_base: Optional[str] = None,
    ) -> None:
        self.credentials = credentials
        self.api_base = api_base or config.STRIPE_API_BASE
        self.clients = ClientCache(transport)

    async def _client(self) -> Optional[httpx.AsyncClient]:
        secret_key = await self.credentials.get_credential(self.type)
        if not secret_key:
            log_debug("Stripe", "No secret key configured")
            return None
        return await self.clients.get(
            self.api_base,
            {"Authorization": f"Bearer {secret_key}"},
            secret_key,
        )

    async def reset(self) -> None:
        await self.clients.reset()

    async def close(self) -> None:
        await self.clients.aclose()

    async def _create_session(
        self, form: FormFields
    ) -> Optional[CheckoutSessionResult]:
        client = await self._client()
        if client is None:
            return None

        async def call() -> Dict[str, Any]:
            r = await client.post("/v1/checkout/sessions", data=dict(form))
            r.raise_for_status()
            return r.json()

        session = await safe_call(call, ErrorCode.STRIPE_CHECKOUT)
        if session is None:
            return None
        return to_checkout_result(session.get("id"), session.get("url"),
                                  "Stripe")

    async def create_checkout_session(
        self, event: Event, intent: RegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]:
        if event.unit_price is None:
            return None
        metadata = enforce_metadata_limits(
            build_single_intent_metadata(event, intent),
            METADATA_MAX_VALUE_LENGTH,
            ErrorCode.STRIPE_CHECKOUT,
        )
        if metadata is None:
            return None
        currency = await self.credentials.get_currency()
        form = _session_form(
            _line_item(0, currency, event.name, event.unit_price,
                       intent.quantity),
            metadata, intent.email, base_url,
        )
        return await self._create_session(form)

    async def create_multi_checkout_session(
        self, intent: MultiRegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]:
        metadata = enforce_metadata_limits(
            build_multi_intent_metadata(intent),
            METADATA_MAX_VALUE_LENGTH,
            ErrorCode.STRIPE_CHECKOUT,
        )
        if metadata is None:
            return None
        currency = await self.credentials.get_currency()
        line_items: FormFields = []
        for i, item in enumerate(intent.paid_items):
            line_items.extend(
                _line_item(i, currency, item.name, item.unit_price,
                           item.quantity)
            )
        form = _session_form(line_items, metadata, intent.email, base_url)
        return await self._create_session(form)

    async def retrieve_session(
        self, session_id: str
    ) -> Optional[ValidatedPaymentSession]:
        client = await self._client()
        if client is None:
            return None

        async def call() -> Optional[Dict[str, Any]]:
            r = await client.get(f"/v1/checkout/sessions/{session_id}")
            if r.status_code == 404:
                return None
            r.raise_for_status()
            return r.json()

        session = await safe_call(call, ErrorCode.STRIPE_SESSION)
        if session is None:
            return None

        metadata = session.get("metadata")
        if not has_required_session_metadata(metadata):
            log_debug("Stripe", f"Session {session_id} lacks required metadata")
            return None

        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")
        return ValidatedPaymentSession(
            id=session["id"],
            payment_status=_payment_status(session),
            payment_reference=(
                payment_intent if isinstance(payment_intent, str) else None
            ),
            amount_total=session.get("amount_total"),
            metadata=extract_session_metadata(metadata),
        )

    async def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> WebhookVerifyResult:
        context = context or {}
        secret = await self.credentials.get_webhook_secret(self.type)
        return verify_timestamped_signature(
            payload,
            signature,
            secret,
            tolerance=context.get(
                "tolerance", config.WEBHOOK_TOLERANCE_SECONDS
            ),
            now=context.get("now"),
            error_code=ErrorCode.STRIPE_SIGNATURE,
        )

    async def refund_payment(self, payment_reference: str) -> bool:
        client = await self._client()
        if client is None:
            return False

        async def call() -> bool:
            r = await client.get(f"/v1/payment_intents/{payment_reference}")
            r.raise_for_status()
            amount = r.json().get("amount_received")
            if not amount:
                log_error(ErrorCode.STRIPE_REFUND,
                          detail="missing amount_received")
                return False
            r = await client.post(
                "/v1/refunds",
                data={"payment_intent": payment_reference,
                      "amount": str(amount)},
                headers={"Idempotency-Key": f"refund-{payment_reference}"},
            )
            r.raise_for_status()
            return True

        return bool(await safe_call(call, ErrorCode.STRIPE_REFUND))

    async def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult:
        """
        Register `webhook_url` for completed checkouts using `secret_key`
        (not yet stored) and return the new endpoint's signing secret.
        A previous endpoint is deleted first; a missing one is fine.
        """
        form = {
            "url": webhook_url,
            "enabled_events[]": list(COMPLETED_EVENT_TYPES),
        }

        async with httpx.AsyncClient(
            base_url=self.api_base,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=HTTP_TIMEOUT_SECONDS,
            transport=self.clients.transport,
        ) as client:

            async def call() -> Dict[str, Any]:
                if existing_endpoint_id:
                    r = await client.delete(
                        f"/v1/webhook_endpoints/{existing_endpoint_id}"
                    )
                    if r.status_code != 404:
                        r.raise_for_status()
                r = await client.post("/v1/webhook_endpoints", data=form)
                r.raise_for_status()
                return r.json()

            endpoint = await safe_call(call, ErrorCode.STRIPE_WEBHOOK_SETUP)

        if endpoint is None:
            return WebhookSetupResult(
                False, error="Failed to create Stripe webhook endpoint"
            )
        endpoint_id, secret = endpoint.get("id"), endpoint.get("secret")
        if not endpoint_id or not secret:
            log_error(ErrorCode.STRIPE_WEBHOOK_SETUP,
                      detail="response missing id or secret")
            return WebhookSetupResult(
                False, error="Stripe returned an incomplete webhook endpoint"
            )
        log_debug("Stripe", f"Webhook endpoint {endpoint_id} registered")
        return WebhookSetupResult(True, endpoint_id=endpoint_id, secret=secret)

    def session_id_from_event(self, event: WebhookEvent) -> Optional[str]:
        if event["type"] not in COMPLETED_EVENT_TYPES:
            return None
        obj = event["data"].get("object")
        if not isinstance(obj, dict):
            return None
        session_id = obj.get("id")
        return session_id if isinstance(session_id, str) else None
