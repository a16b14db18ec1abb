# payments/square.py
"""
Square adapter (alternate gateway).

Square has no checkout "session": a payment link creates an Order, and the
order id plays the session id role. Metadata lives on the order. The
webhook of interest is `payment.updated` with status COMPLETED, and the
signature covers notification_url + raw body.
"""
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .. import config
from ..helpers import normalize_phone
from ..intents import MultiRegistrationIntent, RegistrationIntent
from ..log import ErrorCode, log_debug, log_error
from ..model.db import Event
from . import (
    CheckoutSessionResult, PaymentProvider, ValidatedPaymentSession,
    WebhookSetupResult,
)
from .helpers import (
    ClientCache, build_multi_intent_metadata, build_single_intent_metadata,
    enforce_metadata_limits, extract_session_metadata,
    has_required_session_metadata, safe_call, to_checkout_result,
)
from .signatures import WebhookEvent, WebhookVerifyResult, verify_url_signature

# Square order metadata values: max 255 characters
METADATA_MAX_VALUE_LENGTH = 255

SQUARE_VERSION = "2024-10-17"
PRODUCTION_BASE = "https://connect.squareup.com"
SANDBOX_BASE = "https://connect.squareupsandbox.com"

ORDER_STATES = {
    "COMPLETED": "paid",
    "CANCELED": "failed",
}


def _line_item(
    name: str, quantity: int, unit_price: int, currency: str
) -> Dict[str, Any]:
    return {
        "name": f"Ticket: {name}",
        "quantity": str(quantity),
        "note": f"{quantity} Tickets" if quantity > 1 else "Ticket",
        "base_price_money": {"amount": unit_price, "currency": currency},
    }


class SquareProvider(PaymentProvider):
    type = "square"
    metadata_limit = METADATA_MAX_VALUE_LENGTH
    checkout_completed_event_type = "payment.updated"
    signature_header = "x-square-hmacsha256-signature"

    def __init__(
        self,
        credentials,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_base: Optional[str] = None,
    ) -> None:
        self.credentials = credentials
        self.api_base = api_base or config.SQUARE_API_BASE
        self.clients = ClientCache(transport)

    async def _client(self) -> Optional[httpx.AsyncClient]:
        token = await self.credentials.get_credential(self.type)
        if not token:
            log_debug("Square", "No access token configured")
            return None
        sandbox = await self.credentials.get_square_sandbox()
        base = self.api_base or (SANDBOX_BASE if sandbox else PRODUCTION_BASE)
        return await self.clients.get(
            base,
            {
                "Authorization": f"Bearer {token}",
                "Square-Version": SQUARE_VERSION,
            },
            token,
            "sandbox" if sandbox else "production",
        )

    async def reset(self) -> None:
        await self.clients.reset()

    async def close(self) -> None:
        await self.clients.aclose()

    async def _create_payment_link(
        self,
        line_items: List[Dict[str, Any]],
        metadata: Dict[str, str],
        email: str,
        phone: Optional[str],
        base_url: str,
    ) -> Optional[CheckoutSessionResult]:
        location_id = await self.credentials.get_location_id()
        if not location_id:
            log_debug("Square", "No location ID configured")
            return None
        client = await self._client()
        if client is None:
            return None

        prepopulated: Dict[str, str] = {"buyer_email": email}
        if phone:
            prefix = await self.credentials.get_phone_prefix()
            prepopulated["buyer_phone_number"] = normalize_phone(phone, prefix)

        body = {
            "idempotency_key": str(uuid.uuid4()),
            "order": {
                "location_id": location_id,
                "line_items": line_items,
                "metadata": metadata,
            },
            "checkout_options": {
                "redirect_url": f"{base_url}/payment/success",
            },
            "pre_populated_data": prepopulated,
        }

        async def call() -> Dict[str, Any]:
            r = await client.post("/v2/online-checkout/payment-links",
                                  json=body)
            r.raise_for_status()
            return r.json().get("payment_link") or {}

        link = await safe_call(call, ErrorCode.SQUARE_CHECKOUT)
        if link is None:
            return None
        return to_checkout_result(link.get("order_id"), link.get("url"),
                                  "Square")

    async def create_checkout_session(
        self, event: Event, intent: RegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]:
        if event.unit_price is None:
            log_debug("Square", f"No unit_price for event={event.id}")
            return None
        metadata = enforce_metadata_limits(
            build_single_intent_metadata(event, intent),
            METADATA_MAX_VALUE_LENGTH,
            ErrorCode.SQUARE_CHECKOUT,
        )
        if metadata is None:
            return None
        currency = (await self.credentials.get_currency()).upper()
        log_debug("Square", f"Creating payment link for event={event.id} "
                            f"qty={intent.quantity}")
        return await self._create_payment_link(
            [_line_item(event.name, intent.quantity, event.unit_price,
                        currency)],
            metadata, intent.email, intent.phone, base_url,
        )

    async def create_multi_checkout_session(
        self, intent: MultiRegistrationIntent, base_url: str
    ) -> Optional[CheckoutSessionResult]:
        metadata = enforce_metadata_limits(
            build_multi_intent_metadata(intent),
            METADATA_MAX_VALUE_LENGTH,
            ErrorCode.SQUARE_CHECKOUT,
        )
        if metadata is None:
            return None
        currency = (await self.credentials.get_currency()).upper()
        log_debug("Square",
                  f"Creating multi payment link for {len(intent.items)} events")
        return await self._create_payment_link(
            [_line_item(i.name, i.quantity, i.unit_price, currency)
             for i in intent.paid_items],
            metadata, intent.email, intent.phone, base_url,
        )

    async def retrieve_session(
        self, session_id: str
    ) -> Optional[ValidatedPaymentSession]:
        client = await self._client()
        if client is None:
            return None

        async def call() -> Optional[Dict[str, Any]]:
            r = await client.get(f"/v2/orders/{session_id}")
            if r.status_code == 404:
                return None
            r.raise_for_status()
            return r.json().get("order")

        order = await safe_call(call, ErrorCode.SQUARE_ORDER)
        if order is None:
            return None

        metadata = {
            k: v for k, v in (order.get("metadata") or {}).items()
            if isinstance(v, str)
        }
        if not has_required_session_metadata(metadata):
            log_debug("Square", f"Order {session_id} lacks required metadata")
            return None

        tenders = order.get("tenders") or []
        payment_id = tenders[0].get("payment_id") if tenders else None
        total = (order.get("total_money") or {}).get("amount")
        return ValidatedPaymentSession(
            id=order["id"],
            payment_status=ORDER_STATES.get(order.get("state"), "unpaid"),
            payment_reference=payment_id,
            amount_total=int(total) if total is not None else None,
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
        return verify_url_signature(
            payload,
            signature,
            secret,
            context.get("notification_url"),
            error_code=ErrorCode.SQUARE_SIGNATURE,
        )

    async def refund_payment(self, payment_reference: str) -> bool:
        client = await self._client()
        if client is None:
            return False

        async def call() -> bool:
            r = await client.get(f"/v2/payments/{payment_reference}")
            r.raise_for_status()
            money = (r.json().get("payment") or {}).get("amount_money") or {}
            if not money.get("amount") or not money.get("currency"):
                log_error(ErrorCode.SQUARE_REFUND,
                          detail="missing amount info")
                return False
            r = await client.post("/v2/refunds", json={
                "idempotency_key": str(uuid.uuid4()),
                "payment_id": payment_reference,
                "amount_money": {
                    "amount": money["amount"],
                    "currency": money["currency"],
                },
            })
            r.raise_for_status()
            return True

        return bool(await safe_call(call, ErrorCode.SQUARE_REFUND))

    async def setup_webhook_endpoint(
        self,
        secret_key: str,
        webhook_url: str,
        existing_endpoint_id: Optional[str] = None,
    ) -> WebhookSetupResult:
        # no subscription API in use; the signature key is entered by hand
        return WebhookSetupResult(
            False,
            error="Square webhooks must be configured manually in the "
                  "Square Developer Dashboard",
        )

    def session_id_from_event(self, event: WebhookEvent) -> Optional[str]:
        if event["type"] != self.checkout_completed_event_type:
            return None
        obj = event["data"].get("object")
        payment = obj.get("payment") if isinstance(obj, dict) else None
        if not isinstance(payment, dict):
            return None
        if payment.get("status") != "COMPLETED":
            log_debug("Square", f"Ignoring payment status "
                                f"{payment.get('status')}")
            return None
        order_id = payment.get("order_id")
        return order_id if isinstance(order_id, str) else None
