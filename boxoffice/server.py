from __future__ import annotations
from typing import Any, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import IntegrityError

from .checkout import BookingResult, CheckoutService, FinalizeResult
from .config import (
    ADMIN_TOKEN, DATABASE_URL, WEBHOOK_TOLERANCE_SECONDS, CredentialStore,
    webhook_notification_url,
)
from .errors import Reason, message_for
from .helpers import ct_equal, is_valid_date
from .infra.sql import GatedAsyncSession, make_async_engine
from .intents import Contact, RegistrationIntent
from .log import log_info
from .model import processed
from .model.capacity import remaining_capacity
from .model.db import Base
from .model.events import EVENT_TYPES, create_event, event_to_dict
from .payments import build_providers

# reason -> HTTP status
STATUS_FOR_REASON = {
    Reason.VALIDATION_ERROR: 400,
    Reason.PAYMENT_NOT_COMPLETED: 400,
    Reason.EVENT_NOT_FOUND: 404,
    Reason.SESSION_NOT_FOUND: 404,
    Reason.CAPACITY_EXCEEDED: 409,
    Reason.EVENT_UNAVAILABLE: 409,
    Reason.POST_PAYMENT_CAPACITY_LOST: 409,
    Reason.PROVIDER_REJECTED: 502,
    Reason.METADATA_OVERFLOW: 400,
    Reason.PROVIDER_UNCONFIGURED: 503,
    Reason.ENCRYPTION_ERROR: 500,
    Reason.DB_ERROR: 500,
}

# finalize outcomes the gateway should retry
RETRYABLE = (
    Reason.SESSION_NOT_FOUND,
    Reason.PROVIDER_UNCONFIGURED,
    Reason.ENCRYPTION_ERROR,
    Reason.DB_ERROR,
)

# settings an admin may change at runtime
SETTING_KEYS = {
    "PAYMENT_PROVIDER", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET",
    "SQUARE_ACCESS_TOKEN", "SQUARE_WEBHOOK_SIGNATURE_KEY",
    "SQUARE_LOCATION_ID", "SQUARE_SANDBOX", "CURRENCY", "PHONE_PREFIX",
}


app = FastAPI(
    title="BoxOffice",
    default_response_class=ORJSONResponse,
)


async def get_db(request: Request) -> GatedAsyncSession:
    async with request.app.state.sessions() as session:
        yield GatedAsyncSession(session=session, gated=request.app.state.gated)


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _db_init():
    engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)
    app.state.engine = engine
    app.state.sessions = SessionAsync
    app.state.gated = gated
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _checkout_start():
    credentials = CredentialStore(app.state.sessions)
    app.state.credentials = credentials
    app.state.providers = build_providers(credentials)
    app.state.checkout = CheckoutService(
        credentials, app.state.providers, http=app.state.http
    )
    log_info("Startup", "BoxOffice is up")


@app.on_event("shutdown")
async def _checkout_stop():
    checkout = getattr(app.state, "checkout", None)
    if checkout is not None:
        await checkout.drain()
    for provider in getattr(app.state, "providers", {}).values():
        await provider.close()


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _db_stop():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def require_admin(request: Request) -> None:
    token = request.headers.get("x-admin-token", "")
    if not ADMIN_TOKEN or not token or not ct_equal(token, ADMIN_TOKEN):
        raise HTTPException(403, detail="admin token required")


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


def _int_field(payload: dict, key: str, default: Optional[int] = None) -> int:
    value = payload.get(key, default)
    if value is None:
        raise HTTPException(400, detail=f"{key} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(400, detail=f"{key} must be an integer")


def _str_field(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _raise_for(reason: Reason, detail: Optional[str] = None) -> None:
    raise HTTPException(
        STATUS_FOR_REASON.get(reason, 500),
        detail={"reason": reason.value,
                "message": detail or message_for(reason)},
    )


def _booking_response(result: BookingResult) -> dict:
    if not result.ok:
        _raise_for(result.reason, result.message)
    if result.checkout_url:
        return {
            "status": "redirect",
            "checkout_url": result.checkout_url,
            "session_id": result.session_id,
        }
    return {"status": "registered", "attendee_ids": result.attendee_ids}


def _finalize_response(result: FinalizeResult) -> dict:
    return {
        "ok": result.ok,
        "already_processed": result.already_processed,
        "attendee_ids": result.attendee_ids,
    }


# ----------------------------
# Public API
# ----------------------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/api/events/{event_id}/availability")
async def get_availability(
    event_id: int,
    date: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    if date is not None and not is_valid_date(date):
        raise HTTPException(400, detail="date must be YYYY-MM-DD")
    try:
        remaining = await remaining_capacity(db, event_id, date)
    except LookupError:
        raise HTTPException(404, detail="event not found")
    except ValueError:
        raise HTTPException(400, detail="date is required for this event")
    return {
        "event_id": event_id,
        "date": date,
        "remaining": remaining,
        "unlimited": remaining is None,
    }


@app.post("/api/book")
async def book(
    payload: dict,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout),
):
    intent = RegistrationIntent(
        event_id=_int_field(payload, "event_id"),
        name=_str_field(payload, "name") or "",
        email=_str_field(payload, "email") or "",
        quantity=_int_field(payload, "quantity", 1),
        phone=_str_field(payload, "phone"),
        date=_str_field(payload, "date"),
    )
    result = await checkout.book(db, intent, _base_url(request))
    return _booking_response(result)


@app.post("/api/book/multi")
async def book_multi(
    payload: dict,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout),
):
    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise HTTPException(400, detail="items must be a list")
    items = []
    for entry in raw_items:
        if not isinstance(entry, dict):
            raise HTTPException(400, detail="invalid item")
        items.append((
            _int_field(entry, "event_id"), _int_field(entry, "quantity", 1)
        ))
    contact = Contact(
        name=_str_field(payload, "name") or "",
        email=_str_field(payload, "email") or "",
        phone=_str_field(payload, "phone"),
    )
    result = await checkout.book_multi(
        db, contact, items, _base_url(request),
        date=_str_field(payload, "date"),
    )
    return _booking_response(result)


# ----------------------------
# Payment return pages and webhook
# ----------------------------
@app.get("/payment/success")
async def payment_success(
    session_id: Optional[str] = None,
    orderId: Optional[str] = None,
    db: GatedAsyncSession = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout),
):
    # the alternate gateway appends orderId to the redirect
    sid = session_id or orderId
    if not sid:
        raise HTTPException(400, detail="session_id is required")
    result = await checkout.finalize(db, sid)
    if not result.ok:
        _raise_for(result.reason)
    return _finalize_response(result)


@app.get("/payment/cancel")
async def payment_cancel():
    return {"ok": True, "status": "cancelled"}


@app.post("/payment/webhook")
async def payment_webhook(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout),
):
    provider = await checkout.provider()
    if provider is None:
        _raise_for(Reason.PROVIDER_UNCONFIGURED)

    payload = await request.body()
    signature = request.headers.get(provider.signature_header, "")
    result = await checkout.handle_webhook(
        db, provider, payload, signature,
        {
            "notification_url": webhook_notification_url(),
            "tolerance": WEBHOOK_TOLERANCE_SECONDS,
        },
    )
    if not result.verify.valid:
        raise HTTPException(
            400,
            detail={"reason": result.verify.reason.value,
                    "message": result.verify.error},
        )
    if result.ignored:
        return {"ok": True, "ignored": True}

    finalized = result.finalize
    if finalized.ok:
        return _finalize_response(finalized)
    if finalized.reason in RETRYABLE:
        _raise_for(finalized.reason)
    # recorded for an operator, or not paid yet: acknowledge
    return {"ok": False, "reason": finalized.reason.value}


# ----------------------------
# Admin
# ----------------------------
@app.post("/api/admin/events", dependencies=[Depends(require_admin)])
async def admin_create_event(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
):
    slug = _str_field(payload, "slug")
    name = _str_field(payload, "name")
    if not slug or not name:
        raise HTTPException(400, detail="slug and name are required")
    event_type = _str_field(payload, "event_type") or EVENT_TYPES[0]
    if event_type not in EVENT_TYPES:
        raise HTTPException(400, detail="invalid event_type")

    def optional_int(key: str) -> Optional[int]:
        return None if payload.get(key) is None else _int_field(payload, key)

    closes_at = payload.get("closes_at")
    try:
        closes_at = None if closes_at is None else float(closes_at)
    except (TypeError, ValueError):
        raise HTTPException(400, detail="closes_at must be a unix timestamp")

    try:
        event = await create_event(
            db,
            slug=slug,
            name=name,
            max_attendees=optional_int("max_attendees"),
            unit_price=optional_int("unit_price"),
            max_quantity=_int_field(payload, "max_quantity", 1),
            event_type=event_type,
            closes_at=closes_at,
            webhook_url=_str_field(payload, "webhook_url"),
        )
    except IntegrityError:
        raise HTTPException(409, detail="slug already exists")
    return event_to_dict(event)


async def _register_stripe_webhook(state, secret_key: str) -> None:
    """
    Register our webhook URL with Stripe under the new key and store the
    key together with the endpoint's signing secret. Nothing is stored
    when registration fails.
    """
    credentials = state.credentials
    result = await state.providers["stripe"].setup_webhook_endpoint(
        secret_key,
        webhook_notification_url(),
        await credentials.get_stripe_webhook_endpoint_id(),
    )
    if not result.success:
        raise HTTPException(400, detail=result.error)
    await credentials.set("STRIPE_SECRET_KEY", secret_key)
    await credentials.set("STRIPE_WEBHOOK_SECRET", result.secret)
    await credentials.set("STRIPE_WEBHOOK_ENDPOINT_ID", result.endpoint_id)
    log_info("Settings", f"Stripe webhook endpoint {result.endpoint_id}")


@app.put("/api/admin/settings/{key}", dependencies=[Depends(require_admin)])
async def admin_put_setting(key: str, payload: dict, request: Request):
    if key not in SETTING_KEYS:
        raise HTTPException(400, detail="unknown setting")
    value: Any = payload.get("value")
    if key == "STRIPE_SECRET_KEY" and value:
        await _register_stripe_webhook(request.app.state, str(value))
    else:
        await request.app.state.credentials.set(
            key, None if value is None else str(value)
        )
    # credentials may have changed; clients are rebuilt on next use
    for provider in request.app.state.providers.values():
        await provider.reset()
    return {"ok": True, "key": key}


@app.post(
    "/api/admin/attendees/{attendee_id}/refund",
    dependencies=[Depends(require_admin)],
)
async def admin_refund_attendee(
    attendee_id: int,
    db: GatedAsyncSession = Depends(get_db),
    checkout: CheckoutService = Depends(get_checkout),
):
    try:
        reason = await checkout.refund_attendee(db, attendee_id)
    except LookupError:
        raise HTTPException(404, detail="attendee not found")
    if reason == Reason.VALIDATION_ERROR:
        raise HTTPException(400, detail="attendee has no payment to refund")
    if reason is not None:
        _raise_for(reason)
    return {"ok": True, "attendee_id": attendee_id}


@app.get(
    "/api/admin/fulfillment-failures", dependencies=[Depends(require_admin)]
)
async def admin_fulfillment_failures(
    limit: int = 200,
    db: GatedAsyncSession = Depends(get_db),
):
    items = await processed.list_failures(db, limit)
    return {"items": items, "limit": limit}
