"""
Outbound registration notifications.

Events may carry a `webhook_url`; after a successful booking we POST a small
JSON document to it. Names and emails are never sent, receivers that need
them must query with authentication. Delivery failures are logged and do
not affect the booking.
"""
from typing import Any, Dict, Optional

import httpx

from .helpers import now_ts, to_iso
from .log import ErrorCode, log_debug, log_error
from .model.db import Event


def build_registration_payload(
    event: Event, attendee_id: int, quantity: int, date: Optional[str] = None
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event_type": "attendee.registered",
        "event_id": event.id,
        "event_name": event.name,
        "attendee": {"id": attendee_id, "quantity": quantity},
        "timestamp": to_iso(now_ts()),
    }
    if date:
        payload["date"] = date
    return payload


async def notify_registration(
    http: httpx.AsyncClient,
    event: Event,
    attendee_id: int,
    quantity: int,
    date: Optional[str] = None,
) -> bool:
    if not event.webhook_url:
        return False
    try:
        r = await http.post(
            event.webhook_url,
            json=build_registration_payload(event, attendee_id, quantity, date),
        )
        r.raise_for_status()
    except httpx.HTTPError as e:
        log_error(ErrorCode.WEBHOOK_SEND, event_id=event.id,
                  attendee_id=attendee_id, detail=type(e).__name__)
        return False
    log_debug("Webhook", f"Registration notified event={event.id} "
                         f"attendee={attendee_id}")
    return True
