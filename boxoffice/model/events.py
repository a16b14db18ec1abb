from typing import Any, Dict, Optional

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from .db import EVENT_TYPE_DAILY, EVENT_TYPE_STANDARD, Event

EVENT_TYPES = (EVENT_TYPE_STANDARD, EVENT_TYPE_DAILY)


async def create_event(
    db: GatedAsyncSession,
    slug: str,
    name: str,
    max_attendees: Optional[int] = None,
    unit_price: Optional[int] = None,
    max_quantity: int = 1,
    event_type: str = EVENT_TYPE_STANDARD,
    closes_at: Optional[float] = None,
    active: bool = True,
    webhook_url: Optional[str] = None,
) -> Event:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type: {event_type}")
    event = Event(
        slug=slug,
        name=name,
        max_attendees=max_attendees,
        unit_price=unit_price,
        max_quantity=max_quantity,
        event_type=event_type,
        closes_at=closes_at,
        active=active,
        webhook_url=webhook_url,
        created_at=now_ts(),
    )
    async with db.gated():
        async with db.session.begin():
            db.session.add(event)
    return event


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "id": event.id,
        "slug": event.slug,
        "name": event.name,
        "max_attendees": event.max_attendees,
        "unit_price": event.unit_price,
        "max_quantity": event.max_quantity,
        "event_type": event.event_type,
        "closes_at": event.closes_at,
        "active": event.active,
    }
