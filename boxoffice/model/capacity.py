# model/capacity.py
"""
Capacity ledger.

Attendee rows *are* the capacity consumption:

    remaining = max_attendees - SUM(quantity) over the event's attendees

(filtered by booking date for daily events; NULL max_attendees means
unlimited).

Reservations are a single conditional INSERT ... SELECT ... WHERE, so the
capacity check and the insert happen in one statement. On PostgreSQL the
event row is additionally locked FOR UPDATE inside the transaction, so two
concurrent requests for the last seat serialize on the event and exactly one
of them succeeds. On SQLite the INSERT takes the database write lock before
it evaluates the subquery, which gives the same guarantee.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..crypto import FieldCipher
from ..errors import EncryptionError, Reason
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession, is_postgres
from ..intents import Contact, ReservationItem
from ..log import ErrorCode, log_error
from .db import Event


@dataclass
class ReserveResult:
    success: bool
    attendee_ids: List[int] = field(default_factory=list)
    reason: Optional[Reason] = None

    @property
    def attendee_id(self) -> Optional[int]:
        return self.attendee_ids[0] if self.attendee_ids else None


@dataclass(frozen=True)
class EncryptedContact:
    name: str
    email: str
    phone: Optional[str]
    payment_reference: Optional[str]


class CapacityExceeded(Exception):
    """Internal: aborts a multi-item reservation transaction."""

    def __init__(self, event_id: int) -> None:
        super().__init__(event_id)
        self.event_id = event_id


def encrypt_contact(
    cipher: FieldCipher, contact: Contact, payment_reference: Optional[str]
) -> EncryptedContact:
    return EncryptedContact(
        name=cipher.encrypt(contact.name),
        email=cipher.encrypt(contact.email),
        phone=cipher.encrypt_optional(contact.phone),
        payment_reference=cipher.encrypt_optional(payment_reference),
    )


def _scope_date(event: Event, date: Optional[str]) -> Optional[str]:
    return date if event.is_daily else None


# ------------------------------------------------------------------------------
# UN-GATED internals (caller owns the transaction)
# ------------------------------------------------------------------------------

async def load_event(
    db: AsyncSession, event_id: int, for_update: bool = False
) -> Optional[Event]:
    # refresh identity-map copies: `active` may have changed since
    stmt = (
        select(Event)
        .where(Event.id == event_id)
        .execution_options(populate_existing=True)
    )
    if for_update and is_postgres(db):
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def consumed_quantity(
    db: AsyncSession, event_id: int, date: Optional[str] = None
) -> int:
    if date is None:
        sql = """
            SELECT COALESCE(SUM(quantity), 0) FROM attendees
            WHERE event_id = :e
        """
        params = {"e": event_id}
    else:
        sql = """
            SELECT COALESCE(SUM(quantity), 0) FROM attendees
            WHERE event_id = :e AND date = :d
        """
        params = {"e": event_id, "d": date}
    return int((await db.execute(text(sql), params)).scalar_one())


async def insert_attendee_if_capacity(
    db: AsyncSession,
    event: Event,
    quantity: int,
    enc: EncryptedContact,
    date: Optional[str] = None,
) -> Optional[int]:
    """
    Insert one attendee row if `consumed + quantity <= max_attendees`.
    Returns the new attendee id, or None when capacity is exceeded.
    """
    scope_date = _scope_date(event, date)
    date_clause = "AND a.date = :date" if scope_date is not None else ""
    row = (await db.execute(text(f"""
        INSERT INTO attendees(
            event_id, name, email, phone, payment_reference,
            quantity, date, created_at
        )
        SELECT
            CAST(:event_id AS INTEGER), CAST(:name AS TEXT),
            CAST(:email AS TEXT), CAST(:phone AS TEXT),
            CAST(:payment_reference AS TEXT), CAST(:quantity AS INTEGER),
            CAST(:date AS TEXT), CAST(:created_at AS DOUBLE PRECISION)
        WHERE EXISTS (
            SELECT 1 FROM events e
            WHERE e.id = :event_id
              AND (
                e.max_attendees IS NULL
                OR (
                    SELECT COALESCE(SUM(a.quantity), 0) FROM attendees a
                    WHERE a.event_id = e.id {date_clause}
                ) + CAST(:quantity AS INTEGER) <= e.max_attendees
              )
        )
        RETURNING id
    """), {
        "event_id": event.id,
        "name": enc.name,
        "email": enc.email,
        "phone": enc.phone,
        "payment_reference": enc.payment_reference,
        "quantity": quantity,
        "date": scope_date,
        "created_at": now_ts(),
    })).first()
    return int(row[0]) if row else None


async def reserve_items_in_transaction(
    db: AsyncSession,
    items: Iterable[ReservationItem],
    enc: EncryptedContact,
) -> List[int]:
    """
    Reserve every item or raise CapacityExceeded. The caller's transaction
    must be rolled back on CapacityExceeded so earlier inserts disappear.
    """
    attendee_ids: List[int] = []
    # lock events in id order so concurrent baskets cannot deadlock
    for item in sorted(items, key=lambda i: i.event_id):
        event = await load_event(db, item.event_id, for_update=True)
        if event is None:
            raise CapacityExceeded(item.event_id)
        attendee_id = await insert_attendee_if_capacity(
            db, event, item.quantity, enc, item.date
        )
        if attendee_id is None:
            raise CapacityExceeded(item.event_id)
        attendee_ids.append(attendee_id)
    return attendee_ids


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def reserve_atomic(
    db: GatedAsyncSession,
    event_id: int,
    quantity: int,
    contact: Contact,
    cipher: FieldCipher,
    date: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> ReserveResult:
    """
    Check capacity and insert the attendee in one transaction.
    Never raises; failures come back as a typed reason.
    """
    return await reserve_many_atomic(
        db, [ReservationItem(event_id, quantity, date)], contact, cipher,
        payment_reference,
    )


async def reserve_many_atomic(
    db: GatedAsyncSession,
    items: List[ReservationItem],
    contact: Contact,
    cipher: FieldCipher,
    payment_reference: Optional[str] = None,
) -> ReserveResult:
    """All-or-nothing reservation of several (event, quantity, date) items."""
    try:
        enc = encrypt_contact(cipher, contact, payment_reference)
    except EncryptionError as e:
        log_error(ErrorCode.ENCRYPT_FAILED, detail=str(e))
        return ReserveResult(False, reason=Reason.ENCRYPTION_ERROR)

    try:
        async with db.gated():
            async with db.session.begin():
                ids = await reserve_items_in_transaction(
                    db.session, items, enc
                )
    except CapacityExceeded as e:
        log_error(ErrorCode.CAPACITY_EXCEEDED, event_id=e.event_id)
        return ReserveResult(False, reason=Reason.CAPACITY_EXCEEDED)
    except SQLAlchemyError as e:
        log_error(ErrorCode.DB_QUERY, detail=type(e).__name__)
        return ReserveResult(False, reason=Reason.DB_ERROR)
    return ReserveResult(True, attendee_ids=ids)


def _sum_by_scope(
    events: Dict[int, Event], items: Iterable[ReservationItem]
) -> Dict[Tuple[int, Optional[str]], int]:
    wanted: Dict[Tuple[int, Optional[str]], int] = {}
    for item in items:
        key = (item.event_id, _scope_date(events[item.event_id], item.date))
        wanted[key] = wanted.get(key, 0) + item.quantity
    return wanted


async def check_batch_availability(
    db: GatedAsyncSession, items: List[ReservationItem]
) -> bool:
    """
    Advisory capacity check across several events. Reserves nothing and
    takes no locks; reserve_atomic stays the authoritative check.
    """
    async with db.gated():
        async with db.session.begin():
            events: Dict[int, Event] = {}
            for item in items:
                event = await load_event(db.session, item.event_id)
                if event is None:
                    return False
                events[event.id] = event

            for (event_id, date), qty in _sum_by_scope(events, items).items():
                limit = events[event_id].max_attendees
                if limit is None:
                    continue
                used = await consumed_quantity(db.session, event_id, date)
                if used + qty > limit:
                    return False
    return True


async def remaining_capacity(
    db: GatedAsyncSession, event_id: int, date: Optional[str] = None
) -> Optional[int]:
    """
    Remaining spots for the event (or the event on `date` for daily
    events). None means unlimited. Raises LookupError for unknown events
    and ValueError for a daily event queried without a date.
    """
    async with db.gated():
        async with db.session.begin():
            event = await load_event(db.session, event_id)
            if event is None:
                raise LookupError(event_id)
            if event.is_daily and date is None:
                raise ValueError("daily events need a date")
            if event.max_attendees is None:
                return None
            used = await consumed_quantity(
                db.session, event_id, _scope_date(event, date)
            )
    return max(0, event.max_attendees - used)
