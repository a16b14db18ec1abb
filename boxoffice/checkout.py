# checkout.py
"""
Checkout orchestration.

    intent -> validated -> free:  reserve now
                        -> paid:  advisory capacity check, gateway session,
                                  redirect; nothing reserved yet
    finalize(session_id)        : gateway says paid -> in ONE transaction
                                  claim the session id, reserve every item

The claim row (processed_payments) and the attendee rows commit or roll back
together, so a session is fulfilled exactly once no matter how many webhook
deliveries or success-page polls race for it. If capacity is gone by the
time the money arrived, nothing is inserted and the session is recorded as a
fulfillment failure for an operator (optionally refunded automatically).
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .crypto import FieldCipher
from .errors import EncryptionError, Reason, message_for
from .helpers import is_valid_date, is_valid_email, now_ts
from .intents import (
    Contact, MultiRegistrationIntent, MultiRegistrationItem,
    RegistrationIntent, ReservationItem,
)
from .infra.sql import GatedAsyncSession
from .log import ErrorCode, log_debug, log_error, log_info
from .model import processed
from .model.capacity import (
    CapacityExceeded, check_batch_availability, encrypt_contact, load_event,
    reserve_atomic, reserve_items_in_transaction, reserve_many_atomic,
)
from .model.db import Attendee, Event
from .notify import notify_registration
from .payments import (
    PaymentProvider, ValidatedPaymentSession, get_active_provider,
)
from .payments.helpers import (
    build_multi_intent_metadata, build_single_intent_metadata,
    enforce_metadata_limits, parse_multi_items,
)
from .payments.signatures import WebhookVerifyResult

MAX_NAME_LENGTH = 200


@dataclass
class BookingResult:
    ok: bool
    reason: Optional[Reason] = None
    attendee_ids: List[int] = field(default_factory=list)
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        if self.detail:
            return self.detail
        return message_for(self.reason) if self.reason else None


@dataclass
class FinalizeResult:
    ok: bool
    reason: Optional[Reason] = None
    attendee_ids: List[int] = field(default_factory=list)
    refunded: Optional[bool] = None

    @property
    def already_processed(self) -> bool:
        return self.reason == Reason.ALREADY_PROCESSED


@dataclass
class WebhookResult:
    verify: WebhookVerifyResult
    session_id: Optional[str] = None
    finalize: Optional[FinalizeResult] = None

    @property
    def ignored(self) -> bool:
        return self.verify.valid and self.session_id is None


def _invalid(detail: str) -> BookingResult:
    return BookingResult(False, Reason.VALIDATION_ERROR, detail=detail)


# ----------------------------
# Validation
# ----------------------------
def validate_contact(contact: Contact) -> Optional[BookingResult]:
    name = (contact.name or "").strip()
    if not name:
        return _invalid("Name is required")
    if len(name) > MAX_NAME_LENGTH:
        return _invalid("Name is too long")
    if not contact.email:
        return _invalid("Email is required")
    if not is_valid_email(contact.email):
        return _invalid("Please enter a valid email address")
    return None


def validate_event_booking(
    event: Optional[Event],
    quantity: int,
    date: Optional[str],
    now: Optional[float] = None,
) -> Optional[BookingResult]:
    if event is None:
        return BookingResult(False, Reason.EVENT_NOT_FOUND)
    current = now_ts() if now is None else now
    if not event.active or (
        event.closes_at is not None and current >= event.closes_at
    ):
        return BookingResult(False, Reason.EVENT_UNAVAILABLE)
    max_quantity = event.max_quantity or 1
    if quantity < 1 or quantity > max_quantity:
        return _invalid(f"Quantity must be between 1 and {max_quantity}")
    if event.is_daily and not is_valid_date(date):
        return _invalid("Please select a valid date")
    return None


def _booking_date(event: Event, date: Optional[str]) -> Optional[str]:
    # standard events ignore any date sent along
    return date if event.is_daily else None


def _items_from_metadata(
    metadata: Mapping[str, str],
) -> Optional[List[ReservationItem]]:
    date = metadata.get("date")
    if metadata.get("multi") == "1":
        parsed = parse_multi_items(metadata.get("items"))
        if parsed is None:
            return None
        return [
            ReservationItem(p["event_id"], p["quantity"], date) for p in parsed
        ]
    try:
        event_id = int(metadata["event_id"])
        quantity = int(metadata.get("quantity") or "1")
    except (KeyError, ValueError):
        return None
    if quantity < 1:
        return None
    return [ReservationItem(event_id, quantity, date)]


def _metadata_fits(
    provider: PaymentProvider, metadata: Dict[str, str]
) -> bool:
    # name gets truncated; anything else too long cannot round-trip
    return enforce_metadata_limits(
        metadata, provider.metadata_limit, ErrorCode.PAYMENT_CHECKOUT
    ) is not None


def _merge_items(items: Iterable[Tuple[int, int]]) -> Dict[int, int]:
    merged: Dict[int, int] = {}
    for event_id, quantity in items:
        merged[event_id] = merged.get(event_id, 0) + quantity
    return merged


async def _load_events(
    db: GatedAsyncSession, event_ids: Iterable[int]
) -> Dict[int, Event]:
    ids = sorted(set(event_ids))
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Event).where(Event.id.in_(ids))
            )).scalars().all()
    return {e.id: e for e in rows}


# ----------------------------
# Orchestrator
# ----------------------------
class CheckoutService:
    """
    Ties the capacity ledger, the idempotency tracker and the active payment
    provider together. One instance per application.
    """

    def __init__(
        self,
        credentials,
        providers: Mapping[str, PaymentProvider],
        http: Optional[httpx.AsyncClient] = None,
        auto_refund: Optional[bool] = None,
    ) -> None:
        self.credentials = credentials
        self.providers = providers
        self.http = http
        self.auto_refund = (
            config.AUTO_REFUND_ON_CAPACITY_LOSS
            if auto_refund is None else auto_refund
        )
        self._background: Set[asyncio.Task] = set()

    async def cipher(self) -> FieldCipher:
        return FieldCipher(await self.credentials.get_encryption_key())

    async def provider(self) -> Optional[PaymentProvider]:
        return await get_active_provider(self.credentials, self.providers)

    # ---
    # notifications
    # ---
    def _notify(
        self, event: Event, attendee_id: int, quantity: int,
        date: Optional[str],
    ) -> None:
        if self.http is None or not event.webhook_url:
            return
        task = asyncio.create_task(
            notify_registration(self.http, event, attendee_id, quantity, date)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending outbound notifications."""
        if self._background:
            await asyncio.gather(*self._background)

    # ---
    # single event
    # ---
    async def book(
        self,
        db: GatedAsyncSession,
        intent: RegistrationIntent,
        base_url: str,
    ) -> BookingResult:
        failed = validate_contact(intent.contact)
        if failed:
            return failed
        events = await _load_events(db, [intent.event_id])
        event = events.get(intent.event_id)
        failed = validate_event_booking(event, intent.quantity, intent.date)
        if failed:
            return failed
        date = _booking_date(event, intent.date)

        if not event.is_paid:
            result = await reserve_atomic(
                db, event.id, intent.quantity, intent.contact,
                await self.cipher(), date=date,
            )
            if not result.success:
                return BookingResult(False, result.reason)
            log_info("Checkout", f"Registered attendee={result.attendee_id} "
                                 f"event={event.id}")
            self._notify(event, result.attendee_id, intent.quantity, date)
            return BookingResult(True, attendee_ids=result.attendee_ids)

        available = await check_batch_availability(
            db, [ReservationItem(event.id, intent.quantity, date)]
        )
        if not available:
            log_error(ErrorCode.CAPACITY_EXCEEDED, event_id=event.id)
            return BookingResult(False, Reason.CAPACITY_EXCEEDED)

        provider = await self.provider()
        if provider is None:
            return BookingResult(False, Reason.PROVIDER_UNCONFIGURED)

        clean = RegistrationIntent(
            event_id=event.id,
            name=intent.name.strip(),
            email=intent.email.strip(),
            quantity=intent.quantity,
            phone=intent.phone,
            date=date,
        )
        if not _metadata_fits(
            provider, build_single_intent_metadata(event, clean)
        ):
            return BookingResult(False, Reason.METADATA_OVERFLOW)

        session = await provider.create_checkout_session(
            event, clean, base_url
        )
        if session is None:
            log_error(ErrorCode.PAYMENT_CHECKOUT, event_id=event.id)
            return BookingResult(False, Reason.PROVIDER_REJECTED)
        return BookingResult(
            True,
            checkout_url=session["checkout_url"],
            session_id=session["session_id"],
        )

    # ---
    # basket across several events
    # ---
    async def book_multi(
        self,
        db: GatedAsyncSession,
        contact: Contact,
        items: List[Tuple[int, int]],
        base_url: str,
        date: Optional[str] = None,
    ) -> BookingResult:
        failed = validate_contact(contact)
        if failed:
            return failed
        wanted = _merge_items(items)
        if not wanted:
            return _invalid("Please select at least one event")

        events = await _load_events(db, wanted)
        for event_id, quantity in wanted.items():
            failed = validate_event_booking(
                events.get(event_id), quantity, date
            )
            if failed:
                return failed

        reservation = [
            ReservationItem(e, q, _booking_date(events[e], date))
            for e, q in wanted.items()
        ]

        if not any(events[e].is_paid for e in wanted):
            result = await reserve_many_atomic(
                db, reservation, contact, await self.cipher()
            )
            if not result.success:
                return BookingResult(False, result.reason)
            for item, attendee_id in zip(
                sorted(reservation, key=lambda i: i.event_id),
                result.attendee_ids,
            ):
                self._notify(events[item.event_id], attendee_id,
                             item.quantity, item.date)
            return BookingResult(True, attendee_ids=result.attendee_ids)

        if not await check_batch_availability(db, reservation):
            return BookingResult(False, Reason.CAPACITY_EXCEEDED)

        provider = await self.provider()
        if provider is None:
            return BookingResult(False, Reason.PROVIDER_UNCONFIGURED)

        intent = MultiRegistrationIntent(
            name=contact.name.strip(),
            email=contact.email.strip(),
            phone=contact.phone,
            date=date if any(events[e].is_daily for e in wanted) else None,
            items=[
                MultiRegistrationItem(
                    event_id=e,
                    quantity=q,
                    unit_price=events[e].unit_price or 0,
                    name=events[e].name,
                    slug=events[e].slug,
                )
                for e, q in wanted.items()
            ],
        )
        if not _metadata_fits(provider, build_multi_intent_metadata(intent)):
            return BookingResult(False, Reason.METADATA_OVERFLOW)

        session = await provider.create_multi_checkout_session(
            intent, base_url
        )
        if session is None:
            log_error(ErrorCode.PAYMENT_CHECKOUT,
                      detail=f"multi checkout for {len(wanted)} events")
            return BookingResult(False, Reason.PROVIDER_REJECTED)
        return BookingResult(
            True,
            checkout_url=session["checkout_url"],
            session_id=session["session_id"],
        )

    # ---
    # finalize
    # ---
    async def finalize(
        self,
        db: GatedAsyncSession,
        session_id: str,
        provider: Optional[PaymentProvider] = None,
    ) -> FinalizeResult:
        provider = provider or await self.provider()
        if provider is None:
            return FinalizeResult(False, Reason.PROVIDER_UNCONFIGURED)

        session = await provider.retrieve_session(session_id)
        if session is None:
            return FinalizeResult(False, Reason.SESSION_NOT_FOUND)
        if not session.is_paid:
            log_debug("Checkout", f"Session {session_id} not paid "
                                  f"({session.payment_status})")
            return FinalizeResult(False, Reason.PAYMENT_NOT_COMPLETED)

        # cheap replay path; the claim below is the authoritative check
        async with db.gated():
            async with db.session.begin():
                ids = await processed.get_processed_attendee_ids(
                    db.session, session_id
                )
                failure = await processed.get_failure(db.session, session_id)
        if ids is not None:
            return FinalizeResult(True, Reason.ALREADY_PROCESSED, ids)
        if failure is not None:
            return FinalizeResult(
                False, Reason(failure["reason"]),
                refunded=bool(failure["refunded"]),
            )

        items = _items_from_metadata(session.metadata)
        if items is None:
            return await self._fail_after_payment(
                db, provider, session, Reason.INVALID_PAYLOAD
            )

        try:
            enc = encrypt_contact(
                await self.cipher(),
                Contact(session.metadata["name"], session.metadata["email"],
                        session.metadata.get("phone")),
                session.payment_reference,
            )
        except EncryptionError as e:
            log_error(ErrorCode.ENCRYPT_FAILED, detail=str(e))
            return FinalizeResult(False, Reason.ENCRYPTION_ERROR)

        events: Dict[int, Event] = {}
        try:
            async with db.gated():
                async with db.session.begin():
                    if not await processed.mark_processed(
                        db.session, session_id, []
                    ):
                        ids = await processed.get_processed_attendee_ids(
                            db.session, session_id
                        )
                        return FinalizeResult(
                            True, Reason.ALREADY_PROCESSED, ids or []
                        )
                    for item in items:
                        event = await load_event(db.session, item.event_id)
                        if event is None or not event.active:
                            raise _EventUnavailable(item.event_id)
                        events[event.id] = event
                    scoped = [
                        ReservationItem(
                            i.event_id, i.quantity,
                            _booking_date(events[i.event_id], i.date),
                        )
                        for i in items
                    ]
                    ids = await reserve_items_in_transaction(
                        db.session, scoped, enc
                    )
                    await processed.set_attendee_ids(
                        db.session, session_id, ids
                    )
        except CapacityExceeded as e:
            log_error(ErrorCode.CAPACITY_LOST, event_id=e.event_id,
                      detail=f"session={session_id}")
            return await self._fail_after_payment(
                db, provider, session, Reason.POST_PAYMENT_CAPACITY_LOST
            )
        except _EventUnavailable as e:
            log_error(ErrorCode.NOT_FOUND_EVENT, event_id=e.event_id,
                      detail=f"session={session_id}")
            return await self._fail_after_payment(
                db, provider, session, Reason.EVENT_UNAVAILABLE
            )
        except SQLAlchemyError as e:
            log_error(ErrorCode.DB_QUERY, detail=type(e).__name__)
            return FinalizeResult(False, Reason.DB_ERROR)

        log_info("Checkout", f"Fulfilled session={session_id} "
                             f"attendees={ids}")
        for item, attendee_id in zip(
            sorted(scoped, key=lambda i: i.event_id), ids
        ):
            self._notify(events[item.event_id], attendee_id, item.quantity,
                         item.date)
        return FinalizeResult(True, attendee_ids=ids)

    async def _fail_after_payment(
        self,
        db: GatedAsyncSession,
        provider: PaymentProvider,
        session: ValidatedPaymentSession,
        reason: Reason,
    ) -> FinalizeResult:
        """Money taken, nothing fulfilled: record once, maybe refund."""
        try:
            async with db.gated():
                async with db.session.begin():
                    created = await processed.record_failure(
                        db.session, session.id, reason.value, provider.type,
                        session.payment_reference, session.amount_total,
                    )
        except SQLAlchemyError as e:
            log_error(ErrorCode.DB_QUERY, detail=type(e).__name__)
            return FinalizeResult(False, Reason.DB_ERROR)

        if not created or not self.auto_refund:
            return FinalizeResult(False, reason, refunded=False)
        if not session.payment_reference:
            log_error(ErrorCode.PAYMENT_REFUND,
                      detail=f"no payment reference session={session.id}")
            return FinalizeResult(False, reason, refunded=False)

        refunded = await provider.refund_payment(session.payment_reference)
        if refunded:
            log_info("Checkout", f"Refunded session={session.id}")
            try:
                async with db.gated():
                    async with db.session.begin():
                        await processed.mark_refunded(db.session, session.id)
            except SQLAlchemyError as e:
                # the refund stands; only the ledger flag is missing
                log_error(ErrorCode.DB_QUERY, detail=type(e).__name__)
        else:
            log_error(ErrorCode.PAYMENT_REFUND, detail=f"session={session.id}")
        return FinalizeResult(False, reason, refunded=refunded)

    # ---
    # webhook
    # ---
    async def handle_webhook(
        self,
        db: GatedAsyncSession,
        provider: PaymentProvider,
        raw_body: bytes,
        signature: str,
        context: Optional[Mapping[str, object]] = None,
    ) -> WebhookResult:
        verify = await provider.verify_webhook_signature(
            raw_body, signature, context
        )
        if not verify.valid:
            return WebhookResult(verify)
        session_id = provider.session_id_from_event(verify.event)
        if session_id is None:
            log_debug("Webhook", f"Ignoring event type {verify.event['type']}")
            return WebhookResult(verify)
        return WebhookResult(
            verify, session_id, await self.finalize(db, session_id, provider)
        )

    # ---
    # admin refund
    # ---
    async def refund_attendee(
        self, db: GatedAsyncSession, attendee_id: int
    ) -> Optional[Reason]:
        """
        Refund the payment behind an attendee. Returns None on success or
        the reason it could not be done. Raises LookupError if the attendee
        does not exist.
        """
        async with db.gated():
            async with db.session.begin():
                attendee = (await db.session.execute(
                    select(Attendee).where(Attendee.id == attendee_id)
                )).scalar_one_or_none()
        if attendee is None:
            raise LookupError(attendee_id)
        if not attendee.payment_reference:
            return Reason.VALIDATION_ERROR

        try:
            reference = (await self.cipher()).decrypt(
                attendee.payment_reference
            )
        except EncryptionError as e:
            log_error(ErrorCode.DECRYPT_FAILED, attendee_id=attendee_id,
                      detail=str(e))
            return Reason.ENCRYPTION_ERROR

        provider = await self.provider()
        if provider is None:
            return Reason.PROVIDER_UNCONFIGURED
        if not await provider.refund_payment(reference):
            log_error(ErrorCode.PAYMENT_REFUND, attendee_id=attendee_id)
            return Reason.PROVIDER_REJECTED
        log_info("Checkout", f"Refunded attendee={attendee_id}")
        return None


class _EventUnavailable(Exception):
    def __init__(self, event_id: int) -> None:
        super().__init__(event_id)
        self.event_id = event_id
