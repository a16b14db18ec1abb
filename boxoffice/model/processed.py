"""
Idempotency tracking for paid checkouts.

One `processed_payments` row per provider session id, ever (primary key).
The row is claimed *before* attendees are inserted, inside the same
transaction, so concurrent webhook deliveries for one session serialize on
the key: the loser's INSERT ... ON CONFLICT DO NOTHING returns no row and it
backs off as already processed. If the winner rolls back (capacity lost),
the claim disappears with it.

Failures that need an operator (money taken, nothing fulfilled) go to
`fulfillment_failures`, also one row per session id.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession


def _join_ids(ids: List[int]) -> str:
    return ",".join(str(i) for i in ids)


def _split_ids(raw: Optional[str]) -> List[int]:
    return [int(x) for x in (raw or "").split(",") if x]


# ------------------------------------------------------------------------------
# UN-GATED (caller owns the transaction)
# ------------------------------------------------------------------------------

async def is_processed(db: AsyncSession, session_id: str) -> bool:
    row = (await db.execute(text("""
        SELECT 1 FROM processed_payments WHERE session_id = :sid
    """), {"sid": session_id})).first()
    return row is not None


async def mark_processed(
    db: AsyncSession, session_id: str, attendee_ids: List[int]
) -> bool:
    """
    Returns True if this call created the record, False if the session id
    was already recorded (the unique key conflict is swallowed).
    """
    row = (await db.execute(text("""
        INSERT INTO processed_payments(session_id, attendee_ids, processed_at)
        VALUES(:sid, :ids, :ts)
        ON CONFLICT (session_id) DO NOTHING
        RETURNING session_id
    """), {
        "sid": session_id,
        "ids": _join_ids(attendee_ids),
        "ts": now_ts(),
    })).first()
    return row is not None


async def set_attendee_ids(
    db: AsyncSession, session_id: str, attendee_ids: List[int]
) -> None:
    await db.execute(text("""
        UPDATE processed_payments SET attendee_ids = :ids
        WHERE session_id = :sid
    """), {"sid": session_id, "ids": _join_ids(attendee_ids)})


async def get_processed_attendee_ids(
    db: AsyncSession, session_id: str
) -> Optional[List[int]]:
    row = (await db.execute(text("""
        SELECT attendee_ids FROM processed_payments WHERE session_id = :sid
    """), {"sid": session_id})).first()
    return _split_ids(row[0]) if row else None


async def record_failure(
    db: AsyncSession,
    session_id: str,
    reason: str,
    provider: str,
    payment_reference: Optional[str],
    amount_total: Optional[int],
) -> bool:
    """True if newly recorded, False if this session already failed."""
    row = (await db.execute(text("""
        INSERT INTO fulfillment_failures(
            session_id, reason, provider, payment_reference, amount_total,
            refunded, created_at
        ) VALUES (:sid, :reason, :provider, :ref, :amount, :refunded, :ts)
        ON CONFLICT (session_id) DO NOTHING
        RETURNING session_id
    """), {
        "sid": session_id,
        "reason": reason,
        "provider": provider,
        "ref": payment_reference,
        "amount": amount_total,
        "refunded": False,
        "ts": now_ts(),
    })).first()
    return row is not None


async def get_failure(
    db: AsyncSession, session_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT session_id, reason, provider, payment_reference, amount_total,
               refunded, created_at
        FROM fulfillment_failures WHERE session_id = :sid
    """), {"sid": session_id})).mappings().first()
    return dict(row) if row else None


async def mark_refunded(db: AsyncSession, session_id: str) -> None:
    await db.execute(text("""
        UPDATE fulfillment_failures SET refunded = :yes WHERE session_id = :sid
    """), {"sid": session_id, "yes": True})


# ------------------------------------------------------------------------------
# Gated helpers for routes
# ------------------------------------------------------------------------------

async def check_processed(db: GatedAsyncSession, session_id: str) -> bool:
    async with db.gated():
        async with db.session.begin():
            return await is_processed(db.session, session_id)


async def list_failures(
    db: GatedAsyncSession, limit: int = 200
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT session_id, reason, provider, amount_total, refunded,
                       created_at
                FROM fulfillment_failures
                ORDER BY created_at DESC
                LIMIT :lim
            """), {"lim": max(1, min(limit, 500))})).mappings().all()
    return [
        {
            "session_id": r["session_id"],
            "reason": r["reason"],
            "provider": r["provider"],
            "amount_total": r["amount_total"],
            "refunded": bool(r["refunded"]),
            "created_at": to_iso(r["created_at"]),
        }
        for r in rows
    ]
