"""
Shared helpers for the gateway adapters: metadata building and size
policy, the credential-keyed client cache and the safe call boundary.
"""
from __future__ import annotations
import asyncio
import hashlib
import json
from typing import (
    Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar,
)

import httpx

from ..intents import MultiRegistrationIntent, RegistrationIntent
from ..log import log_debug, log_error
from ..model.db import Event

T = TypeVar("T")

HTTP_TIMEOUT_SECONDS = 10.0


async def safe_call(
    fn: Callable[[], Awaitable[T]], error_code: str
) -> Optional[T]:
    """Run a gateway call; log and return None on any gateway failure."""
    try:
        return await fn()
    except httpx.HTTPStatusError as e:
        log_error(error_code, detail=f"status={e.response.status_code}")
    except httpx.HTTPError as e:
        log_error(error_code, detail=type(e).__name__)
    except (ValueError, KeyError, TypeError) as e:
        log_error(error_code, detail=f"bad response: {type(e).__name__}")
    except RuntimeError as e:
        # e.g. a client closed underneath the call
        log_error(error_code, detail=type(e).__name__)
    return None


# ----------------------------
# Metadata
# ----------------------------
def serialize_multi_items(intent: MultiRegistrationIntent) -> str:
    return json.dumps(
        [{"e": i.event_id, "q": i.quantity} for i in intent.items],
        separators=(",", ":"),
    )


def parse_multi_items(raw: Optional[str]) -> Optional[List[Dict[str, int]]]:
    """`[{"e":1,"q":2}]` -> [{"event_id": 1, "quantity": 2}]; None if bad."""
    try:
        doc = json.loads(raw or "")
    except json.JSONDecodeError:
        return None
    if not isinstance(doc, list) or not doc:
        return None
    items = []
    for entry in doc:
        if not isinstance(entry, dict):
            return None
        e, q = entry.get("e"), entry.get("q")
        if not isinstance(e, int) or not isinstance(q, int) or q < 1:
            return None
        items.append({"event_id": e, "quantity": q})
    return items


def build_single_intent_metadata(
    event: Event, intent: RegistrationIntent
) -> Dict[str, str]:
    metadata = {
        "event_id": str(event.id),
        "name": intent.name,
        "email": intent.email,
        "quantity": str(intent.quantity),
    }
    if intent.phone:
        metadata["phone"] = intent.phone
    if event.is_daily and intent.date:
        metadata["date"] = intent.date
    return metadata


def build_multi_intent_metadata(
    intent: MultiRegistrationIntent,
) -> Dict[str, str]:
    metadata = {
        "multi": "1",
        "name": intent.name,
        "email": intent.email,
        "items": serialize_multi_items(intent),
    }
    if intent.phone:
        metadata["phone"] = intent.phone
    if intent.date:
        metadata["date"] = intent.date
    return metadata


def enforce_metadata_limits(
    metadata: Dict[str, str], limit: int, error_code: str
) -> Optional[Dict[str, str]]:
    """
    `name` is truncated to `limit`. Any other value over the limit means
    the session cannot be created faithfully: returns None.
    """
    for key, value in metadata.items():
        if key != "name" and len(value) > limit:
            log_error(
                error_code,
                detail=f"metadata {key} exceeds {limit} chars ({len(value)})",
            )
            return None
    name = metadata.get("name")
    if name is not None and len(name) > limit:
        return {**metadata, "name": name[:limit]}
    return metadata


def has_required_session_metadata(
    metadata: Optional[Mapping[str, Any]],
) -> bool:
    if not metadata or not metadata.get("name") or not metadata.get("email"):
        return False
    is_multi = (
        metadata.get("multi") == "1" and isinstance(metadata.get("items"), str)
    )
    return is_multi or bool(metadata.get("event_id"))


_SESSION_METADATA_KEYS = (
    "event_id", "name", "email", "phone", "quantity", "date", "multi", "items",
)


def extract_session_metadata(metadata: Mapping[str, Any]) -> Dict[str, str]:
    return {
        k: str(metadata[k])
        for k in _SESSION_METADATA_KEYS
        if metadata.get(k) is not None
    }


def to_checkout_result(
    session_id: Optional[str], url: Optional[str], label: str
):
    if not session_id or not url:
        log_debug(label, "Checkout result missing session ID or URL")
        return None
    return {"session_id": session_id, "checkout_url": url}


# ----------------------------
# Client cache
# ----------------------------
def fingerprint(*parts: Optional[str]) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update((p or "").encode())
        h.update(b"\x00")
    return h.hexdigest()


class ClientCache:
    """
    One httpx client per gateway, rebuilt when the credentials in use
    change. Only the credential fingerprint is kept, never the secret.

    Replaced clients are retired, not closed: calls already holding one
    finish on it. Retired clients are closed by `aclose()` at shutdown.
    """

    def __init__(
        self, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._fingerprint: Optional[str] = None
        self._retired: List[httpx.AsyncClient] = []
        self._lock = asyncio.Lock()

    async def get(
        self,
        base_url: str,
        headers: Dict[str, str],
        *credential_parts: Optional[str],
    ) -> httpx.AsyncClient:
        fp = fingerprint(base_url, *credential_parts)
        async with self._lock:
            if self._client is not None and self._fingerprint == fp:
                return self._client
            self._retire()
            self._client = httpx.AsyncClient(
                base_url=base_url,
                headers=headers,
                timeout=HTTP_TIMEOUT_SECONDS,
                transport=self.transport,
            )
            self._fingerprint = fp
            return self._client

    def _retire(self) -> None:
        if self._client is not None:
            self._retired.append(self._client)
        self._client, self._fingerprint = None, None

    async def reset(self) -> None:
        """Force a fresh client on next use."""
        async with self._lock:
            self._retire()

    async def aclose(self) -> None:
        async with self._lock:
            self._retire()
            clients, self._retired = self._retired, []
        for client in clients:
            await client.aclose()
