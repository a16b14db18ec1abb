# payments/signatures.py
"""
Webhook signature verification.

Two schemes:

  timestamped (primary gateway)
      header:  t=<unix ts>,v1=<hex hmac>[,v1=<hex hmac>...]
      signed:  HMAC-SHA256(secret, "<t>." + raw_body), hex encoded
      plus a replay window: |now - t| <= tolerance

  url-bound (alternate gateway)
      header:  base64 HMAC-SHA256(secret, notification_url + raw_body)

Verification never raises and error strings never contain the secret or the
payload. HMACs are computed over the exact raw bytes received.
"""
from __future__ import annotations
import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, TypedDict, Union

from ..errors import Reason
from ..log import ErrorCode, log_error

DEFAULT_TOLERANCE_SECONDS = 300

ERR_HEADER_FORMAT = "Invalid signature header format"
ERR_SECRET_MISSING = "Webhook secret not configured"
ERR_URL_MISSING = "Notification URL required for verification"
ERR_TIMESTAMP = "Timestamp outside tolerance window"
ERR_MISMATCH = "Signature verification failed"
ERR_JSON = "Invalid JSON payload"


class WebhookEvent(TypedDict):
    id: str
    type: str
    data: Dict[str, Any]


@dataclass
class WebhookVerifyResult:
    valid: bool
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None
    reason: Optional[Reason] = None


def _fail(reason: Reason, error: str) -> WebhookVerifyResult:
    return WebhookVerifyResult(valid=False, error=error, reason=reason)


def _as_bytes(payload: Union[bytes, str]) -> bytes:
    return payload.encode() if isinstance(payload, str) else payload


def compute_hmac_sha256(data: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode(), data, hashlib.sha256).digest()


def secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def parse_event(payload: bytes) -> Optional[WebhookEvent]:
    try:
        doc = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(doc, dict):
        return None
    # the alternate gateway names its envelope id `event_id`
    event_id = doc.get("id", doc.get("event_id"))
    if not isinstance(event_id, str) or not isinstance(doc.get("type"), str):
        return None
    data = doc.get("data")
    if not isinstance(data, dict):
        return None
    return {"id": event_id, "type": doc["type"], "data": data}


# ----------------------------
# timestamped scheme
# ----------------------------
def parse_timestamped_header(header: str) -> Optional[Tuple[int, List[str]]]:
    """`t=123,v1=abc` -> (123, ["abc"]); None if malformed."""
    timestamp = 0
    signatures: List[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None
        elif key == "v1" and value:
            signatures.append(value)
    if timestamp <= 0 or not signatures:
        return None
    return timestamp, signatures


def sign_timestamped(
    payload: Union[bytes, str], secret: str, timestamp: Optional[int] = None
) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + _as_bytes(payload)
    return f"t={ts},v1={compute_hmac_sha256(signed, secret).hex()}"


def verify_timestamped_signature(
    payload: Union[bytes, str],
    header: str,
    secret: Optional[str],
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
    error_code: str = ErrorCode.PAYMENT_SIGNATURE,
) -> WebhookVerifyResult:
    raw = _as_bytes(payload)

    parsed = parse_timestamped_header(header)
    if parsed is None:
        log_error(error_code, detail="malformed signature header")
        return _fail(Reason.INVALID_SIGNATURE_FORMAT, ERR_HEADER_FORMAT)
    timestamp, candidates = parsed

    if not secret:
        log_error(ErrorCode.CONFIG_MISSING, detail="webhook secret")
        return _fail(Reason.SECRET_MISSING, ERR_SECRET_MISSING)

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        log_error(error_code, detail="timestamp outside tolerance")
        return _fail(Reason.TIMESTAMP_OUT_OF_TOLERANCE, ERR_TIMESTAMP)

    expected = compute_hmac_sha256(f"{timestamp}.".encode() + raw, secret)
    expected_hex = expected.hex()
    if not any(secure_compare(c, expected_hex) for c in candidates):
        log_error(error_code, detail="signature mismatch")
        return _fail(Reason.SIGNATURE_MISMATCH, ERR_MISMATCH)

    event = parse_event(raw)
    if event is None:
        log_error(error_code, detail="invalid JSON")
        return _fail(Reason.INVALID_PAYLOAD, ERR_JSON)
    return WebhookVerifyResult(valid=True, event=event)


# ----------------------------
# url-bound scheme
# ----------------------------
def _is_base64_digest(header: str) -> bool:
    try:
        return len(base64.b64decode(header, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


def sign_url(
    payload: Union[bytes, str], secret: str, notification_url: str
) -> str:
    signed = notification_url.encode() + _as_bytes(payload)
    return base64.b64encode(compute_hmac_sha256(signed, secret)).decode()


def verify_url_signature(
    payload: Union[bytes, str],
    header: str,
    secret: Optional[str],
    notification_url: Optional[str],
    error_code: str = ErrorCode.PAYMENT_SIGNATURE,
) -> WebhookVerifyResult:
    raw = _as_bytes(payload)
    header = (header or "").strip()

    if not _is_base64_digest(header):
        log_error(error_code, detail="malformed signature header")
        return _fail(Reason.INVALID_SIGNATURE_FORMAT, ERR_HEADER_FORMAT)

    if not secret:
        log_error(ErrorCode.CONFIG_MISSING, detail="webhook signature key")
        return _fail(Reason.SECRET_MISSING, ERR_SECRET_MISSING)

    if not notification_url:
        log_error(error_code, detail="notification URL required")
        return _fail(Reason.SECRET_MISSING, ERR_URL_MISSING)

    expected = sign_url(raw, secret, notification_url)
    if not secure_compare(header, expected):
        log_error(
            error_code,
            detail=f"mismatch receivedLength={len(header)} "
                   f"expectedLength={len(expected)}",
        )
        return _fail(Reason.SIGNATURE_MISMATCH, ERR_MISMATCH)

    event = parse_event(raw)
    if event is None:
        log_error(error_code, detail="invalid JSON")
        return _fail(Reason.INVALID_PAYLOAD, ERR_JSON)
    return WebhookVerifyResult(valid=True, event=event)


# ----------------------------
# signed test events
# ----------------------------
def construct_timestamped_event(
    event: Dict[str, Any], secret: str, timestamp: Optional[int] = None
) -> Tuple[bytes, str]:
    """(raw body, signature header) for a primary-gateway test delivery."""
    body = json.dumps(event).encode()
    return body, sign_timestamped(body, secret, timestamp)


def construct_url_event(
    event: Dict[str, Any], secret: str, notification_url: str
) -> Tuple[bytes, str]:
    """(raw body, signature header) for an alternate-gateway test delivery."""
    body = json.dumps(event).encode()
    return body, sign_url(body, secret, notification_url)
