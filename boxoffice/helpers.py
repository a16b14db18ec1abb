import hmac
import re
import time
from datetime import datetime, timezone
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ----------------------------
# Time
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ----------------------------
# Validation
# ----------------------------
def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def is_valid_date(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def normalize_phone(phone: str, prefix: str) -> str:
    """
    E.164-ish normalisation for pre-populated checkout data:
    "07700 900123" + prefix "44" -> "+447700900123".
    """
    digits = re.sub(r"[^\d+]", "", phone)
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    if digits.startswith("00"):
        return "+" + digits[2:]
    if digits.startswith("0"):
        return f"+{prefix}{digits[1:]}"
    return f"+{prefix}{digits}"
