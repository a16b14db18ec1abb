"""
Privacy-safe logging.

Errors are logged by classified code plus ids, never names, emails or
payment payloads.
"""
import os
import sys
from typing import Optional

from loguru import logger

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        '<c>{extra[category]}</>',
        '{message}',
    )
)

logger.remove()
logger.configure(extra={"category": "-"})
logger.add(sys.stderr, format=log_format, level=LOG_LEVEL)


class ErrorCode:
    # database
    DB_QUERY = "E_DB_QUERY"

    # capacity
    CAPACITY_EXCEEDED = "E_CAPACITY_EXCEEDED"
    CAPACITY_LOST = "E_CAPACITY_LOST_AFTER_PAYMENT"

    # encryption
    ENCRYPT_FAILED = "E_ENCRYPT_FAILED"
    DECRYPT_FAILED = "E_DECRYPT_FAILED"

    # provider agnostic
    PAYMENT_SIGNATURE = "E_PAYMENT_SIGNATURE"
    PAYMENT_REFUND = "E_PAYMENT_REFUND"
    PAYMENT_CHECKOUT = "E_PAYMENT_CHECKOUT"

    # stripe
    STRIPE_SIGNATURE = "E_STRIPE_SIGNATURE"
    STRIPE_SESSION = "E_STRIPE_SESSION"
    STRIPE_REFUND = "E_STRIPE_REFUND"
    STRIPE_CHECKOUT = "E_STRIPE_CHECKOUT"
    STRIPE_WEBHOOK_SETUP = "E_STRIPE_WEBHOOK_SETUP"

    # square
    SQUARE_SIGNATURE = "E_SQUARE_SIGNATURE"
    SQUARE_REFUND = "E_SQUARE_REFUND"
    SQUARE_CHECKOUT = "E_SQUARE_CHECKOUT"
    SQUARE_ORDER = "E_SQUARE_ORDER"

    # outbound registration notifications
    WEBHOOK_SEND = "E_WEBHOOK_SEND"

    NOT_FOUND_EVENT = "E_NOT_FOUND_EVENT"
    CONFIG_MISSING = "E_CONFIG_MISSING"


def log_error(
    code: str,
    *,
    event_id: Optional[int] = None,
    attendee_id: Optional[int] = None,
    detail: Optional[str] = None,
) -> None:
    parts = [code]
    if event_id is not None:
        parts.append(f"event={event_id}")
    if attendee_id is not None:
        parts.append(f"attendee={attendee_id}")
    if detail:
        parts.append(f'detail="{detail}"')
    logger.bind(category="Error").error(" ".join(parts))


def log_debug(category: str, message: str) -> None:
    logger.bind(category=category).debug(message)


def log_info(category: str, message: str) -> None:
    logger.bind(category=category).info(message)
