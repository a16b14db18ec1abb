from enum import Enum


class Reason(str, Enum):
    # reservation
    CAPACITY_EXCEEDED = "capacity_exceeded"
    ENCRYPTION_ERROR = "encryption_error"
    DB_ERROR = "db_error"

    # checkout creation
    PROVIDER_UNCONFIGURED = "provider_unconfigured"
    PROVIDER_REJECTED = "provider_rejected"
    METADATA_OVERFLOW = "metadata_overflow"

    # webhook verification
    INVALID_SIGNATURE_FORMAT = "invalid_signature_format"
    SECRET_MISSING = "secret_missing"
    TIMESTAMP_OUT_OF_TOLERANCE = "timestamp_out_of_tolerance"
    SIGNATURE_MISMATCH = "signature_mismatch"
    INVALID_PAYLOAD = "invalid_payload"

    # idempotency (informational)
    ALREADY_PROCESSED = "already_processed"

    # money moved, capacity could not honour it
    POST_PAYMENT_CAPACITY_LOST = "post_payment_capacity_lost"

    # request level
    VALIDATION_ERROR = "validation_error"
    EVENT_NOT_FOUND = "event_not_found"
    EVENT_UNAVAILABLE = "event_unavailable"
    SESSION_NOT_FOUND = "session_not_found"
    PAYMENT_NOT_COMPLETED = "payment_not_completed"


# user-visible messages
MESSAGES = {
    Reason.CAPACITY_EXCEEDED: "Sorry, not enough spots available.",
    Reason.ENCRYPTION_ERROR: "Registration failed. Please try again later.",
    Reason.DB_ERROR: "Registration failed. Please try again later.",
    Reason.PROVIDER_UNCONFIGURED: "Payments are not configured.",
    Reason.PROVIDER_REJECTED:
        "Failed to create payment session. Please try again.",
    Reason.METADATA_OVERFLOW:
        "Your details are too long for the payment provider. "
        "Please shorten them and try again.",
    Reason.EVENT_NOT_FOUND: "Event not found.",
    Reason.EVENT_UNAVAILABLE:
        "This event is no longer accepting registrations.",
    Reason.SESSION_NOT_FOUND: "Payment session not found.",
    Reason.PAYMENT_NOT_COMPLETED:
        "Payment verification failed. Please contact support.",
    Reason.POST_PAYMENT_CAPACITY_LOST:
        "Sorry, this event sold out while you were completing payment. "
        "The organiser has been notified.",
}


def message_for(reason: Reason) -> str:
    return MESSAGES.get(reason, "Something went wrong.")


class EncryptionError(Exception):
    """Raised by the encryption collaborator; surfaced as encryption_error."""
