from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()

EVENT_TYPE_STANDARD = "standard"
EVENT_TYPE_DAILY = "daily"


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    # NULL = unlimited
    max_attendees = Column(Integer, nullable=True)
    # minor currency units; NULL = free
    unit_price = Column(Integer, nullable=True)
    max_quantity = Column(Integer, nullable=False, default=1)
    # standard | daily (capacity per booking date)
    event_type = Column(String, nullable=False, default=EVENT_TYPE_STANDARD)
    closes_at = Column(Float, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    # optional outbound registration notification
    webhook_url = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

    @property
    def is_daily(self) -> bool:
        return self.event_type == EVENT_TYPE_DAILY

    @property
    def is_paid(self) -> bool:
        return self.unit_price is not None and self.unit_price > 0


class Attendee(Base):
    __tablename__ = "attendees"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(
        Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    # encrypted at rest
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    phone = Column(Text, nullable=True)
    payment_reference = Column(Text, nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    # YYYY-MM-DD for daily events, NULL otherwise
    date = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("attendees_event_date_idx", "event_id", "date"),
    )


class ProcessedPayment(Base):
    __tablename__ = "processed_payments"
    # provider checkout session / order id
    session_id = Column(String, primary_key=True)
    # comma separated attendee ids
    attendee_ids = Column(String, nullable=False, default="")
    processed_at = Column(Float, nullable=False)


class FulfillmentFailure(Base):
    __tablename__ = "fulfillment_failures"
    session_id = Column(String, primary_key=True)
    # post_payment_capacity_lost | event_unavailable | ...
    reason = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    payment_reference = Column(String, nullable=True)
    amount_total = Column(Integer, nullable=True)
    refunded = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class Setting(Base):
    __tablename__ = "settings"
    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
