from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class Contact:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class RegistrationIntent:
    """One booking attempt for a single event. Never persisted."""
    event_id: int
    name: str
    email: str
    quantity: int = 1
    phone: Optional[str] = None
    date: Optional[str] = None

    @property
    def contact(self) -> Contact:
        return Contact(self.name, self.email, self.phone)


@dataclass(frozen=True)
class MultiRegistrationItem:
    event_id: int
    quantity: int
    unit_price: int
    name: str
    slug: str = ""


@dataclass(frozen=True)
class MultiRegistrationIntent:
    """One booking attempt across several events (a basket)."""
    name: str
    email: str
    items: List[MultiRegistrationItem] = field(default_factory=list)
    phone: Optional[str] = None
    date: Optional[str] = None

    @property
    def contact(self) -> Contact:
        return Contact(self.name, self.email, self.phone)

    @property
    def paid_items(self) -> List[MultiRegistrationItem]:
        # free items ride along in the metadata but are not charged
        return [i for i in self.items if i.unit_price > 0]


@dataclass(frozen=True)
class ReservationItem:
    event_id: int
    quantity: int
    date: Optional[str] = None
