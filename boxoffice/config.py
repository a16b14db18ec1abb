import os
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .model import settings as settings_table

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")

ALLOWED_DOMAIN = os.environ.get("ALLOWED_DOMAIN", "localhost:8000")
ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")

WEBHOOK_TOLERANCE_SECONDS = int(
    os.environ.get("WEBHOOK_TOLERANCE_SECONDS", "300")
)
AUTO_REFUND_ON_CAPACITY_LOSS = (
    os.environ.get("AUTO_REFUND_ON_CAPACITY_LOSS", "0").lower()
    in ("1", "true", "yes")
)

STRIPE_API_BASE = os.environ.get("STRIPE_API_BASE", "https://api.stripe.com")
# empty -> derived from SQUARE_SANDBOX
SQUARE_API_BASE = os.environ.get("SQUARE_API_BASE", "")

PROVIDERS = ("stripe", "square")

# provider -> setting key (also the environment fallback name)
_CREDENTIAL_KEYS = {
    "stripe": "STRIPE_SECRET_KEY",
    "square": "SQUARE_ACCESS_TOKEN",
}
_WEBHOOK_SECRET_KEYS = {
    "stripe": "STRIPE_WEBHOOK_SECRET",
    "square": "SQUARE_WEBHOOK_SIGNATURE_KEY",
}

_TRUTHY = ("1", "true", "yes")


def webhook_notification_url() -> str:
    return f"https://{ALLOWED_DOMAIN}/payment/webhook"


class CredentialStore:
    """
    Resolves payment credentials and provider settings.

    Values stored in the `settings` table win over the environment, so keys
    can be rotated at runtime. Every lookup runs in its own short session so
    callers can use it from inside or outside their own transactions.
    """

    def __init__(
        self,
        sessions: Callable[[], AsyncSession],
        env: Optional[dict] = None,
    ) -> None:
        self.sessions = sessions
        self.env = os.environ if env is None else env

    async def get(self, key: str) -> Optional[str]:
        async with self.sessions() as db:
            async with db.begin():
                value = await settings_table.get_setting(db, key)
        if value:
            return value
        return self.env.get(key) or None

    async def set(self, key: str, value: Optional[str]) -> None:
        async with self.sessions() as db:
            async with db.begin():
                await settings_table.set_setting(db, key, value)

    async def get_credential(self, provider: str) -> Optional[str]:
        key = _CREDENTIAL_KEYS.get(provider)
        return await self.get(key) if key else None

    async def get_webhook_secret(self, provider: str) -> Optional[str]:
        key = _WEBHOOK_SECRET_KEYS.get(provider)
        return await self.get(key) if key else None

    async def get_active_provider_type(self) -> Optional[str]:
        value = (await self.get("PAYMENT_PROVIDER") or "").lower()
        return value if value in PROVIDERS else None

    async def get_location_id(self) -> Optional[str]:
        return await self.get("SQUARE_LOCATION_ID")

    async def get_square_sandbox(self) -> bool:
        return (await self.get("SQUARE_SANDBOX") or "0").lower() in _TRUTHY

    async def get_currency(self) -> str:
        return (await self.get("CURRENCY") or "eur").lower()

    async def get_phone_prefix(self) -> str:
        return await self.get("PHONE_PREFIX") or "44"

    async def get_encryption_key(self) -> Optional[str]:
        return await self.get("ENCRYPTION_KEY")

    async def get_stripe_webhook_endpoint_id(self) -> Optional[str]:
        return await self.get("STRIPE_WEBHOOK_ENDPOINT_ID")
