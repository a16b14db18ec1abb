from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


# UN-GATED: callers own the transaction
async def get_setting(db: AsyncSession, key: str) -> Optional[str]:
    row = (await db.execute(
        text("SELECT value FROM settings WHERE key = :k"), {"k": key}
    )).first()
    return row[0] if row else None


async def set_setting(db: AsyncSession, key: str, value: Optional[str]) -> None:
    await db.execute(text("""
        INSERT INTO settings(key, value) VALUES(:k, :v)
        ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
    """), {"k": key, "v": value})
