"""
Field encryption for attendee PII (name, email, phone, payment reference).

Uses Fernet (AES-128-CBC + HMAC-SHA256). The key comes from the credential
store. A missing or malformed key only fails when a field is actually
encrypted or decrypted, so the capacity ledger can report it as
`encryption_error` instead of failing the whole request early.
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import EncryptionError


class FieldCipher:
    def __init__(self, key: Optional[str]) -> None:
        self._key = key
        self._fernet: Optional[Fernet] = None

    def _get(self) -> Fernet:
        if self._fernet is None:
            if not self._key:
                raise EncryptionError("encryption key not configured")
            try:
                self._fernet = Fernet(self._key.encode())
            except (ValueError, TypeError) as e:
                raise EncryptionError("invalid encryption key") from e
        return self._fernet

    def encrypt(self, value: str) -> str:
        return self._get().encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._get().decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise EncryptionError("cannot decrypt field") from e

    def encrypt_optional(self, value: Optional[str]) -> Optional[str]:
        return self.encrypt(value) if value else None

    def decrypt_optional(self, token: Optional[str]) -> Optional[str]:
        return self.decrypt(token) if token else None


def generate_key() -> str:
    return Fernet.generate_key().decode()
