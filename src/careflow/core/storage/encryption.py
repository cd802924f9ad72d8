"""Fernet-based encryption for patient answers at rest.

The raw payload a patient submits for a task (a completion flag, a vital
reading, a questionnaire score) is encrypted before it is written to
SQLite. Positivity, alert flags and slot times stay in plaintext so the
alert history scans can filter on them in SQL.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""


class FieldEncryptor:
    """Encrypts and decrypts JSON-serializable payloads.

    New tokens are always written with the primary key. Tokens written
    under a retired key still decrypt as long as that key is passed in
    ``previous_keys``.

    Usage::

        encryptor = FieldEncryptor(key="...")
        token = encryptor.encrypt({"value": 72})
        encryptor.decrypt(token)  # {"value": 72}
    """

    def __init__(self, key: str, previous_keys: Iterable[str] = ()) -> None:
        """Initialize with a primary Fernet key and optional retired keys.

        Raises:
            EncryptionError: If any key is empty or invalid.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        keys = [key, *(k for k in previous_keys if k and k.strip())]
        try:
            self._fernet = MultiFernet([Fernet(k.strip().encode()) for k in keys])
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, data: Any) -> str | None:
        """Encrypt a JSON-serializable value; ``None`` stays ``None``."""
        if data is None:
            return None
        try:
            plaintext = json.dumps(data, separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str | None) -> Any:
        """Decrypt a token back to the original Python object.

        Raises:
            EncryptionError: If the token is invalid or no key matches.
        """
        if not token:
            return None
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        return json.loads(plaintext)

    @staticmethod
    def generate_key() -> str:
        """Generate a new Fernet key."""
        return Fernet.generate_key().decode("utf-8")
