"""
Application-layer encryption for audit payloads.

old/new values recorded in the audit trail can contain PHI, so they are
stored as Fernet tokens and only decrypted when read back through the store.
"""

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from patient_lifecycle.config import settings

logger = logging.getLogger(__name__)


class EncryptionService:
    """Wraps Fernet symmetric encryption for audit payloads."""

    def __init__(self, key: str | bytes | None = None):
        raw_key = key or settings.PHI_ENCRYPTION_KEY
        if raw_key:
            self._fernet = Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)
        else:
            # Development only: entries written under this key become
            # unreadable once the process exits.
            logger.warning("PHI_ENCRYPTION_KEY not set, using a process-local key")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string and return base64-encoded ciphertext."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt base64-encoded ciphertext back to plaintext."""
        if not ciphertext:
            return ""
        return self._fernet.decrypt(ciphertext.encode()).decode()

    def encrypt_json(self, value: Any) -> str | None:
        if value is None:
            return None
        return self.encrypt(json.dumps(value, sort_keys=True, default=str))

    def decrypt_json(self, ciphertext: str | None) -> Any:
        """Inverse of ``encrypt_json``; raises ``InvalidToken`` on foreign data."""
        if ciphertext is None:
            return None
        return json.loads(self.decrypt(ciphertext))


__all__ = ["EncryptionService", "InvalidToken"]
