"""At-rest encryption of message bodies."""

from __future__ import annotations

from base64 import urlsafe_b64encode
from hashlib import sha256
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


class MessageCipher:
    """Fernet cipher keyed from the application secret."""

    def __init__(self, secret: str) -> None:
        key = sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(urlsafe_b64encode(key))

    def encrypt(self, content: Optional[str]) -> Optional[str]:
        if content is None:
            return None
        return self._fernet.encrypt(content.encode("utf-8")).decode("utf-8")

    def decrypt(self, payload: Optional[str]) -> Optional[str]:
        """Return the plain text, or ``None`` for a missing or corrupted payload."""
        if not payload:
            return None
        try:
            return self._fernet.decrypt(payload.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None
