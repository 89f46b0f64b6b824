"""Fernet-encrypted storage for connection passwords."""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class CredentialVault:
    """Seals and opens connection passwords with a Fernet key."""

    def __init__(self, encryption_key: str | bytes | None = None) -> None:
        if not encryption_key:
            logger.warning(
                "DATABASE_CREDENTIALS_KEY is not set; using an ephemeral key. "
                "Stored credentials will not survive a restart."
            )
            encryption_key = Fernet.generate_key()
        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode("utf-8")
        try:
            self._cipher = Fernet(encryption_key)
        except (ValueError, TypeError) as exc:
            raise ValueError(
                "Invalid DATABASE_CREDENTIALS_KEY. Use a Fernet-compatible base64 key."
            ) from exc

    def seal(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode("utf-8")).decode("utf-8")

    def open(self, token: str) -> str:
        try:
            return self._cipher.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt connection credentials.") from exc
