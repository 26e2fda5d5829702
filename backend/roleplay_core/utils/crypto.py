from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

ENCRYPTED_PREFIX = "enc:"


class SecretCipher:
    """Fernet wrapper for endpoint credentials stored in the blob store."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("APP_SECRET_KEY is required to store endpoint credentials.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def seal(self, value: str) -> str:
        """Encrypt a plain credential; already sealed values pass through."""

        if is_sealed(value):
            return value
        token = self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        return ENCRYPTED_PREFIX + token

    def unseal(self, value: str) -> str:
        """Decrypt a sealed credential; plain values pass through."""

        if not is_sealed(value):
            return value
        token = value[len(ENCRYPTED_PREFIX) :]
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Failed to decrypt stored endpoint credential.") from exc


def is_sealed(value: str) -> bool:
    return value.startswith(ENCRYPTED_PREFIX)
