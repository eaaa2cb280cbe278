"""
Symmetric encryption for credential fragments at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) with a key derived from
DEVICELINK_STORE_SECRET via PBKDF2. Deterministic derivation means we
don't need to store key material separately — just the secret.

Usage:
    cipher = FragmentCipher.from_secret(config.store.secret)
    blob = cipher.seal(b"...")
    data = cipher.open(blob)
"""

from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Fixed salt: the same secret must yield the same key on every start.
_SALT = b"devicelink-credential-store-v1"
_ITERATIONS = 480_000


def derive_fernet_key(secret: str) -> bytes:
    """Derive a 32-byte urlsafe-base64 Fernet key from a passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class FragmentCipher:
    """Seals/opens fragment blobs. A cipher without a key is a pass-through."""

    def __init__(self, fernet: Fernet | None = None):
        self._fernet = fernet

    @classmethod
    def from_secret(cls, secret: str) -> FragmentCipher:
        if not secret:
            return cls(None)
        return cls(Fernet(derive_fernet_key(secret)))

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def seal(self, data: bytes) -> bytes:
        if self._fernet is None:
            return data
        return self._fernet.encrypt(data)

    def open(self, blob: bytes) -> bytes:
        """Decrypt a blob. Raises ValueError when it was not sealed with our key."""
        if self._fernet is None:
            return blob
        try:
            return self._fernet.decrypt(blob)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt fragment: invalid Fernet token") from ex
