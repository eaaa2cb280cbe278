"""
Credential persistence — the only state that survives a process restart.

Key components:
- Credentials / CredentialDelta: committed snapshot and incremental update
- CredentialStore: crash-safe directory of fragment blobs with a manifest commit point
- FragmentCipher: optional Fernet encryption of fragments at rest
"""

from devicelink.credentials.crypto import FragmentCipher
from devicelink.credentials.models import (
    REGISTERED_FRAGMENT,
    CredentialDelta,
    Credentials,
)
from devicelink.credentials.store import CredentialStore

__all__ = [
    "Credentials",
    "CredentialDelta",
    "CredentialStore",
    "FragmentCipher",
    "REGISTERED_FRAGMENT",
]
