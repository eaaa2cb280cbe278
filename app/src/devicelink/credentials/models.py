"""
Credential Models — the persisted session material and updates to it.

Credentials are an opaque bag of named fragments (identity keys, pre-keys,
registration metadata, ...) plus a monotonic version. Only CredentialStore
builds non-empty instances; everyone else sees them read-only and changes
them by handing a CredentialDelta to the store.

All models are frozen dataclasses — create new instances for modifications.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

# Name of the marker fragment whose presence means pairing completed.
REGISTERED_FRAGMENT = "registered"


@dataclass(frozen=True)
class Credentials:
    """A committed snapshot of the credential store."""

    version: int = 0
    fragments: Mapping[str, bytes] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def empty(cls) -> Credentials:
        """Nothing persisted (first run, after clear(), or unreadable store)."""
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.version == 0 and not self.fragments

    @property
    def registered(self) -> bool:
        return REGISTERED_FRAGMENT in self.fragments

    def get(self, name: str) -> bytes | None:
        return self.fragments.get(name)

    def names(self) -> list[str]:
        return sorted(self.fragments)

    def merged(self, delta: CredentialDelta) -> dict[str, bytes]:
        """Fragment map that results from applying `delta` (version untouched)."""
        result = dict(self.fragments)
        for name in delta.removals:
            result.pop(name, None)
        result.update(delta.updates)
        if delta.registered is True:
            result[REGISTERED_FRAGMENT] = b"1"
        elif delta.registered is False:
            result.pop(REGISTERED_FRAGMENT, None)
        return result


@dataclass(frozen=True)
class CredentialDelta:
    """
    An incremental update emitted as the session evolves.

    `updates` replaces whole fragments, `removals` drops them, and
    `registered` (when not None) sets or clears the registered marker.
    """

    updates: Mapping[str, bytes] = field(default_factory=dict)
    removals: frozenset[str] = frozenset()
    registered: bool | None = None

    def __post_init__(self) -> None:
        for name, value in self.updates.items():
            _check_fragment_name(name)
            if not isinstance(value, (bytes, bytearray)):
                raise TypeError(
                    f"Fragment {name!r} must be bytes, got {type(value).__name__}"
                )
        for name in self.removals:
            _check_fragment_name(name)
        overlap = set(self.updates) & set(self.removals)
        if overlap:
            raise ValueError(f"Fragments both updated and removed: {sorted(overlap)}")

    @property
    def is_noop(self) -> bool:
        return not self.updates and not self.removals and self.registered is None


def _check_fragment_name(name: str) -> None:
    """Fragment names become file names, so keep them boring."""
    if not name or not all(c.isalnum() or c in "-_" for c in name):
        raise ValueError(
            f"Invalid fragment name {name!r}: use letters, digits, '-' and '_'"
        )
