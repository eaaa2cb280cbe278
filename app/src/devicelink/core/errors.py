"""
Error taxonomy for the session lifecycle.

Every error carries a `hint`: the next step an operator should take. The CLI
prints it instead of a traceback.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devicelink.connection.state import DisconnectReason


class DeviceLinkError(Exception):
    """Base class for all devicelink errors."""

    hint: str = "Check the log output above and try again."

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint


class TransportError(DeviceLinkError):
    """Network-level failure. Retryable until attempts are exhausted."""

    hint = "Check network connectivity, then re-run."


class TerminalSessionError(DeviceLinkError):
    """The remote rejected the session for good (logged out or replaced).

    Credentials have already been cleared by the time callers see this.
    """

    def __init__(self, reason: DisconnectReason, message: str | None = None):
        self.reason = reason
        super().__init__(
            message or f"Session terminated by remote: {reason}",
            hint=_terminal_hint(reason),
        )


class PersistenceError(DeviceLinkError):
    """Credential material could not be written durably."""

    hint = "Check that the auth directory is writable and has free space, then re-run."


class AuthError(DeviceLinkError):
    """Pairing could not be completed."""


class PairingTimeoutError(AuthError):
    """Nobody scanned the pairing challenge within the pairing window."""

    hint = "Re-run to get a new pairing challenge and scan it before it expires."


class NotRegisteredError(AuthError):
    """A registered session is required but the store has none."""

    hint = "Run `devicelink auth` to pair this device first."


class StoreLockedError(DeviceLinkError):
    """Another live process owns the credential store."""

    hint = "Stop the other devicelink process using this auth directory, then re-run."


class InvalidTransitionError(DeviceLinkError):
    """The state machine was asked to make a transition it does not allow."""


def _terminal_hint(reason: DisconnectReason) -> str:
    from devicelink.connection.state import DisconnectKind

    if reason.kind is DisconnectKind.PROTOCOL_CONFLICT:
        return (
            "Another session replaced this one. Stop the other instance, "
            "then re-run `devicelink auth` to get a new pairing challenge."
        )
    return "This device was logged out. Re-run `devicelink auth` to get a new pairing challenge."
