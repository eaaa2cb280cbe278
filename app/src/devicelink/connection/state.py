"""
Connection state and disconnect classification.

classify_disconnect() is a total function from a remote status code to a
DisconnectReason. Only codes that prove the credentials are dead map to a
terminal kind; everything else, including codes we have never seen, is
retryable. A false "terminal" forces a human to re-scan a pairing
challenge, a false "retryable" only costs a few bounded reconnects.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum, IntEnum

from devicelink.transport.events import Closed


class ConnectionState(str, Enum):
    """Lifecycle state of the single logical connection."""

    IDLE = "idle"  # No connection attempt in progress
    PAIRING = "pairing"  # Connecting; challenges may be issued
    OPEN = "open"  # Authenticated, safe to send/receive
    CLOSING = "closing"  # Local graceful close in progress
    CLOSED = "closed"  # Attempt over; see the machine's reason


class DisconnectKind(str, Enum):
    LOGGED_OUT = "logged_out"
    PROTOCOL_CONFLICT = "protocol_conflict"
    TRANSIENT_NETWORK = "transient_network"
    UNKNOWN = "unknown"
    LOCAL = "local"  # We closed it ourselves (shutdown, pairing finished)


class StatusCode(IntEnum):
    """Status codes the remote reports on close."""

    LOGGED_OUT = 401
    FORBIDDEN = 403
    TIMED_OUT = 408  # also "connection lost"
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


LOGGED_OUT_CODES = frozenset({StatusCode.LOGGED_OUT, StatusCode.FORBIDDEN})
CONFLICT_CODES = frozenset({StatusCode.CONNECTION_REPLACED})
TRANSIENT_CODES = frozenset(
    {
        StatusCode.TIMED_OUT,
        StatusCode.CONNECTION_CLOSED,
        StatusCode.UNAVAILABLE_SERVICE,
        StatusCode.RESTART_REQUIRED,
    }
)
TERMINAL_CODES = LOGGED_OUT_CODES | CONFLICT_CODES


@dataclass(frozen=True)
class DisconnectReason:
    kind: DisconnectKind
    code: int | None = None
    detail: str = field(default="", compare=False)

    @property
    def terminal(self) -> bool:
        """Credentials can never be reused; clear them and re-pair."""
        return self.kind in (DisconnectKind.LOGGED_OUT, DisconnectKind.PROTOCOL_CONFLICT)

    @property
    def retryable(self) -> bool:
        return self.kind in (DisconnectKind.TRANSIENT_NETWORK, DisconnectKind.UNKNOWN)

    @classmethod
    def local(cls, detail: str = "closed locally") -> DisconnectReason:
        return cls(DisconnectKind.LOCAL, None, detail)

    def __str__(self) -> str:
        text = self.kind.value
        if self.code is not None:
            text += f"({self.code})"
        if self.detail:
            text += f": {self.detail}"
        return text


def _coerce_code(status_code: int | str | None) -> int | None:
    if status_code is None or isinstance(status_code, bool):
        return None
    if isinstance(status_code, int):
        return int(status_code)
    text = str(status_code).strip()
    return int(text) if text.isdecimal() else None


def classify_disconnect(status_code: int | str | None, detail: str = "") -> DisconnectReason:
    code = _coerce_code(status_code)
    if code in LOGGED_OUT_CODES:
        return DisconnectReason(DisconnectKind.LOGGED_OUT, code, detail)
    if code in CONFLICT_CODES:
        return DisconnectReason(DisconnectKind.PROTOCOL_CONFLICT, code, detail)
    if code in TRANSIENT_CODES:
        return DisconnectReason(DisconnectKind.TRANSIENT_NETWORK, code, detail)
    return DisconnectReason(DisconnectKind.UNKNOWN, code, detail)


def classify_error(error: BaseException) -> DisconnectReason:
    """Classify an exception raised by the transport layer."""
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        return classify_disconnect(status_code, detail=str(error))
    # ConnectionError, socket.gaierror (DNS) and timeouts are all OSError.
    if isinstance(error, (OSError, asyncio.TimeoutError)):
        return DisconnectReason(
            DisconnectKind.TRANSIENT_NETWORK, None, f"{type(error).__name__}: {error}"
        )
    return DisconnectReason(DisconnectKind.UNKNOWN, None, f"{type(error).__name__}: {error}")


def classify_close(event: Closed) -> DisconnectReason:
    if event.status_code is not None:
        return classify_disconnect(event.status_code, detail=event.message)
    if event.error is not None:
        return classify_error(event.error)
    return DisconnectReason(DisconnectKind.UNKNOWN, None, event.message)
