"""
Transport Events — what a transport reports about the connection.

A transport turns whatever its protocol library emits into this small,
closed set of events and hands them, in order, to the state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from devicelink.credentials.models import CredentialDelta


@dataclass(frozen=True)
class ChallengeIssued:
    """The remote issued (or rotated) a pairing challenge."""

    payload: str
    ttl: float | None = None


@dataclass(frozen=True)
class Opened:
    """The connection is authenticated and usable."""


@dataclass(frozen=True)
class CredentialsUpdated:
    """Session material changed and must be persisted."""

    delta: CredentialDelta


@dataclass(frozen=True)
class Closed:
    """The connection is gone.

    `status_code` is the remote-reported code when there is one; `error` is
    the underlying exception when the close came from the network layer.
    """

    status_code: int | None = None
    error: BaseException | None = None
    message: str = ""


TransportEvent = Union[ChallengeIssued, Opened, CredentialsUpdated, Closed]
