"""
Pairing Challenge Issuer — surfaces the newest pairing challenge to a sink.

The transport regenerates the challenge periodically until someone scans it,
so only the latest payload is ever valid: a new one supersedes the pending
one instead of queueing behind it. Consumption is implicit — the state
machine calls consume() when the connection opens.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from devicelink.challenge.renderers import ChallengeRenderer
from devicelink.core.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PairingChallenge:
    """A short-lived pairing token as issued by the transport."""

    payload: str
    ttl: float
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def remaining(self) -> float:
        return max(0.0, self.issued_at + self.ttl - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining <= 0.0


class PairingChallengeIssuer:
    def __init__(self, renderer: ChallengeRenderer, default_ttl: float = 60.0):
        self.renderer = renderer
        self.default_ttl = default_ttl
        self._pending: PairingChallenge | None = None
        self.issued_count = 0

    @property
    def pending(self) -> PairingChallenge | None:
        """The current challenge, or None if consumed, expired or never issued."""
        if self._pending is not None and self._pending.expired:
            return None
        return self._pending

    def on_challenge(self, payload: str, ttl: float | None = None) -> PairingChallenge:
        """Render a newly issued challenge, superseding any pending one."""
        current = self.pending
        if current is not None and current.payload == payload:
            # Same token re-delivered; it is already on screen.
            return current

        challenge = PairingChallenge(
            payload=payload, ttl=ttl if ttl is not None else self.default_ttl
        )
        superseded = self._pending is not None
        self._pending = challenge
        self.issued_count += 1
        metrics.inc("pairing.challenges")
        logger.info(
            "Pairing challenge issued (#%d, ttl=%.0fs%s)",
            self.issued_count,
            challenge.ttl,
            ", superseding previous" if superseded else "",
            extra={"state": "pairing"},
        )
        self.renderer.render(payload)
        return challenge

    def consume(self) -> None:
        """Invalidate the pending challenge after a successful open."""
        if self._pending is None:
            return
        self._pending = None
        logger.debug("Pairing challenge consumed")
        self.renderer.clear()
