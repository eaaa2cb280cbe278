"""Bounded exponential backoff for reconnecting after retryable disconnects."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable

from devicelink.core.config import ReconnectConfig


@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, cfg: ReconnectConfig) -> ReconnectPolicy:
        return cls(
            max_attempts=cfg.max_attempts if cfg.enabled else 0,
            base_delay=cfg.base_delay,
            factor=cfg.factor,
            max_delay=cfg.max_delay,
            jitter=cfg.jitter,
        )

    def allows(self, attempt: int) -> bool:
        """Whether reconnect number `attempt` (1-based) may happen."""
        return 1 <= attempt <= self.max_attempts

    def delay(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Seconds to wait before reconnect number `attempt` (1-based)."""
        raw = self.base_delay * (self.factor ** max(0, attempt - 1))
        capped = min(self.max_delay, raw)
        if self.jitter <= 0:
            return capped
        spread = capped * self.jitter
        return min(self.max_delay, max(0.0, capped - spread + 2 * spread * rand()))
