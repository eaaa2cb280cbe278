"""
Challenge sinks — where a pairing challenge is shown to the human.

Rendering the payload as a scannable image is left to external tooling; the
sinks here print it or drop it into a file that such tooling can pick up.

Add a new sink? Implement render()/clear() and add an elif to
get_challenge_renderer().
"""

from __future__ import annotations

import logging
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TextIO

import devicelink.core.config as config_module
from devicelink.core.config import PairingConfig

logger = logging.getLogger(__name__)

LINKING_STEPS = (
    "Steps:",
    "  1. Open the messaging app on your phone",
    "  2. Go to Settings > Linked Devices > Link a Device",
    "  3. Scan the pairing challenge",
)


class ChallengeRenderer(ABC):
    """Sink for pairing challenges."""

    @abstractmethod
    def render(self, payload: str) -> None:
        """Show `payload`. Called again with a new payload when it rotates."""

    def clear(self) -> None:
        """Remove whatever render() left behind. Called once pairing succeeds."""


class ConsoleChallengeRenderer(ChallengeRenderer):
    def __init__(self, stream: TextIO | None = None):
        self._stream = stream

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def render(self, payload: str) -> None:
        out = self.stream
        print("Pairing challenge (render it as a QR code and scan it):", file=out)
        print(f"  {payload}\n", file=out)
        for line in LINKING_STEPS:
            print(line, file=out)
        print("\nWaiting for you to scan...\n", file=out, flush=True)


class FileChallengeRenderer(ChallengeRenderer):
    """Writes the payload to a file and deletes it once the device is linked."""

    def __init__(self, path: Path | str, stream: TextIO | None = None):
        self.path = Path(path)
        self._stream = stream
        self._announced = False

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def render(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)

        out = self.stream
        if not self._announced:
            print("Pairing challenge saved! Open this file to scan:", file=out)
            print(f"  {self.path.resolve()}\n", file=out)
            for line in LINKING_STEPS:
                print(line, file=out)
            print("\nWaiting for you to scan...\n", file=out, flush=True)
            self._announced = True
        else:
            print("Pairing challenge refreshed in the same file.", file=out, flush=True)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Pairing challenge file cleaned up (%s)", self.path)


def get_challenge_renderer(pairing: PairingConfig | None = None) -> ChallengeRenderer:
    pairing = pairing or config_module.config.pairing
    sink = pairing.challenge_sink.lower()
    if sink == "console":
        return ConsoleChallengeRenderer()
    elif sink == "file":
        return FileChallengeRenderer(pairing.challenge_file)
    raise ValueError(f"Unknown challenge sink: {sink}")
