"""
Shared fixtures for devicelink tests.

Every test gets its own temp credential directory and a fresh metrics
collector. Transports are in-memory and scripted, so no network is needed.
"""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from devicelink.challenge.issuer import PairingChallengeIssuer
from devicelink.challenge.renderers import ChallengeRenderer
from devicelink.core.metrics import metrics
from devicelink.credentials.crypto import FragmentCipher
from devicelink.credentials.store import CredentialStore
from devicelink.transport.memory import MemoryTransport


# ── Helpers ────────────────────────────────────────────────


class RecordingRenderer(ChallengeRenderer):
    """Challenge sink that remembers what it was asked to show."""

    def __init__(self):
        self.rendered: list[str] = []
        self.cleared = 0

    def render(self, payload: str) -> None:
        self.rendered.append(payload)

    def clear(self) -> None:
        self.cleared += 1


class ScriptedFactory:
    """
    Transport factory handing out one MemoryTransport per connection attempt.

    Each positional argument is the event script for the next attempt; once
    they run out, transports are built with an empty script.
    """

    def __init__(self, *scripts, fail_connect: BaseException | None = None):
        self.scripts = [list(s) for s in scripts]
        self.fail_connect = fail_connect
        self.built: list[MemoryTransport] = []

    def __call__(self) -> MemoryTransport:
        script = self.scripts.pop(0) if self.scripts else []
        transport = MemoryTransport(script, fail_connect=self.fail_connect)
        self.built.append(transport)
        return transport


def make_store(auth_dir: Path, **kwargs) -> CredentialStore:
    kwargs.setdefault("cipher", FragmentCipher())
    kwargs.setdefault("write_retries", 2)
    kwargs.setdefault("write_retry_delay", 0)
    return CredentialStore(auth_dir, **kwargs)


# ── Fixtures ───────────────────────────────────────────────


@pytest.fixture(autouse=True)
def fresh_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def auth_dir(tmp_path: Path) -> Path:
    return tmp_path / "auth"


@pytest_asyncio.fixture
async def store(auth_dir: Path):
    """A started (locked) CredentialStore in a temp directory."""
    s = make_store(auth_dir)
    await s.start()
    yield s
    await s.stop()


@pytest.fixture
def renderer() -> RecordingRenderer:
    return RecordingRenderer()


@pytest.fixture
def issuer(renderer: RecordingRenderer) -> PairingChallengeIssuer:
    return PairingChallengeIssuer(renderer, default_ttl=60.0)
