"""Tests for SessionLifecycleController — pairing, hosting, terminal handling."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from devicelink.connection.backoff import ReconnectPolicy
from devicelink.connection.state import ConnectionState, DisconnectKind
from devicelink.controller import AuthResult, SessionLifecycleController
from devicelink.core.config import PairingConfig, TransportConfig
from devicelink.core.errors import (
    AuthError,
    NotRegisteredError,
    PairingTimeoutError,
    PersistenceError,
    TerminalSessionError,
    TransportError,
)
from devicelink.core.metrics import metrics
from devicelink.credentials.models import CredentialDelta
from devicelink.transport.events import (
    ChallengeIssued,
    Closed,
    CredentialsUpdated,
    Opened,
)

from conftest import ScriptedFactory, make_store

IDENTITY = CredentialDelta(updates={"noise-key": b"n", "identity": b"i"})


def make_controller(store, issuer, factory=None, timeout=5.0, **kwargs):
    return SessionLifecycleController(
        store,
        issuer,
        factory,
        pairing=PairingConfig(timeout=timeout, settle_delay=0),
        policy=ReconnectPolicy(base_delay=0, jitter=0),
        **kwargs,
    )


async def register(store):
    await store.apply_update(CredentialDelta(updates=dict(IDENTITY.updates), registered=True))


async def wait_until_open(controller, timeout=1.0):
    async def poll():
        while controller.machine is None or not controller.machine.is_open:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


# ─── authenticate ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_already_registered_skips_transport(store, issuer):
    await register(store)
    factory = ScriptedFactory([Opened()])
    controller = make_controller(store, issuer, factory)

    assert await controller.authenticate() is AuthResult.ALREADY_REGISTERED
    assert factory.built == []
    assert controller.machine is None


@pytest.mark.asyncio
async def test_already_registered_needs_no_transport_config(store, issuer):
    await register(store)
    controller = make_controller(store, issuer, transport=TransportConfig(provider=""))
    assert await controller.authenticate() is AuthResult.ALREADY_REGISTERED


@pytest.mark.asyncio
async def test_unregistered_without_transport_config_fails_fast(store, issuer):
    controller = make_controller(store, issuer, transport=TransportConfig(provider=""))
    with pytest.raises(ValueError, match="No transport configured"):
        await controller.authenticate()


@pytest.mark.asyncio
async def test_fresh_pairing(store, issuer, renderer):
    trailing = CredentialDelta(updates={"app-state": b"s"})
    factory = ScriptedFactory(
        [ChallengeIssued("qr-1"), CredentialsUpdated(IDENTITY), Opened(), CredentialsUpdated(trailing)]
    )
    controller = make_controller(store, issuer, factory)

    assert await controller.authenticate() is AuthResult.PAIRED

    creds = await store.load()
    assert creds.registered
    assert creds.get("app-state") == b"s"
    assert renderer.rendered == ["qr-1"]
    assert renderer.cleared == 1
    assert controller.machine.state is ConnectionState.CLOSED
    assert controller.machine.reason.kind is DisconnectKind.LOCAL
    assert factory.built[0].closed_gracefully
    assert metrics.counter("pairing.completed") == 1


@pytest.mark.asyncio
async def test_second_authenticate_is_a_noop(store, issuer):
    factory = ScriptedFactory([Opened()])
    controller = make_controller(store, issuer, factory)
    assert await controller.authenticate() is AuthResult.PAIRED
    assert await controller.authenticate() is AuthResult.ALREADY_REGISTERED
    assert len(factory.built) == 1


@pytest.mark.asyncio
async def test_restart_required_during_pairing_reconnects(store, issuer):
    factory = ScriptedFactory(
        [ChallengeIssued("qr"), CredentialsUpdated(IDENTITY), Closed(status_code=515)],
        [Opened()],
    )
    controller = make_controller(store, issuer, factory)

    assert await controller.authenticate() is AuthResult.PAIRED
    assert len(factory.built) == 2
    assert factory.built[1].connected_with.get("noise-key") == b"n"


@pytest.mark.asyncio
async def test_pairing_timeout_clears_partial_material(store, issuer):
    factory = ScriptedFactory([ChallengeIssued("qr"), CredentialsUpdated(IDENTITY)])
    controller = make_controller(store, issuer, factory, timeout=0.05)

    with pytest.raises(PairingTimeoutError) as exc_info:
        await controller.authenticate()

    assert "new pairing challenge" in exc_info.value.hint
    assert (await store.load()).is_empty
    assert factory.built[0].closed_gracefully
    assert controller.machine.reason.kind is DisconnectKind.LOCAL
    assert metrics.counter("pairing.timeouts") == 1


@pytest.mark.asyncio
async def test_logged_out_during_pairing_clears_and_raises(store, issuer):
    factory = ScriptedFactory(
        [ChallengeIssued("qr"), CredentialsUpdated(IDENTITY), Closed(status_code=401)]
    )
    controller = make_controller(store, issuer, factory)

    with pytest.raises(TerminalSessionError) as exc_info:
        await controller.authenticate()

    assert exc_info.value.reason.kind is DisconnectKind.LOGGED_OUT
    assert (await store.load()).is_empty


@pytest.mark.asyncio
async def test_shutdown_during_pairing_interrupts(store, issuer, renderer):
    factory = ScriptedFactory([ChallengeIssued("qr"), CredentialsUpdated(IDENTITY)])
    controller = make_controller(store, issuer, factory)

    task = asyncio.create_task(controller.authenticate())
    while not renderer.rendered:
        await asyncio.sleep(0.001)
    await controller.shutdown()

    with pytest.raises(AuthError) as exc_info:
        await asyncio.wait_for(task, 1)
    assert not isinstance(exc_info.value, PairingTimeoutError)
    assert (await store.load()).is_empty


@pytest.mark.asyncio
async def test_reconnects_exhausted_during_pairing_clears_partial_material(store, issuer):
    dropped = [ChallengeIssued("qr"), CredentialsUpdated(IDENTITY), Closed(status_code=408)]
    factory = ScriptedFactory(dropped, dropped)
    controller = SessionLifecycleController(
        store,
        issuer,
        factory,
        pairing=PairingConfig(timeout=5.0, settle_delay=0),
        policy=ReconnectPolicy(max_attempts=1, base_delay=0, jitter=0),
    )

    with pytest.raises(AuthError) as exc_info:
        await controller.authenticate()

    assert isinstance(exc_info.value.__cause__, TransportError)
    assert "network connectivity" in exc_info.value.hint
    assert len(factory.built) == 2
    assert (await store.load()).is_empty


# ─── run ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_requires_registration(store, issuer):
    controller = make_controller(store, issuer, ScriptedFactory([Opened()]))
    with pytest.raises(NotRegisteredError) as exc_info:
        await controller.run()
    assert "devicelink auth" in exc_info.value.hint


@pytest.mark.asyncio
async def test_run_until_shutdown_keeps_credentials(store, issuer):
    await register(store)
    factory = ScriptedFactory([Opened()])
    controller = make_controller(store, issuer, factory)

    task = asyncio.create_task(controller.run())
    await wait_until_open(controller)
    await controller.shutdown()
    reason = await asyncio.wait_for(task, 1)

    assert reason.kind is DisconnectKind.LOCAL
    assert (await store.load()).registered
    assert factory.built[0].closed_gracefully


@pytest.mark.asyncio
@pytest.mark.parametrize("code,kind", [(401, DisconnectKind.LOGGED_OUT), (440, DisconnectKind.PROTOCOL_CONFLICT)])
async def test_terminal_disconnect_clears_credentials(store, issuer, code, kind):
    await register(store)
    factory = ScriptedFactory([Opened(), Closed(status_code=code)])
    controller = make_controller(store, issuer, factory)

    with pytest.raises(TerminalSessionError) as exc_info:
        await controller.run()

    assert exc_info.value.reason.kind is kind
    assert (await store.load()).is_empty
    assert len(factory.built) == 1


@pytest.mark.asyncio
async def test_transient_disconnect_keeps_credentials(store, issuer):
    await register(store)
    factory = ScriptedFactory([Opened(), Closed(status_code=408)], [Opened()])
    controller = make_controller(store, issuer, factory)

    task = asyncio.create_task(controller.run())
    while len(factory.built) < 2 or not controller.machine.is_open:
        await asyncio.sleep(0.001)
    await controller.shutdown()
    await asyncio.wait_for(task, 1)

    creds = await store.load()
    assert creds.registered
    assert creds.get("noise-key") == b"n"


@pytest.mark.asyncio
async def test_persistence_failure_keeps_credentials(store, issuer, monkeypatch):
    await register(store)
    factory = ScriptedFactory([Opened(), CredentialsUpdated(CredentialDelta(updates={"k": b"v"}))])
    controller = make_controller(store, issuer, factory)
    monkeypatch.setattr(store, "apply_update", AsyncMock(side_effect=PersistenceError("disk full")))

    with pytest.raises(PersistenceError):
        await controller.run()

    assert (await store.load()).registered


# ─── Operator commands ────────────────────────────────────────


@pytest.mark.asyncio
async def test_reset_forgets_device(store, issuer):
    await register(store)
    controller = make_controller(store, issuer)
    await controller.reset()
    assert (await store.load()).is_empty


@pytest.mark.asyncio
async def test_status(store, issuer):
    await register(store)
    controller = make_controller(store, issuer)
    status = await controller.status()

    assert status["registered"] is True
    assert status["version"] == 1
    assert status["fragments"] == ["identity", "noise-key", "registered"]
    assert status["connection"] is None
    assert "counters" in status["metrics"]


@pytest.mark.asyncio
async def test_context_manager_holds_store_lock(auth_dir, issuer):
    store = make_store(auth_dir)
    controller = make_controller(store, issuer)
    async with controller:
        assert store.lock_path.exists()
    assert not store.lock_path.exists()
