"""
Session Lifecycle Controller — the top-level decisions of a run.

Decides whether pairing is needed, races the pairing window against the
connection reaching OPEN, and maps the machine's disconnect reasons onto
what happens to the persisted credentials:

    terminal (logged out / replaced)  -> clear credentials, raise
    pairing timeout                   -> clear unregistered material, raise
    persistence failure               -> raise, credentials untouched
    local close                       -> return normally

Usage:
    controller = SessionLifecycleController.from_config()
    async with controller:
        result = await controller.authenticate()
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable

import devicelink.core.config as config_module
from devicelink.challenge.issuer import PairingChallengeIssuer
from devicelink.challenge.renderers import get_challenge_renderer
from devicelink.connection.backoff import ReconnectPolicy
from devicelink.connection.machine import ConnectionStateMachine
from devicelink.connection.state import DisconnectKind, DisconnectReason
from devicelink.core.config import DeviceLinkConfig, PairingConfig, TransportConfig
from devicelink.core.errors import (
    AuthError,
    NotRegisteredError,
    PairingTimeoutError,
    TerminalSessionError,
    TransportError,
)
from devicelink.core.metrics import metrics
from devicelink.credentials.crypto import FragmentCipher
from devicelink.credentials.store import CredentialStore
from devicelink.transport.registry import TransportFactory, get_transport_factory

logger = logging.getLogger(__name__)


class AuthResult(str, Enum):
    ALREADY_REGISTERED = "already_registered"
    PAIRED = "paired"


class SessionLifecycleController:
    def __init__(
        self,
        store: CredentialStore,
        issuer: PairingChallengeIssuer,
        transport_factory: TransportFactory | None = None,
        *,
        pairing: PairingConfig | None = None,
        policy: ReconnectPolicy | None = None,
        transport: TransportConfig | None = None,
    ):
        self.store = store
        self.issuer = issuer
        self.pairing = pairing or config_module.config.pairing
        self.policy = policy or ReconnectPolicy.from_config(config_module.config.reconnect)
        self._transport_factory = transport_factory
        self._transport_config = transport
        self._machine: ConnectionStateMachine | None = None
        self._shutting_down = False

    @classmethod
    def from_config(
        cls,
        cfg: DeviceLinkConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> SessionLifecycleController:
        """Wire every collaborator from a DeviceLinkConfig (default: the singleton)."""
        cfg = cfg or config_module.config
        store = CredentialStore(
            cfg.store.auth_dir,
            cipher=FragmentCipher.from_secret(cfg.store.secret),
            write_retries=cfg.store.write_retries,
            write_retry_delay=cfg.store.write_retry_delay,
        )
        issuer = PairingChallengeIssuer(
            get_challenge_renderer(cfg.pairing),
            default_ttl=cfg.pairing.challenge_ttl,
        )
        return cls(
            store,
            issuer,
            transport_factory,
            pairing=cfg.pairing,
            policy=ReconnectPolicy.from_config(cfg.reconnect),
            transport=cfg.transport,
        )

    @property
    def machine(self) -> ConnectionStateMachine | None:
        return self._machine

    async def __aenter__(self) -> SessionLifecycleController:
        await self.store.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
        await self.store.stop()

    def _new_machine(self) -> ConnectionStateMachine:
        factory = self._transport_factory or get_transport_factory(self._transport_config)
        machine = ConnectionStateMachine(self.store, self.issuer, factory, self.policy)
        self._machine = machine
        return machine

    # ─── Pairing ─────────────────────────────────────────────────

    async def authenticate(self, timeout: float | None = None) -> AuthResult:
        """
        Make sure this device is registered, pairing it if necessary.

        Already registered stores return immediately without touching the
        network. Otherwise a transport is connected and challenges are
        rendered until someone links the device or `timeout` elapses.
        """
        if await self.store.is_registered():
            logger.info(
                "Already registered, nothing to do",
                extra={"auth_dir": str(self.store.auth_dir)},
            )
            return AuthResult.ALREADY_REGISTERED

        timeout = self.pairing.timeout if timeout is None else timeout
        machine = self._new_machine()
        if self._shutting_down:
            await machine.close()

        logger.info("Pairing started (window=%.0fs)", timeout, extra={"state": "pairing"})
        run_task = asyncio.create_task(machine.run_session())
        opened_task = asyncio.create_task(machine.wait_opened())
        try:
            done, _ = await asyncio.wait(
                {run_task, opened_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if opened_task in done:
                # Let trailing credential updates land before we hang up.
                await asyncio.sleep(self.pairing.settle_delay)
                await machine.close()
                await self._finish(run_task)
                metrics.inc("pairing.completed")
                logger.info("Device paired", extra={"auth_dir": str(self.store.auth_dir)})
                return AuthResult.PAIRED

            if run_task in done:
                try:
                    reason = await self._finish(run_task)
                except TransportError as e:
                    await self._discard_unregistered()
                    raise AuthError(
                        f"Pairing failed before the device was linked: {e}", hint=e.hint
                    ) from e
                await self._discard_unregistered()
                raise AuthError(
                    f"Pairing interrupted before the device was linked ({reason})",
                    hint="Re-run `devicelink auth` to start pairing again.",
                )

            logger.warning("No pairing within %.0fs, giving up", timeout)
            metrics.inc("pairing.timeouts")
            await machine.close()
            await self._finish(run_task)
            await self._discard_unregistered()
            raise PairingTimeoutError(f"Pairing was not completed within {timeout:.0f}s")
        finally:
            opened_task.cancel()
            try:
                await opened_task
            except asyncio.CancelledError:
                pass
            if not run_task.done():
                run_task.cancel()
                try:
                    await run_task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug("Session task ended with %s during cleanup", e)

    async def _finish(self, run_task: Awaitable[DisconnectReason]) -> DisconnectReason:
        """Collect the session task's outcome, clearing credentials on terminal reasons."""
        try:
            return await run_task
        except TerminalSessionError as e:
            await self._on_terminal(e.reason)
            raise

    async def _on_terminal(self, reason: DisconnectReason) -> None:
        await self.store.clear()
        if reason.kind is DisconnectKind.PROTOCOL_CONFLICT:
            logger.error(
                "Session replaced by another connection; credentials cleared",
                extra={"reason": reason.kind.value, "status_code": reason.code},
            )
        else:
            logger.error(
                "Logged out by the remote; credentials cleared",
                extra={"reason": reason.kind.value, "status_code": reason.code},
            )

    async def _discard_unregistered(self) -> None:
        credentials = await self.store.load()
        if not credentials.is_empty and not credentials.registered:
            logger.info("Discarding incomplete pairing material")
            await self.store.clear()

    # ─── Hosting ─────────────────────────────────────────────────

    async def run(self) -> DisconnectReason:
        """
        Keep a registered session connected until shutdown().

        Retryable disconnects reconnect with backoff. Returns the LOCAL reason
        after a graceful shutdown; terminal disconnects clear credentials and
        raise TerminalSessionError.
        """
        if not await self.store.is_registered():
            raise NotRegisteredError(
                f"No registered session in {self.store.auth_dir}"
            )
        machine = self._new_machine()
        if self._shutting_down:
            await machine.close()
        return await self._finish(machine.run_session())

    async def shutdown(self) -> None:
        """Gracefully close the live connection. Credentials are kept."""
        self._shutting_down = True
        if self._machine is not None:
            await self._machine.close()

    # ─── Operator commands ───────────────────────────────────────

    async def reset(self) -> None:
        """Forget this device: delete all persisted credentials."""
        await self.store.clear()
        logger.info(
            "Credentials reset; run `devicelink auth` to pair again",
            extra={"auth_dir": str(self.store.auth_dir)},
        )

    async def status(self) -> dict:
        credentials = await self.store.load()
        metrics.gauge_set("credentials.version", credentials.version)
        return {
            "auth_dir": str(self.store.auth_dir.resolve()),
            "registered": credentials.registered,
            "version": credentials.version,
            "fragments": credentials.names(),
            "connection": self._machine.snapshot() if self._machine else None,
            "metrics": metrics.snapshot(),
        }
