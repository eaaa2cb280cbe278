"""
Connection State Machine — owns the one logical connection to the remote.

Transitions:

    IDLE    --start-->            PAIRING
    PAIRING --challenge-->        PAIRING   (rendered by the issuer)
    PAIRING --credentials-->      PAIRING   (persisted)
    PAIRING --opened-->           OPEN      (registered marker persisted)
    OPEN    --credentials-->      OPEN      (persisted)
    PAIRING|OPEN --closed-->      CLOSED(reason)
    PAIRING|OPEN --close()-->     CLOSING --> CLOSED(local)
    CLOSED  --reset-->            IDLE

Each connection attempt gets a fresh transport from the factory. Events are
handled one at a time in arrival order; a handler finishes (including the
durable credential write) before the next event is read.

Usage:
    machine = ConnectionStateMachine(store, issuer, transport_factory)
    reason = await machine.run_session()   # reconnects until local close
"""

from __future__ import annotations

import asyncio
import logging

from devicelink.challenge.issuer import PairingChallengeIssuer
from devicelink.connection.backoff import ReconnectPolicy
from devicelink.connection.state import (
    ConnectionState,
    DisconnectKind,
    DisconnectReason,
    classify_close,
    classify_error,
)
from devicelink.core.errors import (
    InvalidTransitionError,
    TerminalSessionError,
    TransportError,
)
from devicelink.core.metrics import metrics
from devicelink.credentials.store import CredentialStore
from devicelink.transport.base import Transport
from devicelink.transport.events import (
    ChallengeIssued,
    Closed,
    CredentialsUpdated,
    Opened,
    TransportEvent,
)
from devicelink.transport.registry import TransportFactory

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.PAIRING}),
    ConnectionState.PAIRING: frozenset(
        {
            ConnectionState.PAIRING,
            ConnectionState.OPEN,
            ConnectionState.CLOSING,
            ConnectionState.CLOSED,
        }
    ),
    ConnectionState.OPEN: frozenset(
        {ConnectionState.OPEN, ConnectionState.CLOSING, ConnectionState.CLOSED}
    ),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.IDLE}),
}

_LIVE_STATES = (ConnectionState.PAIRING, ConnectionState.OPEN)


class ConnectionStateMachine:
    def __init__(
        self,
        store: CredentialStore,
        issuer: PairingChallengeIssuer,
        transport_factory: TransportFactory,
        policy: ReconnectPolicy | None = None,
    ):
        self.store = store
        self.issuer = issuer
        self.transport_factory = transport_factory
        self.policy = policy or ReconnectPolicy()

        self.state = ConnectionState.IDLE
        self.reason: DisconnectReason | None = None
        self.attempts = 0  # connection attempts made by this machine
        self._transport: Transport | None = None
        self._local_close = False
        self._attempt_opened = False
        self._opened = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._draining = False  # a consumer will finish CLOSING -> CLOSED

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def ever_opened(self) -> bool:
        return self._opened.is_set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    async def wait_opened(self) -> None:
        """Suspend until the connection has reached OPEN at least once."""
        await self._opened.wait()

    # ─── Transitions ─────────────────────────────────────────────

    def _transition(
        self, new: ConnectionState, reason: DisconnectReason | None = None
    ) -> None:
        old = self.state
        if new not in _TRANSITIONS[old]:
            raise InvalidTransitionError(
                f"Illegal connection transition {old.value} -> {new.value}"
            )
        self.state = new
        self.reason = reason if new is ConnectionState.CLOSED else None
        if old is new:
            return

        metrics.inc("connection.transitions", labels={"to": new.value})
        extra = {"state": new.value}
        if reason is not None:
            extra["reason"] = reason.kind.value
            extra["status_code"] = reason.code
        if new is ConnectionState.CLOSED and reason is not None:
            log = logger.warning if reason.kind is not DisconnectKind.LOCAL else logger.info
            log("Connection closed (%s)", reason, extra=extra)
        else:
            logger.info("Connection %s -> %s", old.value, new.value, extra=extra)

    def reset(self) -> None:
        """CLOSED -> IDLE, ready for a new attempt."""
        self._transition(ConnectionState.IDLE)
        self._transport = None
        self._local_close = False
        self._attempt_opened = False

    async def start(self) -> None:
        """IDLE -> PAIRING: build a transport and connect with persisted credentials."""
        if self._stop_requested.is_set():
            raise InvalidTransitionError("Machine is stopping; refusing to connect")
        self._transition(ConnectionState.PAIRING)
        self.attempts += 1

        credentials = await self.store.load()
        if self.state is not ConnectionState.PAIRING:
            # close() arrived while we were reading credentials.
            return
        transport = self.transport_factory()
        self._transport = transport
        logger.info(
            "Connecting via %s (%s credentials, attempt %d)",
            transport.name,
            "registered" if credentials.registered else "pairing with new",
            self.attempts,
            extra={"state": self.state.value, "attempt": self.attempts},
        )
        try:
            await transport.connect(credentials)
        except Exception as e:
            reason = classify_error(e)
            logger.warning("Transport connect failed: %s", e)
            self._mark_closed(reason)
            await self._release_transport()

    # ─── Event handling ──────────────────────────────────────────

    async def handle(self, event: TransportEvent) -> None:
        """Apply one transport event. Events for a closed attempt are ignored."""
        if self.state in (ConnectionState.CLOSED, ConnectionState.IDLE):
            logger.debug(
                "Ignoring %s in state %s", type(event).__name__, self.state.value
            )
            return

        if isinstance(event, ChallengeIssued):
            await self._on_challenge(event)
        elif isinstance(event, Opened):
            await self._on_opened()
        elif isinstance(event, CredentialsUpdated):
            await self._on_credentials(event)
        elif isinstance(event, Closed):
            self._on_closed(event)
        else:
            logger.warning("Unknown transport event: %r", event)

    async def _on_challenge(self, event: ChallengeIssued) -> None:
        if self.state is not ConnectionState.PAIRING:
            logger.warning("Pairing challenge received while %s, ignoring", self.state.value)
            return
        self._transition(ConnectionState.PAIRING)
        self.issuer.on_challenge(event.payload, event.ttl)

    async def _on_opened(self) -> None:
        if self.state is ConnectionState.OPEN:
            return
        if self.state is not ConnectionState.PAIRING:
            logger.debug("Open received while %s, ignoring", self.state.value)
            return
        credentials = await self.store.load()
        if not credentials.registered:
            await self.store.mark_registered()
            logger.info("Pairing complete, device registered")
        if self.state is not ConnectionState.PAIRING:
            # close() won the race while the marker was being written.
            return
        self._transition(ConnectionState.OPEN)
        self.issuer.consume()
        self._attempt_opened = True
        self._opened.set()
        metrics.inc("connection.opens")

    async def _on_credentials(self, event: CredentialsUpdated) -> None:
        # Updates queued before a local close are still real session material.
        if self.state not in (*_LIVE_STATES, ConnectionState.CLOSING):
            logger.debug("Credential update while %s, ignoring", self.state.value)
            return
        await self.store.apply_update(event.delta)

    def _on_closed(self, event: Closed) -> None:
        if self._local_close:
            reason = DisconnectReason.local()
        else:
            reason = classify_close(event)
        self._mark_closed(reason)

    def _mark_closed(self, reason: DisconnectReason) -> None:
        # State flips before anyone learns the reason, so send() is already refused.
        self._transition(ConnectionState.CLOSED, reason)
        metrics.inc("connection.disconnects", labels={"kind": reason.kind.value})
        if reason.kind is DisconnectKind.UNKNOWN:
            logger.warning(
                "Unrecognized disconnect code %s, will retry (please report if this recurs)",
                reason.code,
                extra={"status_code": reason.code},
            )

    async def pump(self) -> DisconnectReason:
        """
        Consume the current transport's events until the attempt is over.

        Returns the classified reason. Errors raised while handling an event
        (e.g. PersistenceError) close the transport and propagate.
        """
        transport = self._transport
        if transport is None:
            if self.state in (ConnectionState.PAIRING, ConnectionState.CLOSING):
                self._mark_closed(DisconnectReason.local())
            assert self.reason is not None, "pump() before start()"
            return self.reason
        if self.state is ConnectionState.CLOSED:
            await self._release_transport()
            assert self.reason is not None
            return self.reason

        self._draining = True
        try:
            await self._drain(transport)
        finally:
            self._draining = False

        if self.state is not ConnectionState.CLOSED:
            if self._local_close:
                self._mark_closed(DisconnectReason.local())
            else:
                self._mark_closed(
                    DisconnectReason(
                        DisconnectKind.TRANSIENT_NETWORK, None, "event stream ended"
                    )
                )

        await self._release_transport()
        assert self.reason is not None
        return self.reason

    async def _drain(self, transport: Transport) -> None:
        events = transport.events()
        while self.state is not ConnectionState.CLOSED:
            try:
                event = await events.__anext__()
            except StopAsyncIteration:
                return
            except Exception as e:
                logger.warning("Transport event stream failed: %s", e)
                self._mark_closed(classify_error(e))
                return

            try:
                await self.handle(event)
            except Exception as e:
                logger.error("Aborting connection after handler failure: %s", e)
                await self._abort(f"{type(e).__name__}: {e}")
                raise

    # ─── Outbound ────────────────────────────────────────────────

    async def send(self, payload: bytes) -> None:
        """Send on the open connection. Refused in every other state."""
        if self.state is not ConnectionState.OPEN or self._transport is None:
            raise TransportError(f"Connection is not open (state={self.state.value})")
        await self._transport.send(payload)

    async def close(self) -> None:
        """
        Graceful local close. Credentials are untouched.

        Also stops run_session() from reconnecting, including while it is
        waiting out a backoff delay.
        """
        self._stop_requested.set()
        if self.state not in _LIVE_STATES:
            return
        self._local_close = True
        self._transition(ConnectionState.CLOSING)
        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.warning("Error during graceful close: %s", e)
        # pump() finishes the transition when it is running; this covers the
        # case where nobody is consuming events.
        await asyncio.sleep(0)
        if self.state is ConnectionState.CLOSING and not self._draining:
            self._mark_closed(DisconnectReason.local())

    async def _abort(self, detail: str) -> None:
        if self.state in _LIVE_STATES:
            self._local_close = True
            self._transition(ConnectionState.CLOSING)
        if self.state is ConnectionState.CLOSING:
            self._mark_closed(DisconnectReason.local(f"aborted: {detail}"))
        await self._release_transport()

    async def _release_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as e:
            logger.debug("Ignoring error while releasing transport: %s", e)

    # ─── Reconnect loop ──────────────────────────────────────────

    async def run_session(self) -> DisconnectReason:
        """
        Connect, consume events, and reconnect after retryable disconnects.

        Returns the LOCAL reason after close(). Raises TerminalSessionError on
        a terminal disconnect and TransportError once reconnects are exhausted.
        """
        retries = 0
        while True:
            if self._stop_requested.is_set():
                return self.reason or DisconnectReason.local()
            if self.state is ConnectionState.CLOSED:
                self.reset()

            # pump() will run right after start(); let close() leave CLOSING to it.
            self._draining = True
            try:
                await self.start()
                reason = await self.pump()
            finally:
                self._draining = False

            if self._attempt_opened:
                retries = 0
            if reason.kind is DisconnectKind.LOCAL:
                return reason
            if reason.terminal:
                raise TerminalSessionError(reason)

            retries += 1
            if not self.policy.allows(retries):
                metrics.inc("connection.reconnects_exhausted")
                raise TransportError(
                    f"Giving up after {retries - 1} reconnect attempt(s); last disconnect: {reason}"
                )

            delay = self.policy.delay(retries)
            metrics.inc("connection.reconnects")
            logger.info(
                "Reconnecting in %.1fs (retry %d/%d, reason=%s)",
                delay,
                retries,
                self.policy.max_attempts,
                reason,
                extra={"attempt": retries, "reason": reason.kind.value},
            )
            if await self._wait_or_stop(delay):
                return DisconnectReason.local("stopped during backoff")

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for `delay`; True if close() was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "reason": str(self.reason) if self.reason else None,
            "attempts": self.attempts,
            "ever_opened": self.ever_opened,
            "transport": self._transport.name if self._transport else None,
        }

    def __repr__(self) -> str:
        return f"<ConnectionStateMachine(state={self.state.value})>"
