"""Tests for disconnect classification and the reconnect backoff policy."""

import asyncio
import socket

import pytest

from devicelink.connection.backoff import ReconnectPolicy
from devicelink.connection.state import (
    DisconnectKind,
    DisconnectReason,
    StatusCode,
    classify_close,
    classify_disconnect,
    classify_error,
)
from devicelink.core.config import ReconnectConfig
from devicelink.transport.events import Closed


# ─── classify_disconnect ──────────────────────────────────────


@pytest.mark.parametrize(
    "code,kind",
    [
        (401, DisconnectKind.LOGGED_OUT),
        (403, DisconnectKind.LOGGED_OUT),
        (440, DisconnectKind.PROTOCOL_CONFLICT),
        (408, DisconnectKind.TRANSIENT_NETWORK),
        (428, DisconnectKind.TRANSIENT_NETWORK),
        (503, DisconnectKind.TRANSIENT_NETWORK),
        (515, DisconnectKind.TRANSIENT_NETWORK),
        (411, DisconnectKind.UNKNOWN),
        (500, DisconnectKind.UNKNOWN),
        (999, DisconnectKind.UNKNOWN),
        (None, DisconnectKind.UNKNOWN),
    ],
)
def test_status_code_table(code, kind):
    reason = classify_disconnect(code)
    assert reason.kind is kind
    assert reason.code == code


def test_string_codes_are_accepted():
    assert classify_disconnect("401").kind is DisconnectKind.LOGGED_OUT
    assert classify_disconnect(" 515 ").kind is DisconnectKind.TRANSIENT_NETWORK
    assert classify_disconnect("garbage") == DisconnectReason(DisconnectKind.UNKNOWN, None)


def test_non_decimal_digit_codes_are_unknown():
    assert classify_disconnect("\u00b2") == DisconnectReason(DisconnectKind.UNKNOWN, None)
    assert classify_disconnect("4\u00b2").kind is DisconnectKind.UNKNOWN


def test_int_enum_codes_compare_by_value():
    reason = classify_disconnect(StatusCode.CONNECTION_REPLACED)
    assert reason == DisconnectReason(DisconnectKind.PROTOCOL_CONFLICT, 440)


def test_only_dead_credentials_are_terminal():
    for code in range(100, 1000):
        reason = classify_disconnect(code)
        assert reason.terminal == (code in (401, 403, 440))
        assert reason.retryable != reason.terminal


def test_detail_does_not_affect_equality():
    assert classify_disconnect(401, "a") == classify_disconnect(401, "b")


def test_local_reason_is_neither_terminal_nor_retryable():
    reason = DisconnectReason.local()
    assert not reason.terminal
    assert not reason.retryable
    assert str(reason) == "local: closed locally"


def test_reason_str_includes_code():
    assert str(classify_disconnect(440)) == "protocol_conflict(440)"


# ─── classify_error / classify_close ──────────────────────────


class StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"closed with {status_code}")
        self.status_code = status_code


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("reset by peer"),
        socket.gaierror(-2, "Name or service not known"),
        asyncio.TimeoutError(),
        TimeoutError("handshake timed out"),
    ],
)
def test_network_errors_are_transient(error):
    assert classify_error(error).kind is DisconnectKind.TRANSIENT_NETWORK


def test_error_status_code_wins():
    assert classify_error(StatusError(401)).kind is DisconnectKind.LOGGED_OUT


def test_unrecognised_error_is_unknown():
    reason = classify_error(RuntimeError("boom"))
    assert reason.kind is DisconnectKind.UNKNOWN
    assert reason.code is None


def test_classify_close_prefers_status_code():
    event = Closed(status_code=440, error=ConnectionResetError())
    assert classify_close(event).kind is DisconnectKind.PROTOCOL_CONFLICT


def test_classify_close_falls_back_to_error():
    assert classify_close(Closed(error=OSError("down"))).kind is DisconnectKind.TRANSIENT_NETWORK


def test_classify_close_without_information_is_unknown():
    assert classify_close(Closed()).kind is DisconnectKind.UNKNOWN


# ─── ReconnectPolicy ──────────────────────────────────────────


def test_backoff_grows_exponentially_without_jitter():
    policy = ReconnectPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, jitter=0)
    assert [policy.delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


@pytest.mark.parametrize("rand", [0.0, 0.5, 0.999])
def test_backoff_jitter_stays_within_bounds(rand):
    policy = ReconnectPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, jitter=0.1)
    for n in range(1, 12):
        nominal = min(30.0, 2.0 ** (n - 1))
        delay = policy.delay(n, rand=lambda: rand)
        assert nominal * 0.9 - 1e-9 <= delay <= min(30.0, nominal * 1.1) + 1e-9


def test_attempts_are_bounded():
    policy = ReconnectPolicy(max_attempts=3)
    assert [policy.allows(n) for n in range(0, 5)] == [False, True, True, True, False]


def test_disabled_reconnect_allows_nothing():
    policy = ReconnectPolicy.from_config(ReconnectConfig(enabled=False))
    assert not policy.allows(1)


def test_policy_from_config():
    policy = ReconnectPolicy.from_config(ReconnectConfig(max_attempts=9, base_delay=0.5))
    assert policy.max_attempts == 9
    assert policy.base_delay == 0.5
