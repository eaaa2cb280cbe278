"""
DeviceLink Configuration — single source of truth for all settings.

Reads from environment variables (and a local .env) with sensible defaults.
Every component takes its slice of config explicitly, so tests can build
their own instances instead of patching the singleton.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class StoreConfig:
    """Credential store settings."""

    auth_dir: str = "./store/auth"
    secret: str = ""  # Fernet-encrypt fragments at rest when set
    write_retries: int = 3
    write_retry_delay: float = 0.05  # seconds between write attempts

    @classmethod
    def from_env(cls) -> StoreConfig:
        return cls(
            auth_dir=os.getenv("DEVICELINK_AUTH_DIR", "./store/auth"),
            secret=os.getenv("DEVICELINK_STORE_SECRET", ""),
            write_retries=int(os.getenv("DEVICELINK_STORE_WRITE_RETRIES", "3")),
            write_retry_delay=float(
                os.getenv("DEVICELINK_STORE_WRITE_RETRY_DELAY", "0.05")
            ),
        )


@dataclass(frozen=True)
class PairingConfig:
    """Pairing challenge settings."""

    timeout: float = 120.0  # seconds for a human to scan
    settle_delay: float = 1.0  # let trailing credential updates land after open
    challenge_sink: str = "console"  # console | file
    challenge_file: str = "./pairing-challenge.txt"
    challenge_ttl: float = 60.0  # fallback when the transport omits one

    @classmethod
    def from_env(cls) -> PairingConfig:
        return cls(
            timeout=float(os.getenv("DEVICELINK_PAIRING_TIMEOUT", "120")),
            settle_delay=float(os.getenv("DEVICELINK_SETTLE_DELAY", "1.0")),
            challenge_sink=os.getenv("DEVICELINK_CHALLENGE_SINK", "console"),
            challenge_file=os.getenv(
                "DEVICELINK_CHALLENGE_FILE", "./pairing-challenge.txt"
            ),
            challenge_ttl=float(os.getenv("DEVICELINK_CHALLENGE_TTL", "60")),
        )


@dataclass(frozen=True)
class ReconnectConfig:
    """Reconnect policy for retryable disconnects."""

    max_attempts: int = 5
    base_delay: float = 1.0  # seconds, multiplied by `factor` each attempt
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.1  # +/- fraction applied to each delay
    enabled: bool = True

    @classmethod
    def from_env(cls) -> ReconnectConfig:
        return cls(
            max_attempts=int(os.getenv("DEVICELINK_RECONNECT_ATTEMPTS", "5")),
            base_delay=float(os.getenv("DEVICELINK_RECONNECT_DELAY", "1.0")),
            factor=float(os.getenv("DEVICELINK_RECONNECT_FACTOR", "2.0")),
            max_delay=float(os.getenv("DEVICELINK_RECONNECT_MAX_DELAY", "30.0")),
            jitter=float(os.getenv("DEVICELINK_RECONNECT_JITTER", "0.1")),
            enabled=_env_bool("DEVICELINK_RECONNECT", True),
        )


@dataclass(frozen=True)
class TransportConfig:
    """Which transport implementation to build, and how we identify ourselves."""

    provider: str = ""  # "memory" or "package.module:factory"
    browser: tuple[str, str, str] = ("DeviceLink", "Chrome", "1.0.0")

    @classmethod
    def from_env(cls) -> TransportConfig:
        raw_browser = os.getenv("DEVICELINK_BROWSER", "DeviceLink,Chrome,1.0.0")
        parts = [p.strip() for p in raw_browser.split(",")]
        if len(parts) != 3 or not all(parts):
            raise ValueError(
                f"DEVICELINK_BROWSER must be 'name,platform,version', got {raw_browser!r}"
            )
        return cls(
            provider=os.getenv("DEVICELINK_TRANSPORT", ""),
            browser=(parts[0], parts[1], parts[2]),
        )


@dataclass(frozen=True)
class DeviceLinkConfig:
    """Root configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)

    @classmethod
    def from_env(cls) -> DeviceLinkConfig:
        return cls(
            store=StoreConfig.from_env(),
            pairing=PairingConfig.from_env(),
            reconnect=ReconnectConfig.from_env(),
            transport=TransportConfig.from_env(),
        )


# Singleton, import this wherever you need config
config = DeviceLinkConfig.from_env()


def reload_config() -> DeviceLinkConfig:
    """Re-read the environment into the module-level singleton."""
    global config
    config = DeviceLinkConfig.from_env()
    return config
