"""
DeviceLink Logging — colorized console output and JSON structured logs.

Features:
- Color formatter for interactive use (auto-detects TTY)
- JSON structured formatter for service hosts (DEVICELINK_LOG_FORMAT=json)
- Quiets noisy third-party loggers
- Configurable via DEVICELINK_LOG_LEVEL, DEVICELINK_LOG_COLOR, DEVICELINK_LOG_FORMAT

Structured log extra fields (pass via logger.info(..., extra={...})):
    state, reason, status_code, attempt, auth_dir
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone


COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[1;31m",  # Bold red
    "RESET": "\033[0m",
    "DIM": "\033[2m",
}


class ColorFormatter(logging.Formatter):
    """Colorized log formatter for terminal output."""

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_color:
            return super().format(record)

        level_color = COLORS.get(record.levelname, "")
        reset = COLORS["RESET"]
        dim = COLORS["DIM"]

        orig_levelname = record.levelname
        orig_name = record.name

        record.levelname = f"{level_color}{record.levelname}{reset}"
        record.name = f"{dim}{record.name}{reset}"

        result = super().format(record)

        record.levelname = orig_levelname
        record.name = orig_name

        return result


# Structured log fields forwarded from logger.info(..., extra={...})
_STRUCTURED_FIELDS = (
    "state",
    "reason",
    "status_code",
    "attempt",
    "auth_dir",
)


class StructuredFormatter(logging.Formatter):
    """JSON log formatter, one object per line.

    Extra fields passed via
    logger.info("msg", extra={"state": "open", "attempt": 2})
    are included at the top level.

    Enable with: DEVICELINK_LOG_FORMAT=json
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def _should_use_color() -> bool:
    env_val = os.getenv("DEVICELINK_LOG_COLOR", "auto").lower()
    if env_val == "true":
        return True
    if env_val == "false":
        return False
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def setup_logging(level_name: str | None = None) -> None:
    """Configure logging for the whole process.

    Call this once at startup. Logs go to stderr so that stdout stays free
    for the pairing instructions printed by the challenge renderers.

    Env vars:
        DEVICELINK_LOG_LEVEL  — DEBUG / INFO / WARNING / ERROR (default: INFO)
        DEVICELINK_LOG_COLOR  — true / false / auto (default: auto)
        DEVICELINK_LOG_FORMAT — text / json (default: text)
    """
    level_name = (level_name or os.getenv("DEVICELINK_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = os.getenv("DEVICELINK_LOG_FORMAT", "text").lower()

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ColorFormatter(use_color=_should_use_color())

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for noisy_logger in ["asyncio", "websockets"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    logging.getLogger("devicelink").debug(
        "Logging configured (level=%s, format=%s)", level_name, log_format
    )
