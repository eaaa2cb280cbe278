"""
devicelink command line.

    devicelink auth     pair this device (no-op when already registered)
    devicelink run      keep a registered session connected until Ctrl-C
    devicelink reset    forget this device (delete stored credentials)
    devicelink status   show what is stored and what the last run did

Exit codes: 0 on success / already registered / clean shutdown, 1 on any
failure. Failures print the error and the next step to take.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys
from typing import TextIO

import devicelink.core.config as config_module
from devicelink.controller import AuthResult, SessionLifecycleController
from devicelink.core.config import DeviceLinkConfig
from devicelink.core.errors import DeviceLinkError
from devicelink.core.logging import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devicelink", description="Linked-device session lifecycle"
    )
    parser.add_argument(
        "--auth-dir", default=None, help="Credential directory (default: DEVICELINK_AUTH_DIR)"
    )
    parser.add_argument("--log-level", default=None, help="DEBUG / INFO / WARNING / ERROR")
    subparsers = parser.add_subparsers(dest="command", required=True)

    auth_parser = subparsers.add_parser("auth", help="Pair this device if it is not registered")
    auth_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the pairing challenge to be scanned",
    )
    subparsers.add_parser("run", help="Keep the registered session connected")
    subparsers.add_parser("reset", help="Delete stored credentials")
    subparsers.add_parser("status", help="Show stored credential state as JSON")
    return parser


def _apply_overrides(cfg: DeviceLinkConfig, args: argparse.Namespace) -> DeviceLinkConfig:
    if args.auth_dir:
        cfg = dataclasses.replace(
            cfg, store=dataclasses.replace(cfg.store, auth_dir=args.auth_dir)
        )
    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        cfg = dataclasses.replace(
            cfg, pairing=dataclasses.replace(cfg.pairing, timeout=timeout)
        )
    return cfg


def _install_signal_handlers(
    controller: SessionLifecycleController,
) -> set[asyncio.Task]:
    """Close the connection on SIGTERM/SIGINT. Returns the live shutdown tasks."""
    loop = asyncio.get_running_loop()
    tasks: set[asyncio.Task] = set()

    def handle(sig: signal.Signals) -> None:
        task = loop.create_task(_on_signal(controller, sig))
        tasks.add(task)
        task.add_done_callback(_signal_task_done(tasks))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle, sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            logger.debug("Signal handlers unavailable, relying on KeyboardInterrupt")
            break
    return tasks


def _signal_task_done(tasks: set[asyncio.Task]):
    def done(task: asyncio.Task) -> None:
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Shutdown after signal failed: %s", task.exception())

    return done


async def _on_signal(controller: SessionLifecycleController, sig: signal.Signals) -> None:
    logger.info("Received %s, closing connection", sig.name)
    await controller.shutdown()


async def _auth(controller: SessionLifecycleController, output: TextIO) -> int:
    result = await controller.authenticate()
    auth_dir = controller.store.auth_dir
    if result is AuthResult.ALREADY_REGISTERED:
        output.write(
            "Already authenticated.\n"
            f"To re-authenticate, run `devicelink reset` (or delete {auth_dir}) and run again.\n"
        )
    else:
        output.write(f"Successfully authenticated. Credentials saved to {auth_dir}/\n")
    return 0


async def _run(controller: SessionLifecycleController, output: TextIO) -> int:
    reason = await controller.run()
    output.write(f"Session closed ({reason}).\n")
    return 0


async def _reset(controller: SessionLifecycleController, output: TextIO) -> int:
    await controller.reset()
    output.write(f"Credentials removed from {controller.store.auth_dir}.\n")
    return 0


async def _status(controller: SessionLifecycleController, output: TextIO) -> int:
    output.write(json.dumps(await controller.status(), indent=2, default=str) + "\n")
    return 0


_HANDLERS = {"auth": _auth, "run": _run, "reset": _reset, "status": _status}


async def _dispatch(
    args: argparse.Namespace, cfg: DeviceLinkConfig, output: TextIO
) -> int:
    controller = SessionLifecycleController.from_config(cfg)
    handler = _HANDLERS[args.command]

    # status is read-only and must work while another process holds the lock.
    if args.command == "status":
        return await handler(controller, output)

    async with controller:
        shutdown_tasks = _install_signal_handlers(controller)
        try:
            return await handler(controller, output)
        finally:
            if shutdown_tasks:
                await asyncio.gather(*shutdown_tasks, return_exceptions=True)


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the `devicelink` command."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    output = output or sys.stdout

    try:
        cfg = _apply_overrides(config_module.config, args)
        return asyncio.run(_dispatch(args, cfg, output))
    except DeviceLinkError as e:
        logger.error("%s", e)
        sys.stderr.write(f"Next step: {e.hint}\n")
        return 1
    except ValueError as e:
        # Bad configuration (unknown transport, malformed env values, ...)
        logger.error("Configuration error: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
