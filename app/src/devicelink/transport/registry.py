"""
Transport Registry — build the configured transport factory.

DEVICELINK_TRANSPORT is either "memory" or an import path of the form
"package.module:callable". The callable is invoked once per connection
attempt with `browser=(name, platform, version)` and must return a
Transport.
"""

from __future__ import annotations

import importlib
from typing import Callable

import devicelink.core.config as config_module
from devicelink.core.config import TransportConfig
from devicelink.transport.base import Transport

TransportFactory = Callable[[], Transport]


def get_transport_factory(transport: TransportConfig | None = None) -> TransportFactory:
    cfg = transport or config_module.config.transport
    provider = cfg.provider.strip()

    if not provider:
        raise ValueError(
            "No transport configured. Set DEVICELINK_TRANSPORT to 'memory' or "
            "to 'package.module:factory'."
        )
    if provider.lower() == "memory":
        from devicelink.transport.memory import MemoryTransport

        return lambda: MemoryTransport(browser=cfg.browser)
    if ":" in provider:
        module_name, _, attr = provider.partition(":")
        module = importlib.import_module(module_name)
        factory = getattr(module, attr, None)
        if not callable(factory):
            raise ValueError(f"Transport factory {provider!r} is not callable")

        def build() -> Transport:
            transport = factory(browser=cfg.browser)
            if not isinstance(transport, Transport):
                raise TypeError(
                    f"{provider} returned {type(transport).__name__}, expected a Transport"
                )
            return transport

        return build
    raise ValueError(f"Unknown transport: {provider}")
