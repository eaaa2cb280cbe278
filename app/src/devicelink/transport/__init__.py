"""
DeviceLink Transport Boundary

The protocol implementation is a black box. It is wrapped in a Transport
that emits a closed set of events (ChallengeIssued, Opened,
CredentialsUpdated, Closed) through an ordered single-consumer channel.

Usage:
    from devicelink.transport import get_transport_factory

    factory = get_transport_factory()
    transport = factory()          # one instance per connection attempt
    await transport.connect(credentials)
    async for event in transport.events():
        ...
"""

from devicelink.transport.base import Transport
from devicelink.transport.channel import EventChannel
from devicelink.transport.events import (
    ChallengeIssued,
    Closed,
    CredentialsUpdated,
    Opened,
    TransportEvent,
)
from devicelink.transport.memory import MemoryTransport
from devicelink.transport.registry import TransportFactory, get_transport_factory

__all__ = [
    "Transport",
    "TransportFactory",
    "TransportEvent",
    "EventChannel",
    "ChallengeIssued",
    "Opened",
    "CredentialsUpdated",
    "Closed",
    "MemoryTransport",
    "get_transport_factory",
]
