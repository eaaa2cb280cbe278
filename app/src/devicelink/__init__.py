"""
devicelink — session and credential lifecycle for a linked device.

Pairs a device with a remote messaging service, persists the session
material it is handed, and decides after every disconnect whether the
session is dead (re-pair) or just unreachable (reconnect).
"""

__version__ = "0.1.0"
