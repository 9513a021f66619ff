"""Error taxonomy for the browser bridge.

Only `ConnectionLost`, `CallTimeout`, `NotConnected` and `RemoteCallError` ever reach
an outer caller. Everything else is handled inside the peer that detected it.
"""

from __future__ import annotations


class BridgeError(Exception):
    pass


class ProtocolError(BridgeError, ValueError):
    """Malformed wire message (logged and dropped by the receiving peer)."""


class OperationNotFound(BridgeError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"operation not found: {name}")
        self.name = name


class HandlerError(BridgeError):
    """Domain failure raised by an operation handler."""


class RemoteCallError(BridgeError):
    """The executor answered the call with an error string."""

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation


class NotConnected(BridgeError, ConnectionError):
    pass


class ConnectionLost(BridgeError, ConnectionError):
    pass


class CallTimeout(BridgeError, TimeoutError):
    pass


__all__ = [
    "BridgeError",
    "CallTimeout",
    "ConnectionLost",
    "HandlerError",
    "NotConnected",
    "OperationNotFound",
    "ProtocolError",
    "RemoteCallError",
]
