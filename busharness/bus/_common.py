"""Constants, flags and errors shared by the bus client and server."""

from __future__ import annotations

import logging
from enum import IntFlag
from typing import Final

__all__ = [
    "DEFAULT_CALL_TIMEOUT",
    "ERROR_DISCONNECTED",
    "ERROR_FAILED",
    "ERROR_INVALID_ARGS",
    "ERROR_INVALID_MESSAGE",
    "ERROR_NAME_TAKEN",
    "ERROR_NO_REPLY",
    "ERROR_SERVICE_UNKNOWN",
    "ERROR_UNKNOWN_METHOD",
    "ERROR_UNKNOWN_OBJECT",
    "PEER_INTERFACE",
    "PEER_PATH",
    "BusError",
    "BusTimeoutError",
    "CallFlags",
    "ServiceUnknownError",
    "error_from_reply",
]

_logger = logging.getLogger("busharness.bus")

DEFAULT_CALL_TIMEOUT: Final = 25.0
"""Timeout (seconds) applied to calls that do not specify one."""

PEER_INTERFACE: Final = "org.busharness.Peer"
"""Built-in interface every name owner answers on any object path."""

PEER_PATH: Final = "/"

ERROR_FAILED: Final = "org.busharness.Error.Failed"
ERROR_SERVICE_UNKNOWN: Final = "org.busharness.Error.ServiceUnknown"
ERROR_NO_REPLY: Final = "org.busharness.Error.NoReply"
ERROR_DISCONNECTED: Final = "org.busharness.Error.Disconnected"
ERROR_UNKNOWN_METHOD: Final = "org.busharness.Error.UnknownMethod"
ERROR_UNKNOWN_OBJECT: Final = "org.busharness.Error.UnknownObject"
ERROR_INVALID_ARGS: Final = "org.busharness.Error.InvalidArgs"
ERROR_INVALID_MESSAGE: Final = "org.busharness.Error.InvalidMessage"
ERROR_NAME_TAKEN: Final = "org.busharness.Error.NameTaken"


class CallFlags(IntFlag):
    """Per-call flags carried in the message header.

    Members:
        NONE: No flags.
        NO_REPLY_EXPECTED: The caller does not wait for a reply.
        NO_AUTO_START: Never launch an owner for the destination name; a
            name without owner fails with ``ServiceUnknown``.
    """

    NONE = 0
    NO_REPLY_EXPECTED = 1
    NO_AUTO_START = 2


class BusError(Exception):
    """Raised when a call fails, either remotely (error reply) or locally."""

    def __init__(self, name: str, message: str) -> None:
        """Initialize with the error name and a human-readable message."""
        self.name = name
        self.message = message
        super().__init__(f"{name}: {message}")


class ServiceUnknownError(BusError):
    """The destination name has no owner on the bus."""

    def __init__(self, message: str) -> None:
        """Initialize with a message naming the unowned bus name."""
        super().__init__(ERROR_SERVICE_UNKNOWN, message)


class BusTimeoutError(BusError):
    """No reply arrived within the per-call timeout."""

    def __init__(self, message: str, *, timeout: float) -> None:
        """Initialize with a message and the timeout that elapsed."""
        self.timeout = timeout
        super().__init__(ERROR_NO_REPLY, message)


def error_from_reply(name: str, message: str) -> BusError:
    """Rebuild the most specific :class:`BusError` for an error reply."""
    if name == ERROR_SERVICE_UNKNOWN:
        return ServiceUnknownError(message)
    return BusError(name, message)
