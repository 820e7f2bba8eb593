# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-memory device and connection store behind the stub service's bus interfaces."""

from __future__ import annotations

import contextlib
import copy
import itertools
import logging
import os
import signal
import socket
import sys
import threading
from collections.abc import Mapping
from typing import Any, BinaryIO, Protocol

from busharness.bus import ERROR_INVALID_ARGS, BusError, BusServer, ObjectPath, Variant
from busharness.config import (
    DEFAULT_INTERFACE,
    DEFAULT_OBJECT_PATH,
    MISSING_DEPENDENCY_EXIT_STATUS,
    TEST_CONTROL_INTERFACE,
)

__all__ = [
    "ERROR_DEVICE_EXISTS",
    "ERROR_INVALID_CONNECTION",
    "ERROR_UNKNOWN_CONNECTION",
    "UNAVAILABLE_ENV",
    "ControlInterface",
    "ListingInterface",
    "StubService",
    "run_stub",
    "unavailable_reason",
]

_logger = logging.getLogger("busharness.stub")

ERROR_INVALID_CONNECTION = "org.busharness.StubService.InvalidConnection"
ERROR_UNKNOWN_CONNECTION = "org.busharness.StubService.UnknownConnection"
ERROR_DEVICE_EXISTS = "org.busharness.StubService.DeviceExists"

UNAVAILABLE_ENV = "BUSHARNESS_STUB_UNAVAILABLE"

_REQUIRED_CONNECTION_KEYS = ("id", "uuid", "type")


class ListingInterface(Protocol):
    """``org.busharness.StubService``: what the client under test reads."""

    def get_devices(self) -> dict[str, dict[str, Variant]]:
        """Return the properties of every device keyed by object path."""
        ...

    def list_connections(self) -> list[ObjectPath]:
        """Return the object paths of every connection."""
        ...


class ControlInterface(Protocol):
    """``org.busharness.StubService.TestControl``: state injection for tests."""

    def add_wired_device(self, ifname: str, hw_address: str, subchannels: list[str]) -> ObjectPath:
        """Add an ethernet device."""
        ...

    def add_wifi_device(self, ifname: str) -> ObjectPath:
        """Add a wifi device."""
        ...

    def add_wimax_device(self, ifname: str) -> ObjectPath:
        """Add a wimax device."""
        ...

    def add_connection(self, settings: dict[str, dict[str, Variant]], verify: bool) -> ObjectPath:
        """Store a connection profile."""
        ...

    def update_connection(self, path: ObjectPath, settings: dict[str, dict[str, Variant]], verify: bool) -> None:
        """Replace the settings of a stored connection."""
        ...


def _check_connection(settings: Mapping[str, Mapping[str, Any]]) -> None:
    """Raise ``InvalidConnection`` unless *settings* identify a connection."""
    connection = settings.get("connection")
    if connection is None:
        raise BusError(ERROR_INVALID_CONNECTION, "missing 'connection' setting")
    for key in _REQUIRED_CONNECTION_KEYS:
        value = connection.get(key)
        if not isinstance(value, str) or not value:
            raise BusError(ERROR_INVALID_CONNECTION, f"connection.{key}: property is missing")


class StubService:
    """Implements both interfaces; signals go out before the call returns.

    Calls may arrive on several connection threads at once, so the store
    is guarded by one lock that is also held while the signal is sent.
    That keeps signal order identical to the order of the state changes;
    a subscriber that stops reading holds the lock for at most the
    server's ``signal_send_timeout`` before it is dropped.
    """

    def __init__(self, server: BusServer, object_path: str = DEFAULT_OBJECT_PATH) -> None:
        """Initialize an empty store emitting signals through *server*."""
        self._server = server
        self._object_path = object_path
        self._lock = threading.Lock()
        self._devices: dict[str, dict[str, Any]] = {}
        self._connections: dict[str, dict[str, dict[str, Any]]] = {}
        self._device_ids = itertools.count(1)
        self._connection_ids = itertools.count(1)

    # -- listing -------------------------------------------------------------

    def get_devices(self) -> dict[str, dict[str, Variant]]:
        """Return a snapshot of every device's properties."""
        with self._lock:
            return copy.deepcopy(self._devices)

    def list_connections(self) -> list[ObjectPath]:
        """Return connection paths in creation order."""
        with self._lock:
            return [ObjectPath(p) for p in self._connections]

    # -- devices -------------------------------------------------------------

    def _add_device(self, ifname: str, device_type: str, hw_address: str, subchannels: list[str]) -> ObjectPath:
        if not ifname:
            raise BusError(ERROR_INVALID_ARGS, "interface name must not be empty")
        with self._lock:
            if any(props["Interface"] == ifname for props in self._devices.values()):
                raise BusError(ERROR_DEVICE_EXISTS, f"a device with interface {ifname!r} already exists")
            path = f"{self._object_path}/Devices/{next(self._device_ids)}"
            props: dict[str, Any] = {
                "Interface": ifname,
                "DeviceType": device_type,
                "HwAddress": hw_address,
                "Subchannels": list(subchannels),
            }
            self._devices[path] = props
            self._server.emit_signal(
                self._object_path, DEFAULT_INTERFACE, "DeviceAdded", (path, copy.deepcopy(props)), "oa{sv}"
            )
        _logger.info("added %s device %s at %s", device_type, ifname, path)
        return ObjectPath(path)

    def add_wired_device(self, ifname: str, hw_address: str, subchannels: list[str]) -> ObjectPath:
        """Add an ethernet device with the given hardware address and subchannels."""
        return self._add_device(ifname, "ethernet", hw_address, subchannels)

    def add_wifi_device(self, ifname: str) -> ObjectPath:
        """Add a wifi device."""
        return self._add_device(ifname, "wifi", "", [])

    def add_wimax_device(self, ifname: str) -> ObjectPath:
        """Add a wimax device."""
        return self._add_device(ifname, "wimax", "", [])

    # -- connections ---------------------------------------------------------

    def add_connection(self, settings: dict[str, dict[str, Variant]], verify: bool) -> ObjectPath:
        """Store *settings*; with *verify* the connection must carry id, uuid and type."""
        if verify:
            _check_connection(settings)
        with self._lock:
            path = f"{self._object_path}/Settings/{next(self._connection_ids)}"
            self._connections[path] = copy.deepcopy(settings)
            self._server.emit_signal(self._object_path, DEFAULT_INTERFACE, "ConnectionAdded", (path,), "o")
        _logger.info("added connection %s", path)
        return ObjectPath(path)

    def update_connection(self, path: ObjectPath, settings: dict[str, dict[str, Variant]], verify: bool) -> None:
        """Replace the settings stored at *path*."""
        if verify:
            _check_connection(settings)
        with self._lock:
            if path not in self._connections:
                raise BusError(ERROR_UNKNOWN_CONNECTION, f"no connection at {path}")
            self._connections[path] = copy.deepcopy(settings)
            self._server.emit_signal(self._object_path, DEFAULT_INTERFACE, "ConnectionUpdated", (path,), "o")
        _logger.info("updated connection %s", path)


# ---------------------------------------------------------------------------
# Process entry
# ---------------------------------------------------------------------------


def unavailable_reason(environ: Mapping[str, str] | None = None) -> str | None:
    """Return why the stub cannot run in this environment, or ``None``."""
    env = os.environ if environ is None else environ
    if not hasattr(socket, "AF_UNIX"):
        return "AF_UNIX sockets are not supported on this platform"
    if env.get(UNAVAILABLE_ENV):
        return f"{UNAVAILABLE_ENV} is set"
    return None


def _watch_keepalive(stream: BinaryIO, server: BusServer) -> None:
    """Shut *server* down once *stream* reaches EOF."""
    with contextlib.suppress(OSError, ValueError):
        while stream.read(4096):
            pass
    _logger.info("keep-alive descriptor closed; shutting down")
    server.shutdown()


def run_stub(address: str, name: str, *, keepalive: BinaryIO | None = None) -> int:
    """Own *name* on the bus at *address* and serve until stdin EOF or SIGTERM.

    Must run on the main thread (it installs a SIGTERM handler).

    Returns:
        The process exit status: 0 after a clean shutdown,
        ``MISSING_DEPENDENCY_EXIT_STATUS`` when the environment cannot host
        the stub, 1 when the name is already owned.

    """
    reason = unavailable_reason()
    if reason is not None:
        _logger.warning("stub service unavailable: %s", reason)
        return MISSING_DEPENDENCY_EXIT_STATUS

    server = BusServer(address, name)
    service = StubService(server)
    server.export(DEFAULT_OBJECT_PATH, DEFAULT_INTERFACE, ListingInterface, service)
    server.export(DEFAULT_OBJECT_PATH, TEST_CONTROL_INTERFACE, ControlInterface, service)
    try:
        server.own_name()
    except BusError as exc:
        _logger.error("cannot own %s: %s", name, exc.message)
        return 1

    def _on_sigterm(signum: int, frame: object) -> None:
        # The handler interrupts the accept loop, which may hold server locks.
        threading.Thread(target=server.shutdown, name="stub-sigterm", daemon=True).start()

    previous = signal.signal(signal.SIGTERM, _on_sigterm)
    stream = keepalive if keepalive is not None else sys.stdin.buffer
    threading.Thread(target=_watch_keepalive, args=(stream, server), name="stub-keepalive", daemon=True).start()
    _logger.info("stub service owns %s on %s (pid %d)", name, address, os.getpid())
    try:
        server.serve_forever()
    finally:
        server.shutdown()
        signal.signal(signal.SIGTERM, previous)
    _logger.info("stub service exiting")
    return 0
