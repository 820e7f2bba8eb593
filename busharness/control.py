# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed calls on the stub service's test-control interface.

Every call is synchronous, bounded by ``HarnessConfig.call_timeout`` and
carries ``NO_AUTO_START``.  Reply shapes are checked strictly: a reply
that is not exactly ``(o)`` or ``()`` is a :class:`ProtocolViolation`.

Adding a device is only complete once the client under test reported it
through its ``device-added`` notification; :func:`add_device` waits for
that on the thread-default context under a watchdog.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from busharness.bus import BusError, BusMessage, BusProxy, BusTimeoutError, CallFlags
from busharness.client import Client, Device
from busharness.errors import HarnessError, HarnessTimeout, ProtocolViolation
from busharness.mainloop import MainLoop, run_loop
from busharness.profile import PROFILE_SIGNATURE, ConnectionProfile, validate_settings
from busharness.service import ServiceHandle

__all__ = [
    "ADD_WIFI_DEVICE",
    "ADD_WIMAX_DEVICE",
    "ADD_WIRED_DEVICE",
    "PendingAddRequest",
    "add_connection",
    "add_connection_raw",
    "add_device",
    "add_wired_device",
    "update_connection",
    "update_connection_raw",
]

_logger = logging.getLogger("busharness.control")

ADD_WIRED_DEVICE = "AddWiredDevice"
ADD_WIFI_DEVICE = "AddWifiDevice"
ADD_WIMAX_DEVICE = "AddWimaxDevice"

_DEFAULT_HW_ADDRESS = "/"


def _proxy(handle: ServiceHandle) -> BusProxy:
    if handle.proxy is None or not handle.running:
        raise HarnessError(f"stub service is not running (state {handle.state.value})")
    return handle.proxy


def _call(handle: ServiceHandle, member: str, args: Sequence[Any], signature: str, expected_shape: str) -> BusMessage:
    """Call *member* and check the reply shape.

    Raises:
        HarnessTimeout: If no reply arrived within the call timeout.
        ProtocolViolation: On an error reply or an unexpected reply shape.

    """
    proxy = _proxy(handle)
    timeout = handle.config.call_timeout
    try:
        reply = proxy.call_sync(member, args, signature, timeout=timeout, flags=CallFlags.NO_AUTO_START)
    except BusTimeoutError as exc:
        raise HarnessTimeout(f"{proxy.interface}.{member} did not reply", deadline=timeout) from exc
    except BusError as exc:
        raise ProtocolViolation(f"{proxy.interface}.{member} failed: {exc}") from exc
    if reply.reply_shape != expected_shape:
        raise ProtocolViolation(
            f"{proxy.interface}.{member} expected reply {expected_shape}", reply_shape=reply.reply_shape
        )
    return reply


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@dataclass
class PendingAddRequest:
    """One add-device round trip waiting for the client's notification."""

    iface: str
    expected_path: str
    result: Device | None = field(default=None)

    def on_device_added(self, client: Client, device: Device, loop: MainLoop) -> None:
        if device.path != self.expected_path:
            raise ProtocolViolation(f"device-added reported {device.path}, expected {self.expected_path}")
        if device.iface != self.iface:
            raise ProtocolViolation(
                f"device-added at {device.path} reported interface {device.iface!r}, expected {self.iface!r}"
            )
        self.result = device
        loop.quit()


def _wait_for_device(handle: ServiceHandle, client: Client, iface: str, path: str) -> Device:
    request = PendingAddRequest(iface, path)
    loop = MainLoop()
    handler_id = client.connect("device-added", lambda c, device: request.on_device_added(c, device, loop))
    watchdog = handle.config.device_watchdog
    try:
        finished = run_loop(loop, watchdog)
    finally:
        client.disconnect(handler_id)
    if not finished or request.result is None:
        raise HarnessTimeout(f"client did not report device {iface!r} at {path}", deadline=watchdog)
    _logger.debug("client observed device %s at %s", iface, path)
    return request.result


def add_device(handle: ServiceHandle, client: Client, method: str, iface: str) -> Device:
    """Add a device through *method* and wait until *client* reports it.

    Args:
        handle: A running stub service.
        client: The client that must observe the device.
        method: Remote member: ``AddWiredDevice``, ``AddWifiDevice`` or
            ``AddWimaxDevice``.  Wired devices get the default hardware
            address and no subchannels.
        iface: Interface name of the new device.

    Returns:
        The device as reported by *client*.

    """
    if method == ADD_WIRED_DEVICE:
        return add_wired_device(handle, client, iface)
    reply = _call(handle, method, (iface,), "s", "(o)")
    (path,) = reply.body
    return _wait_for_device(handle, client, iface, path)


def add_wired_device(
    handle: ServiceHandle,
    client: Client,
    iface: str,
    hw_address: str | None = None,
    subchannels: Sequence[str] | None = None,
) -> Device:
    """Add a wired device and wait until *client* reports it.

    *hw_address* defaults to ``"/"`` and *subchannels* to an empty list.
    """
    if hw_address is None:
        hw_address = _DEFAULT_HW_ADDRESS
    reply = _call(handle, ADD_WIRED_DEVICE, (iface, hw_address, list(subchannels or ())), "ssas", "(o)")
    (path,) = reply.body
    return _wait_for_device(handle, client, iface, path)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


def add_connection_raw(handle: ServiceHandle, settings: Mapping[str, Mapping[str, Any]], verify: bool) -> str:
    """Add a connection from raw profile *settings*; return its object path.

    Raises:
        TypeError: If *settings* does not have the profile shape.

    """
    settings = validate_settings(settings)
    reply = _call(handle, "AddConnection", (settings, verify), PROFILE_SIGNATURE + "b", "(o)")
    (path,) = reply.body
    return str(path)


def add_connection(handle: ServiceHandle, profile: ConnectionProfile, verify: bool) -> str:
    """Add *profile*; return its object path and record it on the profile."""
    path = add_connection_raw(handle, profile.to_wire(), verify)
    profile.path = path
    return path


def update_connection_raw(
    handle: ServiceHandle, path: str, settings: Mapping[str, Mapping[str, Any]], verify: bool
) -> None:
    """Replace the settings of the connection at *path*.

    Raises:
        ValueError: If *path* is empty or does not start with ``/``.
        TypeError: If *settings* does not have the profile shape.

    """
    if not path or not path.startswith("/"):
        raise ValueError(f"connection path must start with '/', got {path!r}")
    settings = validate_settings(settings)
    _call(handle, "UpdateConnection", (path, settings, verify), "o" + PROFILE_SIGNATURE + "b", "()")


def update_connection(handle: ServiceHandle, path: str | None, profile: ConnectionProfile, verify: bool) -> None:
    """Replace a connection with *profile*; *path* defaults to ``profile.path``.

    Raises:
        ValueError: If neither *path* nor ``profile.path`` is set.

    """
    if path is None:
        path = profile.path
    if path is None:
        raise ValueError("update_connection needs a path: the profile was never added")
    update_connection_raw(handle, path, profile.to_wire(), verify)
