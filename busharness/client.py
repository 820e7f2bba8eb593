# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The client library exercised by the bootstrap matrix.

A :class:`Client` mirrors the stub service's devices and connections and
reports changes through notifications.  It can be constructed three ways:

- ``Client.new()``: synchronous factory;
- ``Client()`` followed by ``client.init()``: two-step allocate/initialize;
- ``Client.new_async(callback)`` / ``Client.new_finish(future)``: the
  initialization round trips complete while the ambient context iterates.

The synchronous paths never iterate any context.  Whatever the path, the
notification socket is attached to the context that was thread-default when
construction began, so pushing a private context around construction isolates
the client from the caller's loop.

Notifications::

    client.connect("device-added", lambda client, device: ...)
    client.connect("connection-added", lambda client, path: ...)
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from busharness.bus import BusConnection, BusError, BusMessage, ServiceUnknownError, Subscription
from busharness.config import HarnessConfig
from busharness.mainloop import MainContext

__all__ = ["SIGNALS", "Client", "Device", "DestroyNotify", "NotificationHandler"]

_logger = logging.getLogger("busharness.client")

SIGNALS = frozenset({"device-added", "connection-added"})

NotificationHandler = Callable[..., None]
"""Called as ``handler(client, *args)``."""

DestroyNotify = Callable[[Any], None]
"""Called with a stored value when it is replaced or the client is closed."""


@dataclass(frozen=True)
class Device:
    """A device as seen by the client."""

    path: str
    iface: str
    device_type: str = ""
    hw_address: str = ""
    subchannels: tuple[str, ...] = ()

    @classmethod
    def from_properties(cls, path: str, props: dict[str, Any]) -> Device:
        """Build a device from the ``a{sv}`` property map the stub publishes."""
        return cls(
            path=path,
            iface=str(props.get("Interface", "")),
            device_type=str(props.get("DeviceType", "")),
            hw_address=str(props.get("HwAddress", "")),
            subchannels=tuple(props.get("Subchannels", ())),
        )


@dataclass
class _DataEntry:
    value: Any
    destroy: DestroyNotify | None = field(default=None)


class Client:
    """Client of the stub service.

    Attributes are only meaningful once :attr:`initialized` is true.
    """

    def __init__(self, config: HarnessConfig | None = None) -> None:
        """Allocate an uninitialized client; call :meth:`init` next."""
        self._config = config if config is not None else HarnessConfig.from_env()
        self._context: MainContext | None = None
        self._bus: BusConnection | None = None
        self._subscription: Subscription | None = None
        self._initialized = False
        self._initializing = False
        self._closed = False
        self._service_running = False
        self._devices: dict[str, Device] = {}
        self._connections: list[str] = []
        self._handlers: dict[int, tuple[str, NotificationHandler]] = {}
        self._handler_ids = itertools.count(1)
        self._data: dict[str, _DataEntry] = {}

    def __repr__(self) -> str:
        """Return a short description."""
        state = "initialized" if self._initialized else "uninitialized"
        return f"<Client {state} devices={len(self._devices)} running={self._service_running}>"

    def __enter__(self) -> Client:
        """Return self."""
        return self

    def __exit__(self, *exc: object) -> None:
        """Close the client."""
        self.close()

    # -- construction --------------------------------------------------------

    @classmethod
    def new(cls, config: HarnessConfig | None = None) -> Client:
        """Create and synchronously initialize a client.

        Raises:
            BusError: If the service answered with an error.

        """
        client = cls(config)
        client.init()
        return client

    def _begin(self) -> BusConnection:
        if self._initialized or self._initializing:
            raise RuntimeError(f"{self!r} is already initialized")
        if self._closed:
            raise RuntimeError("client is closed")
        self._initializing = True
        self._context = MainContext.thread_default()
        self._bus = BusConnection.connect(self._config.bus_address)
        return self._bus

    def _abort(self) -> None:
        self._initializing = False
        self._teardown_connection()

    def init(self) -> bool:
        """Initialize synchronously without iterating any context.

        A missing service is not an error: the client initializes with
        :attr:`service_running` false.

        Returns:
            ``True``.

        Raises:
            BusError: If the service answered with an error.
            RuntimeError: If the client was already initialized.

        """
        bus = self._begin()
        config = self._config
        try:
            self._subscription = bus.subscribe(
                config.service_name,
                self._on_signal,
                timeout=config.call_timeout,
                context=self._context,
                on_disconnect=self._on_service_gone,
            )
            devices = self._call_sync(bus, "GetDevices")
            connections = self._call_sync(bus, "ListConnections")
        except ServiceUnknownError:
            _logger.debug("%s has no owner; client starts without service", config.service_name)
            self._teardown_connection()
            self._finish_init(running=False)
            return True
        except BaseException:
            self._abort()
            raise
        self._load(devices, connections)
        self._finish_init(running=True)
        return True

    def _call_sync(self, bus: BusConnection, member: str) -> BusMessage:
        config = self._config
        return bus.call(
            config.service_name, config.object_path, config.interface, member, timeout=config.call_timeout
        )

    @classmethod
    def new_async(
        cls,
        callback: Callable[[Future[Client]], None] | None = None,
        config: HarnessConfig | None = None,
    ) -> Future[Client]:
        """Start creating a client; completion happens while the ambient context iterates.

        Args:
            callback: Called with the future once it completed.
            config: Harness configuration.

        Returns:
            A future resolved with the initialized client.  Pass it to
            :meth:`new_finish` to obtain the client or the error.

        """
        client = cls(config)
        future: Future[Client] = Future()
        future.set_running_or_notify_cancel()
        if callback is not None:
            future.add_done_callback(callback)
        client._init_async(future)
        return future

    @staticmethod
    def new_finish(future: Future[Client]) -> Client:
        """Return the client of a completed :meth:`new_async` future, or raise its error."""
        if not future.done():
            raise RuntimeError("new_finish() called before the construction completed")
        return future.result()

    def _init_async(self, future: Future[Client]) -> None:
        try:
            bus = self._begin()
        except BaseException as exc:
            self._initializing = False
            future.set_exception(exc)
            return
        config = self._config
        context = self._context

        def _fail(exc: BaseException) -> None:
            self._abort()
            future.set_exception(exc)

        def _on_connections(done: Future[BusMessage], devices: BusMessage) -> None:
            if (exc := done.exception()) is not None:
                _fail(exc)
                return
            try:
                self._load(devices, done.result())
                self._finish_init(running=True)
            except BaseException as load_exc:
                _fail(load_exc)
                return
            future.set_result(self)

        def _on_devices(done: Future[BusMessage]) -> None:
            if (exc := done.exception()) is not None:
                _fail(exc)
                return
            bus.call_async(
                config.service_name,
                config.object_path,
                config.interface,
                "ListConnections",
                timeout=config.call_timeout,
                context=context,
            ).add_done_callback(lambda d: _on_connections(d, done.result()))

        def _on_subscribed(done: Future[Subscription]) -> None:
            exc = done.exception()
            if isinstance(exc, ServiceUnknownError):
                _logger.debug("%s has no owner; client starts without service", config.service_name)
                self._teardown_connection()
                self._finish_init(running=False)
                future.set_result(self)
                return
            if exc is not None:
                _fail(exc)
                return
            self._subscription = done.result()
            bus.call_async(
                config.service_name,
                config.object_path,
                config.interface,
                "GetDevices",
                timeout=config.call_timeout,
                context=context,
            ).add_done_callback(_on_devices)

        bus.subscribe_async(
            config.service_name,
            self._on_signal,
            timeout=config.call_timeout,
            context=context,
            on_disconnect=self._on_service_gone,
        ).add_done_callback(_on_subscribed)

    def _load(self, devices: BusMessage, connections: BusMessage) -> None:
        if devices.signature != "a{sa{sv}}" or connections.signature != "ao":
            raise BusError(
                "org.busharness.Error.InvalidSignature",
                f"unexpected reply shapes ({devices.signature}) / ({connections.signature})",
            )
        (device_map,) = devices.body
        (paths,) = connections.body
        self._devices = {path: Device.from_properties(path, props) for path, props in sorted(device_map.items())}
        self._connections = list(paths)

    def _finish_init(self, *, running: bool) -> None:
        self._service_running = running
        self._initializing = False
        self._initialized = True
        _logger.debug("client initialized: running=%s devices=%d", running, len(self._devices))

    # -- state ---------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        """Whether initialization completed successfully."""
        return self._initialized

    @property
    def service_running(self) -> bool:
        """Whether the service was reachable (and has not gone away since)."""
        return self._service_running

    @property
    def context(self) -> MainContext | None:
        """The context notifications are delivered on (set once construction began)."""
        return self._context

    @property
    def devices(self) -> tuple[Device, ...]:
        """Known devices in the order they appeared."""
        return tuple(self._devices.values())

    @property
    def connections(self) -> tuple[str, ...]:
        """Object paths of known connections."""
        return tuple(self._connections)

    def get_device_by_path(self, path: str) -> Device | None:
        """Return the device at *path*, if known."""
        return self._devices.get(path)

    def get_device_by_iface(self, iface: str) -> Device | None:
        """Return the first device with interface name *iface*, if known."""
        return next((d for d in self._devices.values() if d.iface == iface), None)

    # -- notifications -------------------------------------------------------

    def connect(self, signal: str, handler: NotificationHandler) -> int:
        """Register *handler* for *signal*; return an id for :meth:`disconnect`.

        Raises:
            ValueError: If *signal* is unknown.

        """
        if signal not in SIGNALS:
            raise ValueError(f"unknown signal {signal!r}; expected one of {sorted(SIGNALS)}")
        handler_id = next(self._handler_ids)
        self._handlers[handler_id] = (signal, handler)
        return handler_id

    def disconnect(self, handler_id: int) -> None:
        """Remove a handler registered with :meth:`connect`.

        Raises:
            KeyError: If *handler_id* is not registered.

        """
        del self._handlers[handler_id]

    def _emit(self, signal: str, *args: Any) -> None:
        for handler_id, (name, handler) in list(self._handlers.items()):
            if name == signal and handler_id in self._handlers:
                handler(self, *args)

    def _on_signal(self, msg: BusMessage) -> None:
        if msg.member == "DeviceAdded":
            path, props = msg.body
            if path in self._devices:
                return
            device = Device.from_properties(path, props)
            self._devices[path] = device
            self._emit("device-added", device)
        elif msg.member == "ConnectionAdded":
            (path,) = msg.body
            if path in self._connections:
                return
            self._connections.append(path)
            self._emit("connection-added", path)
        else:
            _logger.debug("ignoring signal %s.%s", msg.interface, msg.member)

    def _on_service_gone(self) -> None:
        _logger.debug("service connection closed")
        self._subscription = None
        self._service_running = False

    # -- keyed data ----------------------------------------------------------

    def set_data(self, key: str, value: Any, destroy: DestroyNotify | None = None) -> None:
        """Store *value* under *key*; a replaced value gets its destroy notify called."""
        previous = self._data.pop(key, None)
        self._data[key] = _DataEntry(value, destroy)
        if previous is not None and previous.destroy is not None:
            previous.destroy(previous.value)

    def get_data(self, key: str) -> Any:
        """Return the value stored under *key*, or ``None``."""
        entry = self._data.get(key)
        return None if entry is None else entry.value

    def data_keys(self) -> tuple[str, ...]:
        """Keys with stored values, in insertion order."""
        return tuple(self._data)

    # -- teardown ------------------------------------------------------------

    def _teardown_connection(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._bus is not None:
            self._bus.close()
            self._bus = None

    def close(self) -> None:
        """Release the connection and every stored value; idempotent."""
        if self._closed:
            return
        self._closed = True
        self._teardown_connection()
        self._service_running = False
        data, self._data = self._data, {}
        for entry in data.values():
            if entry.destroy is not None:
                entry.destroy(entry.value)
        self._handlers.clear()
