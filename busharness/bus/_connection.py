# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client side of the bus: name queries, method calls and signal subscriptions.

A bus *address* is a directory.  The owner of a well-known name listens on
the Unix socket ``<address>/<name>``; there is no broker process, so a name
without a listening socket has no owner and calls to it fail with
:class:`ServiceUnknownError`.  Names are never activated on demand.

Synchronous calls reuse one socket per destination name.  Asynchronous calls
and subscriptions open their own socket and deliver completions through
sources attached to a :class:`~busharness.mainloop.MainContext`.
"""

from __future__ import annotations

import itertools
import os
import socket
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from typing import Any

from busharness.bus._common import (
    DEFAULT_CALL_TIMEOUT,
    ERROR_DISCONNECTED,
    ERROR_INVALID_MESSAGE,
    PEER_INTERFACE,
    PEER_PATH,
    BusError,
    BusTimeoutError,
    CallFlags,
    ServiceUnknownError,
    _logger,
    error_from_reply,
)
from busharness.bus._debug import wire_transport_logger
from busharness.bus._wire import BusMessage, MessageType, WireError, recv_message, send_message
from busharness.config import default_bus_address
from busharness.mainloop import SOURCE_CONTINUE, SOURCE_REMOVE, FdSource, IdleSource, MainContext, TimeoutSource

__all__ = ["BusConnection", "BusProxy", "SignalHandler", "Subscription"]

SignalHandler = Callable[[BusMessage], None]
"""Callback receiving each signal delivered to a :class:`Subscription`."""

_unique_ids = itertools.count(1)


def _reply_or_raise(reply: BusMessage) -> BusMessage:
    if reply.type is MessageType.ERROR:
        raise error_from_reply(reply.error_name, reply.error_message)
    if reply.type is not MessageType.METHOD_RETURN:
        raise BusError(ERROR_INVALID_MESSAGE, f"Expected a method return, got {reply.type.value}")
    return reply


class BusConnection:
    """A connection to the bus living at *address*.

    Use :meth:`connect` to create one.  Not thread-safe beyond the lock that
    serializes synchronous calls.
    """

    __slots__ = ("_address", "_closed", "_lock", "_serials", "_sockets", "_unique_name")

    def __init__(self, address: str) -> None:
        """Initialize for an existing bus directory; prefer :meth:`connect`."""
        self._address = address
        self._sockets: dict[str, socket.socket] = {}
        self._lock = threading.Lock()
        self._serials = itertools.count(1)
        self._closed = False
        self._unique_name = f":{os.getpid()}.{next(_unique_ids)}"

    @classmethod
    def connect(cls, address: str | None = None) -> BusConnection:
        """Connect to the bus at *address* (see :func:`~busharness.config.default_bus_address`).

        The bus directory is created if missing.

        Raises:
            OSError: If the directory cannot be created.

        """
        if address is None:
            address = default_bus_address()
        os.makedirs(address, mode=0o700, exist_ok=True)
        bus = cls(address)
        wire_transport_logger.debug("bus connected: address=%s unique_name=%s", address, bus._unique_name)
        return bus

    def __enter__(self) -> BusConnection:
        """Return self."""
        return self

    def __exit__(self, *exc: object) -> None:
        """Close the connection."""
        self.close()

    def __repr__(self) -> str:
        """Return a short description."""
        state = "closed" if self._closed else "open"
        return f"<BusConnection {self._unique_name} address={self._address!r} {state}>"

    @property
    def address(self) -> str:
        """The bus directory."""
        return self._address

    @property
    def unique_name(self) -> str:
        """Name identifying this connection in logs."""
        return self._unique_name

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` was called."""
        return self._closed

    def socket_path(self, name: str) -> str:
        """Return the socket path owned by well-known *name*."""
        return os.path.join(self._address, name)

    def _next_serial(self) -> int:
        return next(self._serials)

    def _check_open(self) -> None:
        if self._closed:
            raise BusError(ERROR_DISCONNECTED, f"{self!r} is closed")

    def _open(self, name: str, timeout: float) -> socket.socket:
        """Open a socket to the owner of *name*."""
        self._check_open()
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(self.socket_path(name))
        except (FileNotFoundError, ConnectionRefusedError):
            sock.close()
            raise ServiceUnknownError(f"The name {name} is not owned by anyone on {self._address}") from None
        except TimeoutError:
            sock.close()
            raise BusTimeoutError(f"Connecting to {name} timed out", timeout=timeout) from None
        except OSError:
            sock.close()
            raise
        sock.settimeout(None)
        wire_transport_logger.debug("socket opened: name=%s fd=%d", name, sock.fileno())
        return sock

    # -- name queries --------------------------------------------------------

    def get_name_owner(self, name: str, timeout: float = DEFAULT_CALL_TIMEOUT) -> str:
        """Return the owner id of *name*, asking the owner itself.

        Raises:
            ServiceUnknownError: If *name* has no owner.
            BusTimeoutError: If the owner did not answer within *timeout*.

        """
        sock = self._open(name, timeout)
        try:
            reply = self._round_trip(
                sock,
                BusMessage.method_call(
                    self._next_serial(), PEER_PATH, PEER_INTERFACE, "Ping", flags=CallFlags.NO_AUTO_START
                ),
                timeout,
                name,
            )
        finally:
            sock.close()
        (owner,) = reply.body
        return str(owner)

    def name_has_owner(self, name: str, timeout: float = DEFAULT_CALL_TIMEOUT) -> bool:
        """Return whether *name* currently has a live owner.

        Never starts anything; an owner that does not answer within
        *timeout* counts as absent.
        """
        try:
            self.get_name_owner(name, timeout)
        except ServiceUnknownError:
            return False
        except BusTimeoutError:
            _logger.debug("name %s did not answer within %.3fs", name, timeout)
            return False
        except BusError as exc:
            if exc.name == ERROR_DISCONNECTED and not self._closed:
                return False
            raise
        return True

    # -- synchronous calls ---------------------------------------------------

    def _round_trip(self, sock: socket.socket, call: BusMessage, timeout: float, name: str) -> BusMessage:
        try:
            send_message(sock, call)
            while True:
                reply = recv_message(sock, timeout)
                if reply is None:
                    raise BusError(ERROR_DISCONNECTED, f"{name} closed the connection before replying")
                if reply.reply_serial == call.serial:
                    return _reply_or_raise(reply)
                _logger.debug("dropping unexpected %s on call socket to %s", reply.type.value, name)
        except TimeoutError:
            raise BusTimeoutError(
                f"No reply to {call.interface}.{call.member} from {name} within {timeout}s", timeout=timeout
            ) from None
        except (WireError, ConnectionError) as exc:
            raise BusError(ERROR_DISCONNECTED, f"Connection to {name} failed: {exc}") from exc

    def call(
        self,
        name: str,
        path: str,
        interface: str,
        member: str,
        args: Sequence[Any] = (),
        signature: str = "",
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        flags: CallFlags = CallFlags.NONE,
    ) -> BusMessage:
        """Call *member* on the owner of *name* and wait for the reply.

        Returns:
            The method return message; its ``signature`` is the reply shape.

        Raises:
            ServiceUnknownError: If *name* has no owner.
            BusTimeoutError: If no reply arrived within *timeout*.
            BusError: For remote error replies or a broken connection.

        """
        call = BusMessage.method_call(self._next_serial(), path, interface, member, tuple(args), signature, flags)
        with self._lock:
            sock = self._sockets.get(name)
            if sock is None:
                sock = self._open(name, timeout)
                self._sockets[name] = sock
            try:
                return self._round_trip(sock, call, timeout, name)
            except BusError as exc:
                if exc.name != ERROR_DISCONNECTED and not isinstance(exc, BusTimeoutError):
                    raise
                # The reply stream is no longer in step with our serials.
                self._sockets.pop(name, None)
                sock.close()
                raise

    def call_async(
        self,
        name: str,
        path: str,
        interface: str,
        member: str,
        args: Sequence[Any] = (),
        signature: str = "",
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        flags: CallFlags = CallFlags.NONE,
        context: MainContext | None = None,
    ) -> Future[BusMessage]:
        """Start a call whose reply is delivered when *context* iterates.

        The returned future is always completed from a dispatch of
        *context* (the thread-default context when ``None``), never from
        within this method, so done-callbacks run on that context.
        """
        if context is None:
            context = MainContext.thread_default()
        future: Future[BusMessage] = Future()
        future.set_running_or_notify_cancel()
        call = BusMessage.method_call(self._next_serial(), path, interface, member, tuple(args), signature, flags)
        try:
            sock = self._open(name, timeout)
            send_message(sock, call)
        except (BusError, OSError) as exc:
            _complete_later(context, future, None, exc)
            return future
        _PendingReply(sock, call, name, timeout, future).attach(context)
        return future

    # -- subscriptions -------------------------------------------------------

    def subscribe(
        self,
        name: str,
        handler: SignalHandler,
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        context: MainContext | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ) -> Subscription:
        """Subscribe to every signal emitted by the owner of *name*.

        Blocks until the owner acknowledged the subscription; signals are
        then delivered to *handler* when *context* iterates.
        """
        sock = self._open(name, timeout)
        call = BusMessage.method_call(
            self._next_serial(), PEER_PATH, PEER_INTERFACE, "Subscribe", flags=CallFlags.NO_AUTO_START
        )
        try:
            self._round_trip(sock, call, timeout, name)
        except BaseException:
            sock.close()
            raise
        subscription = Subscription(sock, name, handler, on_disconnect)
        subscription.attach(context)
        return subscription

    def subscribe_async(
        self,
        name: str,
        handler: SignalHandler,
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        context: MainContext | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ) -> Future[Subscription]:
        """Like :meth:`subscribe` but the acknowledgement is awaited on *context*."""
        if context is None:
            context = MainContext.thread_default()
        future: Future[Subscription] = Future()
        future.set_running_or_notify_cancel()
        call = BusMessage.method_call(
            self._next_serial(), PEER_PATH, PEER_INTERFACE, "Subscribe", flags=CallFlags.NO_AUTO_START
        )
        try:
            sock = self._open(name, timeout)
            send_message(sock, call)
        except (BusError, OSError) as exc:
            _complete_later(context, future, None, exc)
            return future
        ack: Future[BusMessage] = Future()
        ack.set_running_or_notify_cancel()
        bound_context = context

        def _acknowledged(done: Future[BusMessage]) -> None:
            exc = done.exception()
            if exc is not None:
                sock.close()
                future.set_exception(exc)
                return
            subscription = Subscription(sock, name, handler, on_disconnect)
            subscription.attach(bound_context)
            future.set_result(subscription)

        ack.add_done_callback(_acknowledged)
        _PendingReply(sock, call, name, timeout, ack, keep_socket=True).attach(context)
        return future

    def close(self) -> None:
        """Close every socket; idempotent."""
        if self._closed:
            return
        self._closed = True
        with self._lock:
            for name, sock in self._sockets.items():
                wire_transport_logger.debug("socket closed: name=%s", name)
                sock.close()
            self._sockets.clear()
        wire_transport_logger.debug("bus closed: unique_name=%s", self._unique_name)


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


def _complete_later(context: MainContext, future: Future[Any], result: Any, exc: BaseException | None) -> None:
    def _complete() -> bool:
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return SOURCE_REMOVE

    IdleSource(_complete).attach(context)


class _PendingReply:
    """Waits on *context* for the reply to *call*, with a timeout."""

    __slots__ = ("_call", "_fd_source", "_future", "_keep_socket", "_name", "_sock", "_timeout", "_timeout_source")

    def __init__(
        self,
        sock: socket.socket,
        call: BusMessage,
        name: str,
        timeout: float,
        future: Future[BusMessage],
        *,
        keep_socket: bool = False,
    ) -> None:
        self._sock = sock
        self._call = call
        self._name = name
        self._timeout = timeout
        self._future = future
        self._keep_socket = keep_socket
        self._fd_source = FdSource(sock.fileno(), self._on_readable)
        self._timeout_source = TimeoutSource(timeout, self._on_timeout)

    def attach(self, context: MainContext) -> None:
        self._fd_source.attach(context)
        self._timeout_source.attach(context)

    def _finish(self, reply: BusMessage | None, exc: BaseException | None) -> None:
        self._fd_source.destroy()
        self._timeout_source.destroy()
        if exc is not None or not self._keep_socket:
            self._sock.close()
        if exc is not None:
            self._future.set_exception(exc)
        else:
            self._future.set_result(reply)

    def _on_readable(self) -> bool:
        try:
            reply = recv_message(self._sock, self._timeout)
        except (WireError, OSError) as exc:
            self._finish(None, BusError(ERROR_DISCONNECTED, f"Connection to {self._name} failed: {exc}"))
            return SOURCE_REMOVE
        if reply is None:
            self._finish(None, BusError(ERROR_DISCONNECTED, f"{self._name} closed the connection before replying"))
            return SOURCE_REMOVE
        if reply.reply_serial != self._call.serial:
            _logger.debug("dropping unexpected %s on call socket to %s", reply.type.value, self._name)
            return SOURCE_CONTINUE
        try:
            self._finish(_reply_or_raise(reply), None)
        except BusError as exc:
            self._finish(None, exc)
        return SOURCE_REMOVE

    def _on_timeout(self) -> bool:
        call = self._call
        self._finish(
            None,
            BusTimeoutError(
                f"No reply to {call.interface}.{call.member} from {self._name} within {self._timeout}s",
                timeout=self._timeout,
            ),
        )
        return SOURCE_REMOVE


class Subscription:
    """Delivers the signals of one name owner to a handler.

    Created by :meth:`BusConnection.subscribe`.  The socket is read only
    when the context the subscription is attached to iterates.
    """

    __slots__ = ("_handler", "_name", "_on_disconnect", "_sock", "_source")

    def __init__(
        self,
        sock: socket.socket,
        name: str,
        handler: SignalHandler,
        on_disconnect: Callable[[], None] | None = None,
    ) -> None:
        """Initialize with an acknowledged subscription socket."""
        self._sock = sock
        self._name = name
        self._handler = handler
        self._on_disconnect = on_disconnect
        self._source: FdSource | None = None

    @property
    def active(self) -> bool:
        """Whether the subscription still delivers signals."""
        return self._source is not None

    @property
    def context(self) -> MainContext | None:
        """The context delivering signals."""
        return None if self._source is None else self._source.context

    def attach(self, context: MainContext | None = None) -> None:
        """Start delivering signals on *context* (the thread default when ``None``)."""
        if self._source is not None:
            raise RuntimeError("subscription is already attached")
        self._source = FdSource(self._sock.fileno(), self._on_readable)
        self._source.attach(context)

    def _on_readable(self) -> bool:
        try:
            msg = recv_message(self._sock, DEFAULT_CALL_TIMEOUT)
        except (WireError, OSError) as exc:
            _logger.warning("subscription to %s failed: %s", self._name, exc)
            msg = None
        if msg is None:
            wire_transport_logger.debug("subscription to %s ended", self._name)
            self.close()
            if self._on_disconnect is not None:
                self._on_disconnect()
            return SOURCE_REMOVE
        if msg.type is MessageType.SIGNAL:
            self._handler(msg)
        else:
            _logger.debug("ignoring %s on subscription to %s", msg.type.value, self._name)
        return SOURCE_CONTINUE

    def close(self) -> None:
        """Stop delivering signals and close the socket; idempotent."""
        if self._source is not None:
            self._source.destroy()
            self._source = None
        if self._sock.fileno() != -1:
            self._sock.close()


class BusProxy:
    """A typed handle to one interface of one object of one name owner.

    Every call carries ``NO_AUTO_START`` unless *flags* says otherwise.
    """

    __slots__ = ("bus", "interface", "name", "path")

    def __init__(self, bus: BusConnection, name: str, path: str, interface: str) -> None:
        """Initialize with the destination coordinates."""
        self.bus = bus
        self.name = name
        self.path = path
        self.interface = interface

    def __repr__(self) -> str:
        """Return the destination coordinates."""
        return f"<BusProxy {self.name} {self.path} {self.interface}>"

    def call_sync(
        self,
        member: str,
        args: Sequence[Any] = (),
        signature: str = "",
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        flags: CallFlags = CallFlags.NO_AUTO_START,
    ) -> BusMessage:
        """Call *member* synchronously; see :meth:`BusConnection.call`."""
        return self.bus.call(
            self.name, self.path, self.interface, member, args, signature, timeout=timeout, flags=flags
        )

    def call_async(
        self,
        member: str,
        args: Sequence[Any] = (),
        signature: str = "",
        *,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        flags: CallFlags = CallFlags.NO_AUTO_START,
        context: MainContext | None = None,
    ) -> Future[BusMessage]:
        """Call *member* asynchronously; see :meth:`BusConnection.call_async`."""
        return self.bus.call_async(
            self.name,
            self.path,
            self.interface,
            member,
            args,
            signature,
            timeout=timeout,
            flags=flags,
            context=context,
        )
