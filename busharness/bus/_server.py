# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server side of the bus: name ownership, object export and signal emission.

Exported interfaces are described by ``Protocol`` classes.  Each public
method becomes a bus member named in CamelCase (``add_wired_device`` →
``AddWiredDevice``) whose in/out signatures are derived from the type hints::

    class Greeter(Protocol):
        def hello(self, name: str) -> str: ...

    server = BusServer(address, "org.example.Greeter")
    server.export("/org/example/Greeter", "org.example.Greeter", Greeter, GreeterImpl())
    server.own_name()
    server.serve_forever()

Every name owner also answers the built-in ``org.busharness.Peer``
interface on any path: ``Ping() -> s`` returns the owner id and
``Subscribe() -> ()`` turns the calling connection into a signal
subscription.
"""

from __future__ import annotations

import contextlib
import functools
import inspect
import itertools
import os
import selectors
import socket
import struct
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, get_type_hints

from busharness.bus._common import (
    ERROR_FAILED,
    ERROR_INVALID_ARGS,
    ERROR_NAME_TAKEN,
    ERROR_UNKNOWN_METHOD,
    ERROR_UNKNOWN_OBJECT,
    PEER_INTERFACE,
    BusError,
    CallFlags,
    _logger,
)
from busharness.bus._debug import wire_signal_logger, wire_transport_logger
from busharness.bus._signature import signature_of, split_signature
from busharness.bus._wire import BusMessage, MessageType, WireError, encode_message, recv_message, send_message

__all__ = ["BusMethodInfo", "BusServer", "bus_methods", "member_name"]

_ACCEPT_POLL_INTERVAL = 0.1
DEFAULT_SIGNAL_SEND_TIMEOUT = 2.0


@dataclass(frozen=True)
class BusMethodInfo:
    """Metadata for a single bus member, derived from Protocol type hints."""

    name: str
    member: str
    in_signature: str
    out_signature: str
    param_names: tuple[str, ...]
    doc: str | None


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


def member_name(name: str) -> str:
    """Return the bus member name for Python method *name*."""
    return "".join(part[:1].upper() + part[1:] for part in name.split("_"))


@functools.lru_cache(maxsize=64)
def bus_methods(protocol: type) -> Mapping[str, BusMethodInfo]:
    """Introspect a Protocol class and return BusMethodInfo keyed by member name.

    Skips underscore-prefixed names and non-callable attributes.

    Raises:
        TypeError: If a parameter or return hint has no bus signature.

    """
    result: dict[str, BusMethodInfo] = {}
    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr):
            continue
        try:
            hints = get_type_hints(attr, include_extras=True)
        except (NameError, AttributeError):
            continue

        params = [p for p in inspect.signature(attr).parameters if p != "self"]
        missing = [p for p in params if p not in hints]
        if missing:
            raise TypeError(f"{protocol.__name__}.{name}() lacks type hints for {', '.join(missing)}")
        in_signature = "".join(signature_of(hints[p]) for p in params)
        out_signature = signature_of(hints.get("return", type(None)))
        member = member_name(name)
        result[member] = BusMethodInfo(
            name=name,
            member=member,
            in_signature=in_signature,
            out_signature=out_signature,
            param_names=tuple(params),
            doc=getattr(attr, "__doc__", None),
        )
    return MappingProxyType(result)


def _validate_implementation(protocol: type, implementation: object, methods: Mapping[str, BusMethodInfo]) -> None:
    """Validate that *implementation* provides every method of *protocol*.

    Raises:
        TypeError: Listing every missing or non-callable method.

    """
    errors: list[str] = []
    for info in methods.values():
        method = getattr(implementation, info.name, None)
        if method is None:
            errors.append(f"missing method {info.name}({', '.join(info.param_names)})")
        elif not callable(method):
            errors.append(f"'{info.name}' exists but is not callable")
    if errors:
        header = f"{type(implementation).__name__} does not implement {protocol.__name__}:"
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{header}\n{detail}")


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class _Peer:
    """One accepted connection; sends are serialized by a lock."""

    __slots__ = ("sock", "subscribed", "write_lock")

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.write_lock = threading.Lock()
        self.subscribed = False

    def send(self, msg: BusMessage) -> None:
        with self.write_lock:
            send_message(self.sock, msg)

    def limit_sends(self, timeout: float) -> None:
        """Make a blocked send fail after *timeout* seconds; reads are unaffected."""
        seconds = int(timeout)
        micros = int((timeout - seconds) * 1_000_000)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDTIMEO, struct.pack("ll", seconds, micros))


@dataclass(frozen=True)
class _Export:
    protocol: type
    implementation: object
    methods: Mapping[str, BusMethodInfo]


class BusServer:
    """Owns a well-known name on the bus at *address* and serves exported objects.

    Each accepted connection is served on its own thread; method calls on
    one connection are answered in order.  A subscriber that stops reading
    is dropped once a signal send to it blocks for *signal_send_timeout*
    seconds, so it cannot stall emitters indefinitely.
    """

    def __init__(self, address: str, name: str, *, signal_send_timeout: float = DEFAULT_SIGNAL_SEND_TIMEOUT) -> None:
        """Initialize for bus directory *address* and well-known *name*."""
        self.address = address
        self.name = name
        self.signal_send_timeout = signal_send_timeout
        self.owner_id = f"{name}@{os.getpid()}"
        self._exports: dict[tuple[str, str], _Export] = {}
        self._peers: set[_Peer] = set()
        self._peers_lock = threading.Lock()
        self._serials = itertools.count(1)
        self._serial_lock = threading.Lock()
        self._listener: socket.socket | None = None
        self._stopping = threading.Event()

    def __repr__(self) -> str:
        """Return the owned name and address."""
        return f"<BusServer {self.name} address={self.address!r}>"

    @property
    def socket_path(self) -> str:
        """Socket path of the owned name."""
        return os.path.join(self.address, self.name)

    def _next_serial(self) -> int:
        with self._serial_lock:
            return next(self._serials)

    # -- registration --------------------------------------------------------

    def export(self, path: str, interface: str, protocol: type, implementation: object) -> None:
        """Serve *implementation* as *interface* at object *path*.

        Raises:
            TypeError: If *implementation* does not provide every protocol method.
            ValueError: If *path*/*interface* is already exported.

        """
        key = (path, interface)
        if key in self._exports:
            raise ValueError(f"{interface} is already exported at {path}")
        methods = bus_methods(protocol)
        _validate_implementation(protocol, implementation, methods)
        self._exports[key] = _Export(protocol, implementation, methods)
        _logger.debug("exported %s at %s (%d members)", interface, path, len(methods))

    def own_name(self) -> None:
        """Bind the socket of the well-known name.

        A leftover socket whose owner is gone is replaced.

        Raises:
            BusError: ``NameTaken`` if a live owner holds the name.

        """
        os.makedirs(self.address, mode=0o700, exist_ok=True)
        path = self.socket_path
        if os.path.exists(path):
            probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                probe.connect(path)
            except (ConnectionRefusedError, FileNotFoundError):
                _logger.info("removing stale socket %s", path)
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(path)
            else:
                raise BusError(ERROR_NAME_TAKEN, f"{self.name} is already owned on {self.address}")
            finally:
                probe.close()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(path)
            listener.listen(16)
        except OSError:
            listener.close()
            raise
        self._listener = listener
        wire_transport_logger.debug("name owned: %s path=%s", self.name, path)

    # -- serving -------------------------------------------------------------

    def serve_forever(self) -> None:
        """Accept connections until :meth:`shutdown`; owns the name first if needed."""
        if self._listener is None:
            self.own_name()
        listener = self._listener
        assert listener is not None
        with selectors.DefaultSelector() as selector:
            try:
                selector.register(listener, selectors.EVENT_READ)
            except (ValueError, OSError):
                # shutdown() already closed the listener
                if self._stopping.is_set():
                    return
                raise
            while not self._stopping.is_set():
                if not selector.select(_ACCEPT_POLL_INTERVAL):
                    continue
                try:
                    conn, _ = listener.accept()
                except OSError:
                    if self._stopping.is_set():
                        break
                    raise
                peer = _Peer(conn)
                with self._peers_lock:
                    self._peers.add(peer)
                threading.Thread(
                    target=self._serve_peer, args=(peer,), name=f"bus-peer-{conn.fileno()}", daemon=True
                ).start()

    def _serve_peer(self, peer: _Peer) -> None:
        wire_transport_logger.debug("peer connected: fd=%d", peer.sock.fileno())
        try:
            while not self._stopping.is_set():
                try:
                    msg = recv_message(peer.sock)
                except (WireError, OSError) as exc:
                    if not self._stopping.is_set():
                        _logger.debug("peer connection failed: %s", exc)
                    break
                if msg is None:
                    break
                if msg.type is not MessageType.METHOD_CALL:
                    _logger.debug("ignoring %s from peer", msg.type.value)
                    continue
                reply = self._handle_call(msg)
                if msg.flags & CallFlags.NO_REPLY_EXPECTED:
                    continue
                subscribe_ack = (
                    msg.interface == PEER_INTERFACE
                    and msg.member == "Subscribe"
                    and reply.type is MessageType.METHOD_RETURN
                )
                try:
                    if subscribe_ack:
                        # Signals emitted meanwhile wait on the write lock, behind the acknowledgement.
                        with peer.write_lock:
                            peer.limit_sends(self.signal_send_timeout)
                            peer.subscribed = True
                            send_message(peer.sock, reply)
                    else:
                        peer.send(reply)
                except OSError as exc:
                    _logger.debug("could not reply to peer: %s", exc)
                    break
        finally:
            with self._peers_lock:
                self._peers.discard(peer)
            peer.sock.close()
            wire_transport_logger.debug("peer disconnected")

    def _handle_call(self, call: BusMessage) -> BusMessage:
        if call.interface == PEER_INTERFACE:
            if call.member == "Ping":
                return BusMessage.method_return(self._next_serial(), call, (self.owner_id,), "s")
            if call.member == "Subscribe":
                return BusMessage.method_return(self._next_serial(), call)
            return self._error(call, ERROR_UNKNOWN_METHOD, f"No such method {PEER_INTERFACE}.{call.member}")

        if not any(path == call.path for path, _ in self._exports):
            return self._error(call, ERROR_UNKNOWN_OBJECT, f"No such object path {call.path!r}")
        export = self._exports.get((call.path, call.interface))
        info = None if export is None else export.methods.get(call.member)
        if export is None or info is None:
            return self._error(
                call, ERROR_UNKNOWN_METHOD, f"No such method {call.interface}.{call.member} at {call.path}"
            )
        if call.signature != info.in_signature:
            return self._error(
                call,
                ERROR_INVALID_ARGS,
                f"{call.member} expects signature ({info.in_signature}), got ({call.signature})",
            )

        method = getattr(export.implementation, info.name)
        try:
            result = method(*call.body)
        except BusError as exc:
            return self._error(call, exc.name, exc.message)
        except Exception as exc:
            _logger.exception("%s.%s failed", call.interface, call.member)
            return self._error(call, ERROR_FAILED, f"{type(exc).__name__}: {exc}")

        out_types = split_signature(info.out_signature)
        if not out_types:
            body: tuple[Any, ...] = ()
        elif len(out_types) == 1:
            body = (result,)
        else:
            body = tuple(result)
        try:
            return BusMessage.method_return(self._next_serial(), call, body, info.out_signature)
        except (TypeError, ValueError) as exc:
            _logger.exception(
                "%s.%s returned a value not matching (%s)", call.interface, call.member, info.out_signature
            )
            return self._error(call, ERROR_FAILED, f"Invalid return value: {exc}")

    def _error(self, call: BusMessage, name: str, message: str) -> BusMessage:
        _logger.debug("error reply to %s.%s: %s: %s", call.interface, call.member, name, message)
        return BusMessage.error(self._next_serial(), call, name, message)

    def emit_signal(
        self, path: str, interface: str, member: str, args: tuple[Any, ...] = (), signature: str = ""
    ) -> int:
        """Send a signal to every subscribed connection.

        Returns:
            The number of subscribers the signal was delivered to.

        Raises:
            TypeError: If *args* do not match *signature*.

        """
        msg = BusMessage.signal(self._next_serial(), path, interface, member, args, signature)
        # Encode errors surface here, before any subscriber is touched.
        encode_message(msg)
        with self._peers_lock:
            subscribers = [p for p in self._peers if p.subscribed]
        delivered = 0
        for peer in subscribers:
            try:
                peer.send(msg)
            except OSError as exc:
                _logger.warning("dropping subscriber that stopped reading: %s", exc)
                with self._peers_lock:
                    self._peers.discard(peer)
                # A partial frame may have been written; the stream is unusable.
                with contextlib.suppress(OSError):
                    peer.sock.shutdown(socket.SHUT_RDWR)
                continue
            delivered += 1
        wire_signal_logger.debug("signal %s.%s delivered to %d subscriber(s)", interface, member, delivered)
        return delivered

    def shutdown(self) -> None:
        """Release the name, stop accepting and close every connection.

        The socket path is unlinked first, so the name stops resolving
        before any connection closes.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.socket_path)
        if self._listener is not None:
            self._listener.close()
        with self._peers_lock:
            peers = list(self._peers)
        for peer in peers:
            with contextlib.suppress(OSError):
                peer.sock.shutdown(socket.SHUT_RDWR)
        wire_transport_logger.debug("name released: %s", self.name)
