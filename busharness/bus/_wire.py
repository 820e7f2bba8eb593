# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Bus message framing over stream sockets.

Every message is a 4-byte big-endian length followed by one complete Arrow
IPC stream (schema, a single record batch, end-of-stream marker).  The batch
holds the body (see :mod:`busharness.bus._signature`) and its custom
metadata holds the header fields.

Frames are always read with exact-length ``recv`` calls, never through a
buffered reader, so that a readable socket always means "a frame (or EOF)
is waiting" for whoever polls it.

IPC debug tracing through structlog is enabled with ``BUSHARNESS_WIRE_DEBUG=1``.
"""

from __future__ import annotations

import logging
import os
import socket
import struct
import sys
import time
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Any, Final

import pyarrow as pa
import structlog
from pyarrow import ipc

from busharness.bus._common import CallFlags
from busharness.bus._debug import fmt_message, wire_message_logger
from busharness.bus._signature import decode_body, encode_body
from busharness.metadata import (
    ERROR_MESSAGE_KEY,
    ERROR_NAME_KEY,
    FLAGS_KEY,
    INTERFACE_KEY,
    MEMBER_KEY,
    MESSAGE_TYPE_KEY,
    PATH_KEY,
    PROTOCOL_VERSION,
    PROTOCOL_VERSION_KEY,
    REPLY_SERIAL_KEY,
    SERIAL_KEY,
    SIGNATURE_KEY,
    decode_metadata,
)

__all__ = [
    "MAX_MESSAGE_SIZE",
    "BusMessage",
    "MessageType",
    "WireError",
    "decode_message",
    "encode_message",
    "recv_message",
    "send_message",
]

MAX_MESSAGE_SIZE: Final = 16 * 1024 * 1024
"""Frames larger than this are rejected as corrupt."""

_LENGTH = struct.Struct(">I")

# Wire debug logging - enable with BUSHARNESS_WIRE_DEBUG=1
_WIRE_DEBUG = os.environ.get("BUSHARNESS_WIRE_DEBUG", "").lower() in ("1", "true", "yes")
_wire_log: structlog.stdlib.BoundLogger | None = None


def _get_wire_log() -> structlog.stdlib.BoundLogger:
    """Get or create the wire debug logger, configured to write to stderr."""
    global _wire_log
    if _wire_log is None:
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _wire_log = structlog.get_logger().bind(component="wire", pid=os.getpid())
    return _wire_log


class WireError(Exception):
    """A frame could not be read or decoded."""


class MessageType(Enum):
    """Kind of bus message."""

    METHOD_CALL = "method_call"
    METHOD_RETURN = "method_return"
    ERROR = "error"
    SIGNAL = "signal"


@dataclass(frozen=True)
class BusMessage:
    """One bus message: header fields plus a typed body.

    Attributes:
        type: The message kind.
        serial: Sender-chosen serial, unique per sending socket.
        body: Decoded body values, one per complete type of *signature*.
        signature: Body signature.
        path: Object path (calls and signals).
        interface: Interface name (calls and signals).
        member: Method or signal name.
        reply_serial: Serial of the call a reply or error answers.
        flags: :class:`CallFlags` of a method call.
        error_name: Error name of an error reply.
        error_message: Human-readable text of an error reply.

    """

    type: MessageType
    serial: int
    body: tuple[Any, ...] = ()
    signature: str = ""
    path: str = ""
    interface: str = ""
    member: str = ""
    reply_serial: int = 0
    flags: CallFlags = CallFlags.NONE
    error_name: str = ""
    error_message: str = ""

    @classmethod
    def method_call(
        cls,
        serial: int,
        path: str,
        interface: str,
        member: str,
        body: tuple[Any, ...] = (),
        signature: str = "",
        flags: CallFlags = CallFlags.NONE,
    ) -> BusMessage:
        """Build a method call."""
        return cls(
            MessageType.METHOD_CALL,
            serial,
            body=body,
            signature=signature,
            path=path,
            interface=interface,
            member=member,
            flags=flags,
        )

    @classmethod
    def method_return(
        cls, serial: int, call: BusMessage, body: tuple[Any, ...] = (), signature: str = ""
    ) -> BusMessage:
        """Build the successful reply to *call*."""
        return cls(MessageType.METHOD_RETURN, serial, body=body, signature=signature, reply_serial=call.serial)

    @classmethod
    def error(cls, serial: int, call: BusMessage, name: str, message: str) -> BusMessage:
        """Build the error reply to *call*."""
        return cls(MessageType.ERROR, serial, reply_serial=call.serial, error_name=name, error_message=message)

    @classmethod
    def signal(
        cls,
        serial: int,
        path: str,
        interface: str,
        member: str,
        body: tuple[Any, ...] = (),
        signature: str = "",
    ) -> BusMessage:
        """Build a signal."""
        return cls(
            MessageType.SIGNAL,
            serial,
            body=body,
            signature=signature,
            path=path,
            interface=interface,
            member=member,
        )

    @property
    def reply_shape(self) -> str:
        """The body signature in parentheses, e.g. ``"(o)"``."""
        return f"({self.signature})"


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _header(msg: BusMessage) -> pa.KeyValueMetadata:
    header: dict[bytes, bytes] = {
        PROTOCOL_VERSION_KEY: PROTOCOL_VERSION,
        MESSAGE_TYPE_KEY: msg.type.value.encode(),
        SERIAL_KEY: str(msg.serial).encode(),
        SIGNATURE_KEY: msg.signature.encode(),
    }
    if msg.path:
        header[PATH_KEY] = msg.path.encode()
    if msg.interface:
        header[INTERFACE_KEY] = msg.interface.encode()
    if msg.member:
        header[MEMBER_KEY] = msg.member.encode()
    if msg.reply_serial:
        header[REPLY_SERIAL_KEY] = str(msg.reply_serial).encode()
    if msg.flags:
        header[FLAGS_KEY] = str(int(msg.flags)).encode()
    if msg.error_name:
        header[ERROR_NAME_KEY] = msg.error_name.encode()
        header[ERROR_MESSAGE_KEY] = msg.error_message.encode()
    return pa.KeyValueMetadata(header)


def encode_message(msg: BusMessage) -> bytes:
    """Encode *msg* as one length-prefixed frame.

    Raises:
        TypeError: If the body does not match the signature.
        ValueError: If a body value is out of range or the frame is too large.

    """
    batch = encode_body(msg.body, msg.signature)
    buffer = BytesIO()
    with ipc.new_stream(buffer, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=_header(msg))
    data = buffer.getvalue()
    if len(data) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message of {len(data)} bytes exceeds the {MAX_MESSAGE_SIZE} byte limit")
    return _LENGTH.pack(len(data)) + data


def decode_message(data: bytes) -> BusMessage:
    """Decode the Arrow IPC payload of one frame (without the length prefix).

    Raises:
        WireError: If the payload is not a valid bus message.

    """
    try:
        with ipc.open_stream(pa.BufferReader(data)) as reader:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    except StopIteration:
        raise WireError("Frame holds no record batch") from None
    except pa.ArrowInvalid as exc:
        raise WireError(f"Frame is not a valid Arrow IPC stream: {exc}") from exc

    header = decode_metadata(custom_metadata)
    version = header.get(PROTOCOL_VERSION_KEY.decode())
    if version != PROTOCOL_VERSION.decode():
        raise WireError(f"Unsupported protocol version {version!r}")
    try:
        msg_type = MessageType(header.get(MESSAGE_TYPE_KEY.decode(), ""))
        signature = header.get(SIGNATURE_KEY.decode(), "")
        return BusMessage(
            type=msg_type,
            serial=int(header.get(SERIAL_KEY.decode(), "0")),
            body=decode_body(batch, signature),
            signature=signature,
            path=header.get(PATH_KEY.decode(), ""),
            interface=header.get(INTERFACE_KEY.decode(), ""),
            member=header.get(MEMBER_KEY.decode(), ""),
            reply_serial=int(header.get(REPLY_SERIAL_KEY.decode(), "0")),
            flags=CallFlags(int(header.get(FLAGS_KEY.decode(), "0"))),
            error_name=header.get(ERROR_NAME_KEY.decode(), ""),
            error_message=header.get(ERROR_MESSAGE_KEY.decode(), ""),
        )
    except ValueError as exc:
        raise WireError(f"Malformed message header or body: {exc}") from exc


# ---------------------------------------------------------------------------
# Socket I/O
# ---------------------------------------------------------------------------


def send_message(sock: socket.socket, msg: BusMessage) -> None:
    """Write *msg* to *sock* as a single frame.

    Raises:
        OSError: If the peer went away.

    """
    frame = encode_message(msg)
    sock.sendall(frame)
    if wire_message_logger.isEnabledFor(logging.DEBUG):
        wire_message_logger.debug("send fd=%d %s", sock.fileno(), fmt_message(msg))
    if _WIRE_DEBUG:
        _get_wire_log().debug(
            "wire_send", message=msg.type.value, serial=msg.serial, member=msg.member, nbytes=len(frame)
        )


def _recv_exact(sock: socket.socket, size: int, deadline: float | None, *, at_boundary: bool) -> bytes | None:
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        if deadline is not None:
            left = deadline - time.monotonic()
            if left <= 0:
                raise TimeoutError("timed out reading a frame")
            sock.settimeout(left)
        chunk = sock.recv(remaining)
        if not chunk:
            if at_boundary and remaining == size:
                return None
            raise WireError(f"Connection closed mid-frame ({size - remaining} of {size} bytes)")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def recv_message(sock: socket.socket, timeout: float | None = None) -> BusMessage | None:
    """Read one frame from *sock*.

    Args:
        sock: A blocking stream socket.
        timeout: Seconds to wait for the complete frame, or ``None`` to wait
            indefinitely.

    Returns:
        The decoded message, or ``None`` if the peer closed the connection
        cleanly between frames.

    Raises:
        TimeoutError: If the frame did not arrive within *timeout*.
        WireError: If the connection closed mid-frame or the frame is invalid.

    """
    deadline = None if timeout is None else time.monotonic() + timeout
    previous = sock.gettimeout()
    try:
        if deadline is None:
            sock.settimeout(None)
        prefix = _recv_exact(sock, _LENGTH.size, deadline, at_boundary=True)
        if prefix is None:
            return None
        (size,) = _LENGTH.unpack(prefix)
        if size > MAX_MESSAGE_SIZE:
            raise WireError(f"Frame of {size} bytes exceeds the {MAX_MESSAGE_SIZE} byte limit")
        payload = _recv_exact(sock, size, deadline, at_boundary=False)
        assert payload is not None
    finally:
        sock.settimeout(previous)
    msg = decode_message(payload)
    if wire_message_logger.isEnabledFor(logging.DEBUG):
        wire_message_logger.debug("recv fd=%d %s", sock.fileno(), fmt_message(msg))
    if _WIRE_DEBUG:
        _get_wire_log().debug("wire_recv", message=msg.type.value, serial=msg.serial, member=msg.member, nbytes=size)
    return msg
