# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""A small local message bus with typed calls and signals over Arrow IPC.

Public API
----------
BusConnection : Client connection (name queries, sync/async calls, subscriptions).
BusProxy : Typed handle to one interface of one remote object.
Subscription : Signal delivery attached to a main context.
BusServer : Name owner exporting Protocol-described objects.
BusMessage, MessageType : Wire messages.
BusError, BusTimeoutError, ServiceUnknownError : Call failures.
CallFlags : Per-call header flags.
ObjectPath, Variant, BusSignature : Type hint markers for signatures.
"""

from busharness.bus._common import (
    DEFAULT_CALL_TIMEOUT,
    ERROR_DISCONNECTED,
    ERROR_FAILED,
    ERROR_INVALID_ARGS,
    ERROR_INVALID_MESSAGE,
    ERROR_NAME_TAKEN,
    ERROR_NO_REPLY,
    ERROR_SERVICE_UNKNOWN,
    ERROR_UNKNOWN_METHOD,
    ERROR_UNKNOWN_OBJECT,
    PEER_INTERFACE,
    PEER_PATH,
    BusError,
    BusTimeoutError,
    CallFlags,
    ServiceUnknownError,
    error_from_reply,
)
from busharness.bus._connection import BusConnection, BusProxy, SignalHandler, Subscription
from busharness.bus._server import BusMethodInfo, BusServer, bus_methods, member_name
from busharness.bus._signature import (
    BusSignature,
    ObjectPath,
    Variant,
    arrow_type,
    body_schema,
    decode_body,
    encode_body,
    is_object_path,
    signature_of,
    split_signature,
)
from busharness.bus._wire import (
    MAX_MESSAGE_SIZE,
    BusMessage,
    MessageType,
    WireError,
    decode_message,
    encode_message,
    recv_message,
    send_message,
)

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
    "MAX_MESSAGE_SIZE",
    "PEER_INTERFACE",
    "PEER_PATH",
    "BusConnection",
    "BusError",
    "BusMessage",
    "BusMethodInfo",
    "BusProxy",
    "BusServer",
    "BusSignature",
    "BusTimeoutError",
    "CallFlags",
    "MessageType",
    "ObjectPath",
    "ServiceUnknownError",
    "SignalHandler",
    "Subscription",
    "Variant",
    "WireError",
    "arrow_type",
    "body_schema",
    "bus_methods",
    "decode_body",
    "decode_message",
    "encode_body",
    "encode_message",
    "error_from_reply",
    "is_object_path",
    "member_name",
    "recv_message",
    "send_message",
    "signature_of",
    "split_signature",
]
