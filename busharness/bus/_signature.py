"""Type signatures and their Arrow representation.

Message bodies are described by D-Bus-style signature strings, a sequence
of *complete types*:

==========  ==============================  =========================
Code        Python value                    Arrow type
==========  ==============================  =========================
``s``       ``str``                         ``string``
``o``       ``str`` (object path)           ``string``
``b``       ``bool``                        ``bool``
``y``       ``int`` (0..255)                ``uint8``
``i`` `u`   ``int``                         ``int32`` / ``uint32``
``x`` `t`   ``int``                         ``int64`` / ``uint64``
``d``       ``float``                       ``float64``
``v``       JSON-compatible value / bytes   ``string`` (JSON text)
``ay``      ``bytes``                       ``binary``
``aT``      ``list``                        ``list<T>``
``a{KV}``   ``dict``                        ``map<K, V>``
==========  ==============================  =========================

A body is one Arrow record batch with a single row and one column per
complete type (``arg0``, ``arg1``, ...).  Variants travel as JSON text; bytes
inside a variant are tagged as ``{"$bytes": "<base64>"}``.

Server-side method signatures are derived from Python type hints by
:func:`signature_of`, so that exported objects can be described with plain
``Protocol`` classes.
"""

from __future__ import annotations

import base64
import functools
import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Annotated, Any, NewType, get_args, get_origin

import pyarrow as pa

__all__ = [
    "BusSignature",
    "ObjectPath",
    "Variant",
    "arrow_type",
    "body_schema",
    "decode_body",
    "encode_body",
    "is_object_path",
    "signature_of",
    "split_signature",
]

ObjectPath = NewType("ObjectPath", str)
"""Annotation for object path values (signature ``o``)."""

Variant = NewType("Variant", object)
"""Annotation for dynamically typed values (signature ``v``)."""

_BASIC_TYPES: dict[str, pa.DataType] = {
    "s": pa.string(),
    "o": pa.string(),
    "b": pa.bool_(),
    "y": pa.uint8(),
    "i": pa.int32(),
    "u": pa.uint32(),
    "x": pa.int64(),
    "t": pa.uint64(),
    "d": pa.float64(),
}

_INT_RANGES: dict[str, tuple[int, int]] = {
    "y": (0, 2**8 - 1),
    "i": (-(2**31), 2**31 - 1),
    "u": (0, 2**32 - 1),
    "x": (-(2**63), 2**63 - 1),
    "t": (0, 2**64 - 1),
}

_OBJECT_PATH_RE = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")
_BYTES_TAG = "$bytes"


@dataclass(frozen=True)
class BusSignature:
    """Annotation marker overriding the inferred signature of a hint.

    Use with ``Annotated`` when the default mapping is not what the wire
    should carry::

        def set_mtu(self, mtu: Annotated[int, BusSignature("u")]) -> None: ...

    """

    signature: str


def is_object_path(value: object) -> bool:
    """Return whether *value* is a syntactically valid object path."""
    return isinstance(value, str) and _OBJECT_PATH_RE.match(value) is not None


# ---------------------------------------------------------------------------
# Signature parsing
# ---------------------------------------------------------------------------


def _next_type(sig: str, i: int) -> int:
    """Return the end index of the complete type starting at *i*."""
    if i >= len(sig):
        raise ValueError(f"Truncated signature {sig!r}")
    code = sig[i]
    if code in _BASIC_TYPES or code == "v":
        return i + 1
    if code == "a":
        if i + 1 < len(sig) and sig[i + 1] == "{":
            key_end = _next_type(sig, i + 2)
            if sig[i + 2] not in _BASIC_TYPES:
                raise ValueError(f"Dict key must be a basic type in signature {sig!r}")
            value_end = _next_type(sig, key_end)
            if value_end >= len(sig) or sig[value_end] != "}":
                raise ValueError(f"Unterminated dict entry in signature {sig!r}")
            return value_end + 1
        return _next_type(sig, i + 1)
    raise ValueError(f"Unknown type code {code!r} in signature {sig!r}")


@functools.lru_cache(maxsize=256)
def split_signature(sig: str) -> tuple[str, ...]:
    """Split *sig* into its complete types.

    Raises:
        ValueError: If *sig* is not a valid signature.

    """
    types: list[str] = []
    i = 0
    while i < len(sig):
        end = _next_type(sig, i)
        types.append(sig[i:end])
        i = end
    return tuple(types)


@functools.lru_cache(maxsize=256)
def arrow_type(sig: str) -> pa.DataType:
    """Return the Arrow type of the single complete type *sig*."""
    if sig in _BASIC_TYPES:
        return _BASIC_TYPES[sig]
    if sig == "v":
        return pa.string()
    if sig == "ay":
        return pa.binary()
    if sig.startswith("a{"):
        key = sig[2]
        return pa.map_(arrow_type(key), arrow_type(sig[3:-1]))
    if sig.startswith("a"):
        return pa.list_(arrow_type(sig[1:]))
    raise ValueError(f"Not a complete type: {sig!r}")


@functools.lru_cache(maxsize=256)
def body_schema(sig: str) -> pa.Schema:
    """Return the Arrow schema of a message body with signature *sig*."""
    return pa.schema([pa.field(f"arg{i}", arrow_type(t)) for i, t in enumerate(split_signature(sig))])


# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _variant_to_json(value: object) -> object:
    if isinstance(value, bytes | bytearray):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, Mapping):
        return {str(k): _variant_to_json(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_variant_to_json(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    raise TypeError(f"Cannot carry {type(value).__name__} in a variant")


def _variant_from_json(value: object) -> object:
    if isinstance(value, dict):
        if len(value) == 1 and _BYTES_TAG in value:
            return base64.b64decode(value[_BYTES_TAG])
        return {k: _variant_from_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_variant_from_json(v) for v in value]
    return value


def _to_wire(value: object, sig: str) -> object:
    """Convert a Python value of complete type *sig* to its Arrow-ready form."""
    if sig == "v":
        return json.dumps(_variant_to_json(value), sort_keys=True)
    if sig in ("s", "o"):
        if not isinstance(value, str):
            raise TypeError(f"Expected str for {sig!r}, got {type(value).__name__}")
        if sig == "o" and not is_object_path(value):
            raise ValueError(f"Invalid object path {value!r}")
        return value
    if sig == "b":
        if not isinstance(value, bool):
            raise TypeError(f"Expected bool for 'b', got {type(value).__name__}")
        return value
    if sig in _INT_RANGES:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Expected int for {sig!r}, got {type(value).__name__}")
        low, high = _INT_RANGES[sig]
        if not low <= value <= high:
            raise ValueError(f"Value {value} out of range for {sig!r}")
        return value
    if sig == "d":
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise TypeError(f"Expected float for 'd', got {type(value).__name__}")
        return float(value)
    if sig == "ay":
        if not isinstance(value, bytes | bytearray):
            raise TypeError(f"Expected bytes for 'ay', got {type(value).__name__}")
        return bytes(value)
    if sig.startswith("a{"):
        if not isinstance(value, Mapping):
            raise TypeError(f"Expected a mapping for {sig!r}, got {type(value).__name__}")
        key_sig, value_sig = sig[2], sig[3:-1]
        return [(_to_wire(k, key_sig), _to_wire(v, value_sig)) for k, v in value.items()]
    if sig.startswith("a"):
        if isinstance(value, str | bytes) or not isinstance(value, Sequence):
            raise TypeError(f"Expected a sequence for {sig!r}, got {type(value).__name__}")
        return [_to_wire(v, sig[1:]) for v in value]
    raise ValueError(f"Not a complete type: {sig!r}")


def _from_wire(value: object, sig: str) -> object:
    """Inverse of :func:`_to_wire` applied to ``as_py()`` output."""
    if value is None:
        return None
    if sig == "v":
        assert isinstance(value, str)
        return _variant_from_json(json.loads(value))
    if sig.startswith("a{"):
        key_sig, value_sig = sig[2], sig[3:-1]
        assert isinstance(value, list)
        return {_from_wire(k, key_sig): _from_wire(v, value_sig) for k, v in value}
    if sig.startswith("a") and sig != "ay":
        assert isinstance(value, list)
        return [_from_wire(v, sig[1:]) for v in value]
    return value


def encode_body(args: Sequence[object], sig: str) -> pa.RecordBatch:
    """Encode *args* as a single-row record batch following *sig*.

    Raises:
        TypeError: If the number or the types of *args* do not match *sig*.
        ValueError: If a value is out of range for its type.

    """
    types = split_signature(sig)
    if len(args) != len(types):
        raise TypeError(f"Signature {sig!r} expects {len(types)} argument(s), got {len(args)}")
    schema = body_schema(sig)
    if not types:
        return pa.RecordBatch.from_pydict({}, schema=schema)
    arrays = [pa.array([_to_wire(arg, t)], type=f.type) for arg, t, f in zip(args, types, schema, strict=True)]
    return pa.RecordBatch.from_arrays(arrays, schema=schema)


def decode_body(batch: pa.RecordBatch, sig: str) -> tuple[Any, ...]:
    """Decode a body batch produced by :func:`encode_body`.

    Raises:
        ValueError: If the batch does not have the shape *sig* describes.

    """
    types = split_signature(sig)
    if not types:
        if batch.num_columns != 0:
            raise ValueError(f"Empty signature but body has {batch.num_columns} column(s)")
        return ()
    expected = body_schema(sig)
    if not batch.schema.equals(expected):
        raise ValueError(f"Body schema {batch.schema} does not match signature {sig!r}")
    if batch.num_rows != 1:
        raise ValueError(f"Body must have exactly one row, got {batch.num_rows}")
    return tuple(_from_wire(batch.column(i)[0].as_py(), t) for i, t in enumerate(types))


# ---------------------------------------------------------------------------
# Python type hints -> signature
# ---------------------------------------------------------------------------


def signature_of(hint: Any) -> str:
    """Derive the signature carried on the wire for a Python type hint.

    Supports ``str``, ``bool``, ``int`` (``x``), ``float``, ``bytes``,
    :data:`ObjectPath`, :data:`Variant`, ``list[T]``, ``dict[K, V]``,
    ``tuple[...]`` (concatenated, for multiple return values), ``None``
    (empty) and ``Annotated[T, BusSignature(...)]``.

    Raises:
        TypeError: If the hint has no wire representation.

    """
    if hint is None or hint is type(None):
        return ""
    if get_origin(hint) is Annotated:
        args = get_args(hint)
        for arg in args[1:]:
            if isinstance(arg, BusSignature):
                split_signature(arg.signature)
                return arg.signature
        return signature_of(args[0])
    if hint is ObjectPath:
        return "o"
    if hint is Variant:
        return "v"
    if hasattr(hint, "__supertype__"):
        return signature_of(hint.__supertype__)

    simple: dict[Any, str] = {str: "s", bool: "b", int: "x", float: "d", bytes: "ay"}
    if hint in simple:
        return simple[hint]

    origin = get_origin(hint)
    args = get_args(hint)
    if origin is list and args:
        return "a" + signature_of(args[0])
    if origin is dict and len(args) == 2:
        key = signature_of(args[0])
        if key not in _BASIC_TYPES:
            raise TypeError(f"Dict key type {args[0]!r} is not a basic type")
        return "a{" + key + signature_of(args[1]) + "}"
    if origin is tuple:
        return "".join(signature_of(a) for a in args if a is not Ellipsis)
    raise TypeError(f"Cannot derive a bus signature for {hint!r}")
