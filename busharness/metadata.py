"""Well-known ``pa.KeyValueMetadata`` keys for bus message headers.

Every bus message is a single Arrow record batch whose custom metadata carries
the message header.  The keys live here so that the framing code, the server
and the debug helpers agree on a single spelling.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "ERROR_MESSAGE_KEY",
    "ERROR_NAME_KEY",
    "FLAGS_KEY",
    "INTERFACE_KEY",
    "MEMBER_KEY",
    "MESSAGE_TYPE_KEY",
    "PATH_KEY",
    "PROTOCOL_VERSION",
    "PROTOCOL_VERSION_KEY",
    "REPLY_SERIAL_KEY",
    "SERIAL_KEY",
    "SIGNATURE_KEY",
    "decode_metadata",
]

# ---------------------------------------------------------------------------
# Header keys (bytes, matching what appears on the wire)
# ---------------------------------------------------------------------------

MESSAGE_TYPE_KEY = b"busharness.type"
SERIAL_KEY = b"busharness.serial"
REPLY_SERIAL_KEY = b"busharness.reply_serial"
PATH_KEY = b"busharness.path"
INTERFACE_KEY = b"busharness.interface"
MEMBER_KEY = b"busharness.member"
SIGNATURE_KEY = b"busharness.signature"
FLAGS_KEY = b"busharness.flags"
ERROR_NAME_KEY = b"busharness.error_name"
ERROR_MESSAGE_KEY = b"busharness.error_message"
PROTOCOL_VERSION_KEY = b"busharness.protocol_version"
PROTOCOL_VERSION = b"1"


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Decode ``pa.KeyValueMetadata`` to a plain ``dict[str, str]`` (empty for ``None``)."""
    if metadata is None:
        return {}
    result: dict[str, str] = {}
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        result[key] = val
    return result
