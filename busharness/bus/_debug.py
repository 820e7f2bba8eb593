"""Debug logging infrastructure for bus wire diagnostics.

Provides logger instances under the ``busharness.wire.*`` hierarchy and
formatting helpers for bus messages.  Enabling
``logging.getLogger("busharness.wire").setLevel(logging.DEBUG)`` shows every
frame that crosses a socket.

All formatting helpers return ``str`` and never log directly.  They are meant
to be called inside ``isEnabledFor`` guards so there is no overhead when debug
logging is disabled.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from busharness.bus._wire import BusMessage

# ---------------------------------------------------------------------------
# Logger hierarchy: busharness.wire.*
# ---------------------------------------------------------------------------

wire_message_logger = logging.getLogger("busharness.wire.message")
"""Message serialization / deserialization."""

wire_transport_logger = logging.getLogger("busharness.wire.transport")
"""Socket lifecycle (connect, bind, close)."""

wire_signal_logger = logging.getLogger("busharness.wire.signal")
"""Signal emission and delivery."""

_MAX_VALUE_LEN = 80
"""Maximum repr length for a message body in :func:`fmt_message`."""


def fmt_message(msg: BusMessage) -> str:
    """Format a bus message compactly.

    Returns:
        ``"method_call #3 /org/x org.x.Iface.Member (s) body=('eth0',)"``

    """
    target = f"{msg.interface}.{msg.member}" if msg.interface else msg.member
    head = f"{msg.type.value} #{msg.serial}"
    if msg.reply_serial:
        head += f" -> #{msg.reply_serial}"
    if msg.path:
        head += f" {msg.path}"
    if target:
        head += f" {target}"
    if msg.error_name:
        head += f" {msg.error_name}: {msg.error_message}"
    body = repr(msg.body)
    if len(body) > _MAX_VALUE_LEN:
        body = body[:_MAX_VALUE_LEN] + "..."
    return f"{head} ({msg.signature}) body={body}"
