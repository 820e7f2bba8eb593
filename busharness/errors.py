# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Error taxonomy for the harness.

Only :class:`EnvironmentUnavailable` is recoverable, and it is a *value*
returned by :meth:`~busharness.service.ServiceLifecycle.start` rather than an
exception.  Everything else derives from :class:`HarnessError`, which is an
``AssertionError`` so that pytest reports it as a failure of the running test.
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "EnvironmentUnavailable",
    "HarnessError",
    "HarnessInternalError",
    "HarnessTimeout",
    "ProtocolViolation",
    "ServiceStartError",
]


@dataclass(frozen=True)
class EnvironmentUnavailable:
    """The stub service cannot run here; the calling test should skip.

    Attributes:
        reason: Human-readable skip message.
        exit_status: Exit status reported by the stub service.

    """

    reason: str
    exit_status: int


class HarnessError(AssertionError):
    """Base class for fatal harness conditions."""


class HarnessTimeout(HarnessError):
    """A bounded wait (readiness, teardown, reply, notification) expired."""

    def __init__(self, message: str, *, deadline: float) -> None:
        """Initialize with the message and the deadline (seconds) that elapsed."""
        self.deadline = deadline
        super().__init__(f"{message} (deadline {deadline:g}s)")


class ProtocolViolation(HarnessError):
    """A remote reply or a construction trial had an unexpected shape."""

    def __init__(self, message: str, *, reply_shape: str | None = None) -> None:
        """Initialize with the message and, when known, the offending reply shape."""
        self.reply_shape = reply_shape
        if reply_shape is not None:
            message = f"{message} (reply shape {reply_shape!r})"
        super().__init__(message)


class HarnessInternalError(HarnessError):
    """Leftover process or bus registration detected after teardown."""


class ServiceStartError(HarnessError):
    """The stub service exited during startup with a non-skip exit status."""

    def __init__(self, message: str, *, exit_status: int) -> None:
        """Initialize with the message and the child's exit status."""
        self.exit_status = exit_status
        super().__init__(f"{message} (exit status {exit_status})")
