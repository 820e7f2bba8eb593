# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Race a bus-name probe against the exit of the child that should own the name."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Any, TypeAlias

from busharness.bus import BusConnection
from busharness.mainloop import (
    SOURCE_CONTINUE,
    SOURCE_REMOVE,
    ChildWatchSource,
    MainContext,
    MainLoop,
    TimeoutSource,
    run_loop,
)

__all__ = ["ChildExited", "ReadinessOutcome", "ReadinessRace", "Ready", "TimedOut"]

_logger = logging.getLogger("busharness.readiness")


@dataclass(frozen=True)
class Ready:
    """The name became owned before the child exited."""


@dataclass(frozen=True)
class ChildExited:
    """The child exited before the name became owned.

    Attributes:
        exit_status: ``Popen.returncode`` of the child (negative for a signal).

    """

    exit_status: int


@dataclass(frozen=True)
class TimedOut:
    """Neither event happened before the deadline."""


ReadinessOutcome: TypeAlias = Ready | ChildExited | TimedOut


class ReadinessRace:
    """Decide whether *process* came up on the bus as *name*.

    A repeating timer probes the name every *poll_interval* seconds while a
    child watch waits for the process to exit; both run on a private
    context driven for at most *deadline* seconds.  Each probe is a
    non-activating name query bounded by *probe_timeout*.
    """

    __slots__ = ("_bus", "_deadline", "_name", "_poll_interval", "_probe_timeout", "_process")

    def __init__(
        self,
        bus: BusConnection,
        name: str,
        process: subprocess.Popen[Any],
        *,
        poll_interval: float = 0.05,
        deadline: float = 30.0,
        probe_timeout: float = 0.25,
    ) -> None:
        """Initialize the race for one start attempt."""
        self._bus = bus
        self._name = name
        self._process = process
        self._poll_interval = poll_interval
        self._deadline = deadline
        self._probe_timeout = probe_timeout

    @property
    def deadline(self) -> float:
        """Overall deadline in seconds."""
        return self._deadline

    def run(self) -> ReadinessOutcome:
        """Run the race to completion and return its single outcome."""
        context = MainContext("readiness")
        loop = MainLoop(context)
        outcome: ReadinessOutcome | None = None

        def _probe_name() -> bool:
            nonlocal outcome
            if outcome is not None:
                return SOURCE_REMOVE
            if not self._bus.name_has_owner(self._name, self._probe_timeout):
                return SOURCE_CONTINUE
            outcome = Ready()
            loop.quit()
            return SOURCE_REMOVE

        def _child_exited(pid: int, status: int) -> bool:
            nonlocal outcome
            if outcome is None:
                outcome = ChildExited(status)
            loop.quit()
            return SOURCE_REMOVE

        probe = TimeoutSource(self._poll_interval, _probe_name)
        watch = ChildWatchSource(self._process, _child_exited, fallback_interval=self._poll_interval)
        probe.attach(context)
        watch.attach(context)
        try:
            finished = run_loop(loop, self._deadline)
        finally:
            probe.destroy()
            watch.destroy()

        if not finished or outcome is None:
            _logger.debug("pid %d: %s not owned after %.1fs", self._process.pid, self._name, self._deadline)
            return TimedOut()
        _logger.debug("pid %d: readiness outcome %r", self._process.pid, outcome)
        return outcome
