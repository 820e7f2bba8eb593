# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Harness configuration.

:class:`HarnessConfig` gathers every tunable of the harness: where the bus
lives, how to launch the stub service, and the deadlines and probabilities
used by the lifecycle controller and the bootstrap matrix.  Defaults mirror
the values the harness was designed around; :meth:`HarnessConfig.from_env`
overrides them from ``BUSHARNESS_*`` environment variables.
"""

from __future__ import annotations

import os
import shlex
import sys
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

__all__ = [
    "DEFAULT_INTERFACE",
    "DEFAULT_OBJECT_PATH",
    "DEFAULT_SERVICE_NAME",
    "MISSING_DEPENDENCY_EXIT_STATUS",
    "TEST_CONTROL_INTERFACE",
    "HarnessConfig",
    "default_bus_address",
]

DEFAULT_SERVICE_NAME = "org.busharness.StubService"
DEFAULT_OBJECT_PATH = "/org/busharness/StubService"
DEFAULT_INTERFACE = "org.busharness.StubService"
TEST_CONTROL_INTERFACE = "org.busharness.StubService.TestControl"

MISSING_DEPENDENCY_EXIT_STATUS = 77
"""Exit status with which the stub service announces it cannot run here."""

_ENV_PREFIX = "BUSHARNESS_"


def default_bus_address() -> str:
    """Return the bus directory used when none is configured.

    ``$BUSHARNESS_BUS_ADDRESS`` wins, then ``$XDG_RUNTIME_DIR/busharness``,
    then a directory under the system temp dir.
    """
    explicit = os.environ.get(f"{_ENV_PREFIX}BUS_ADDRESS")
    if explicit:
        return explicit
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if runtime_dir:
        return str(Path(runtime_dir) / "busharness")
    return str(Path(tempfile.gettempdir()) / f"busharness-{os.getuid()}")


def _default_service_command() -> tuple[str, ...]:
    return (sys.executable, "-m", "busharness.stub")


@dataclass(frozen=True)
class HarnessConfig:
    """Configuration for the lifecycle controller, control calls and bootstrap matrix.

    Attributes:
        bus_address: Directory acting as the bus; well-known names are Unix
            sockets inside it.
        service_name: Well-known bus name owned by the stub service.
        object_path: Object path of the stub's exported objects.
        interface: Interface carrying device listing and notifications.
        control_interface: Test-control interface used to inject state.
        service_command: Command launching the stub service.
        poll_interval: Period (seconds) of the readiness name probe.
        ready_deadline: Overall readiness deadline (seconds).
        probe_timeout: Timeout (seconds) of a single name probe.
        stop_deadline: Time (seconds) the child gets to honour SIGTERM.
        stop_poll_interval: Sleep (seconds) between exit polls at teardown.
        call_timeout: Per-call timeout (seconds) for control calls.
        device_watchdog: Time (seconds) the client gets to observe an added device.
        nested_context_probability: Chance a bootstrap trial uses a nested context.
        idle_dispatch_probability: Chance a bootstrap trial is dispatched from an idle callback.
        missing_dependency_exit_status: Exit status that means "skip, not fail".
        seed: Optional seed for the bootstrap matrix RNG.

    Raises:
        ValueError: If a timing value is not positive, a probability is
            outside ``[0, 1]``, or the service command is empty.

    """

    bus_address: str = field(default_factory=default_bus_address)
    service_name: str = DEFAULT_SERVICE_NAME
    object_path: str = DEFAULT_OBJECT_PATH
    interface: str = DEFAULT_INTERFACE
    control_interface: str = TEST_CONTROL_INTERFACE
    service_command: tuple[str, ...] = field(default_factory=_default_service_command)
    poll_interval: float = 0.05
    ready_deadline: float = 30.0
    probe_timeout: float = 0.25
    stop_deadline: float = 2.0
    stop_poll_interval: float = 0.02
    call_timeout: float = 3.0
    device_watchdog: float = 5.0
    nested_context_probability: float = 1 / 5
    idle_dispatch_probability: float = 1 / 3
    missing_dependency_exit_status: int = MISSING_DEPENDENCY_EXIT_STATUS
    seed: int | None = None

    def __post_init__(self) -> None:
        """Validate configuration values."""
        for name in (
            "poll_interval",
            "ready_deadline",
            "probe_timeout",
            "stop_deadline",
            "stop_poll_interval",
            "call_timeout",
            "device_watchdog",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        for name in ("nested_context_probability", "idle_dispatch_probability"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if not self.service_command:
            raise ValueError("service_command must not be empty")
        if not self.object_path.startswith("/"):
            raise ValueError(f"object_path must start with '/', got {self.object_path!r}")

    @property
    def service_description(self) -> str:
        """The service command as a single shell-quoted string (for diagnostics)."""
        return shlex.join(self.service_command)

    def child_environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the environment for the stub service process."""
        env = dict(os.environ if base is None else base)
        env[f"{_ENV_PREFIX}BUS_ADDRESS"] = self.bus_address
        env[f"{_ENV_PREFIX}SERVICE_NAME"] = self.service_name
        return env

    def with_overrides(self, **changes: object) -> HarnessConfig:
        """Return a copy with *changes* applied (validated again)."""
        return replace(self, **changes)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> HarnessConfig:
        """Build a config from ``BUSHARNESS_*`` environment variables.

        Recognised variables: ``BUS_ADDRESS``, ``SERVICE_NAME``,
        ``SERVICE_COMMAND`` (shell syntax), ``POLL_INTERVAL``,
        ``READY_DEADLINE``, ``PROBE_TIMEOUT``, ``STOP_DEADLINE``,
        ``STOP_POLL_INTERVAL``, ``CALL_TIMEOUT``, ``DEVICE_WATCHDOG``,
        ``NESTED_CONTEXT_PROBABILITY``, ``IDLE_DISPATCH_PROBABILITY`` and
        ``SEED``.

        Raises:
            ValueError: If a variable cannot be parsed.

        """
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}

        def _get(name: str) -> str | None:
            value = env.get(f"{_ENV_PREFIX}{name}")
            return value if value else None

        if (address := _get("BUS_ADDRESS")) is not None:
            kwargs["bus_address"] = address
        if (name := _get("SERVICE_NAME")) is not None:
            kwargs["service_name"] = name
        if (command := _get("SERVICE_COMMAND")) is not None:
            kwargs["service_command"] = tuple(shlex.split(command))

        for attr in (
            "poll_interval",
            "ready_deadline",
            "probe_timeout",
            "stop_deadline",
            "stop_poll_interval",
            "call_timeout",
            "device_watchdog",
            "nested_context_probability",
            "idle_dispatch_probability",
        ):
            raw = _get(attr.upper())
            if raw is None:
                continue
            try:
                kwargs[attr] = float(raw)
            except ValueError:
                raise ValueError(f"{_ENV_PREFIX}{attr.upper()} must be a number, got {raw!r}") from None

        if (seed := _get("SEED")) is not None:
            try:
                kwargs["seed"] = int(seed)
            except ValueError:
                raise ValueError(f"{_ENV_PREFIX}SEED must be an integer, got {seed!r}") from None

        return cls(**kwargs)  # type: ignore[arg-type]
