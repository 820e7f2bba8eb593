# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Lifecycle of the out-of-process stub service.

:class:`ServiceLifecycle` spawns the stub with its stdin connected to a pipe
held by the harness (the *keep-alive* descriptor: when the harness dies the
pipe closes and the stub exits on its own), waits for it to own its bus name
through a :class:`~busharness.readiness.ReadinessRace`, and tears it down
again with SIGTERM, a bounded exit poll and SIGKILL as the last resort.

Only one outcome of :meth:`ServiceLifecycle.start` is recoverable: the stub
exiting with the reserved missing-dependency status, reported as an
:class:`~busharness.errors.EnvironmentUnavailable` value.  Everything else
raises a :class:`~busharness.errors.HarnessError`.

Usage::

    result = start_service()
    handle = service_available(result)   # pytest.skip() on EnvironmentUnavailable
    with handle:
        add_wired_device(handle, client, "eth7")
"""

from __future__ import annotations

import contextlib
import logging
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any, BinaryIO

from busharness.bus import BusConnection, BusProxy
from busharness.config import HarnessConfig
from busharness.errors import (
    EnvironmentUnavailable,
    HarnessInternalError,
    HarnessTimeout,
    ServiceStartError,
)
from busharness.readiness import ChildExited, Ready, ReadinessRace, TimedOut

__all__ = [
    "ServiceHandle",
    "ServiceLifecycle",
    "ServiceState",
    "StderrMode",
    "service_available",
    "start_service",
    "stop_service",
]

_logger = logging.getLogger("busharness.service")


class ServiceState(Enum):
    """Lifecycle state of a :class:`ServiceHandle`."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class StderrMode(Enum):
    """How to handle the stub service's stderr.

    Members:
        INHERIT: Child stderr goes to the harness's stderr (default).
        PIPE: The harness drains child stderr via a daemon thread and
            forwards each line to the ``busharness.stub.stderr`` logger.
        DEVNULL: Child stderr discarded at OS level.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


def _drain_stderr(pipe: BinaryIO, logger: logging.Logger) -> None:
    """Drain child stderr line-by-line. Runs in the harness as a daemon thread."""
    try:
        for raw_line in pipe:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(line)
    except (OSError, ValueError):
        _logger.debug("stderr drain ended", exc_info=True)
    with contextlib.suppress(OSError, ValueError):
        pipe.close()


@dataclass(eq=False)
class ServiceHandle:
    """A running (or partially started) stub service.

    The process, the bus connection, the control proxy and the keep-alive
    descriptor are established together and released together by
    :meth:`ServiceLifecycle.stop`.  Leaving a ``with`` block stops the
    service.

    Attributes:
        config: Configuration the service was started with.
        process: The stub process, ``None`` once reaped.
        bus: The harness's bus connection, ``None`` once closed.
        proxy: Proxy to the test-control interface, ``None`` until ready.
        keepalive: Write end of the child's stdin, ``None`` once closed.
        state: Current lifecycle state.

    """

    config: HarnessConfig
    process: subprocess.Popen[bytes] | None = None
    bus: BusConnection | None = None
    proxy: BusProxy | None = None
    keepalive: IO[bytes] | None = None
    state: ServiceState = ServiceState.STOPPED
    _lifecycle: ServiceLifecycle | None = field(default=None, repr=False)
    _stderr_thread: threading.Thread | None = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        """Process id of the stub, or ``None`` once reaped."""
        return None if self.process is None else self.process.pid

    @property
    def running(self) -> bool:
        """Whether the service reached :attr:`ServiceState.RUNNING` and was not stopped."""
        return self.state is ServiceState.RUNNING

    def __enter__(self) -> ServiceHandle:
        """Return self."""
        return self

    def __exit__(self, *exc: object) -> None:
        """Stop the service."""
        lifecycle = self._lifecycle if self._lifecycle is not None else ServiceLifecycle(self.config)
        lifecycle.stop(self)


class ServiceLifecycle:
    """Start and stop the stub service described by *config*."""

    __slots__ = ("_config", "_stderr")

    def __init__(self, config: HarnessConfig | None = None, *, stderr: StderrMode = StderrMode.INHERIT) -> None:
        """Initialize with a config (defaults from the environment) and the stderr mode."""
        self._config = config if config is not None else HarnessConfig.from_env()
        self._stderr = stderr

    @property
    def config(self) -> HarnessConfig:
        """The configuration in use."""
        return self._config

    # -- start ---------------------------------------------------------------

    def start(self) -> ServiceHandle | EnvironmentUnavailable:
        """Spawn the stub service and wait until it owns its bus name.

        Returns:
            A running :class:`ServiceHandle`, or :class:`EnvironmentUnavailable`
            if the stub exited with the missing-dependency status.  In the
            latter case everything was already cleaned up.

        Raises:
            HarnessInternalError: If the name is already owned before the spawn,
                or the command cannot be spawned.
            ServiceStartError: If the stub exited during startup with any
                other status.
            HarnessTimeout: If the stub neither came up nor exited within
                the readiness deadline.

        """
        config = self._config
        description = config.service_description
        bus = BusConnection.connect(config.bus_address)
        handle = ServiceHandle(config=config, bus=bus, state=ServiceState.STARTING, _lifecycle=self)

        if bus.name_has_owner(config.service_name, config.probe_timeout):
            bus.close()
            handle.bus = None
            handle.state = ServiceState.STOPPED
            raise HarnessInternalError(f"{config.service_name} is already owned on {config.bus_address}")

        if self._stderr == StderrMode.DEVNULL:
            stderr_arg: int | None = subprocess.DEVNULL
        elif self._stderr == StderrMode.PIPE:
            stderr_arg = subprocess.PIPE
        else:
            stderr_arg = None
        try:
            process = subprocess.Popen(
                list(config.service_command),
                stdin=subprocess.PIPE,
                stderr=stderr_arg,
                env=config.child_environment(),
                bufsize=0,
            )
        except OSError as exc:
            bus.close()
            handle.bus = None
            handle.state = ServiceState.STOPPED
            raise HarnessInternalError(f"could not spawn stub service {description}: {exc}") from exc
        handle.process = process
        handle.keepalive = process.stdin
        _logger.info("spawned stub service pid=%d: %s", process.pid, description)

        if self._stderr == StderrMode.PIPE:
            assert process.stderr is not None
            handle._stderr_thread = threading.Thread(
                target=_drain_stderr,
                args=(process.stderr, logging.getLogger("busharness.stub.stderr")),
                name=f"stub-stderr-{process.pid}",
                daemon=True,
            )
            handle._stderr_thread.start()

        outcome = ReadinessRace(
            bus,
            config.service_name,
            process,
            poll_interval=config.poll_interval,
            deadline=config.ready_deadline,
            probe_timeout=config.probe_timeout,
        ).run()

        if isinstance(outcome, Ready):
            handle.proxy = BusProxy(bus, config.service_name, config.object_path, config.control_interface)
            handle.state = ServiceState.RUNNING
            _logger.info("stub service pid=%d owns %s", process.pid, config.service_name)
            return handle

        if isinstance(outcome, ChildExited):
            # Already reaped by the child watch; nothing left to signal.
            handle.process = None
            self.stop(handle)
            if outcome.exit_status == config.missing_dependency_exit_status:
                reason = f"missing dependency for running the stub service {description}"
                _logger.info("%s (exit status %d)", reason, outcome.exit_status)
                return EnvironmentUnavailable(reason=reason, exit_status=outcome.exit_status)
            raise ServiceStartError(
                f"stub service {description} exited during startup", exit_status=outcome.exit_status
            )

        assert isinstance(outcome, TimedOut)
        process.kill()
        process.wait()
        handle.process = None
        self.stop(handle)
        raise HarnessTimeout(f"stub service {description} did not start in time", deadline=config.ready_deadline)

    # -- stop ----------------------------------------------------------------

    def _terminate(self, process: subprocess.Popen[bytes]) -> None:
        """SIGTERM *process* and poll for its exit; SIGKILL past the deadline.

        Raises:
            HarnessTimeout: If the process ignored SIGTERM (it is killed and
                reaped before raising).

        """
        config = self._config
        if process.poll() is not None:
            return
        process.send_signal(signal.SIGTERM)
        start = time.monotonic()
        while process.poll() is None:
            if time.monotonic() - start > config.stop_deadline:
                process.kill()
                process.wait()
                raise HarnessTimeout(
                    f"child process {process.pid} did not exit after SIGTERM", deadline=config.stop_deadline
                )
            time.sleep(config.stop_poll_interval)
        _logger.debug("stub service pid=%d exited with %s", process.pid, process.returncode)

    def stop(self, handle: ServiceHandle) -> None:
        """Tear the service down; a no-op on a stopped handle.

        Raises:
            HarnessTimeout: If the stub ignored SIGTERM for the stop deadline.
                It is killed, and the handle is fully released, before raising.
            HarnessInternalError: If the service name still resolves once the
                process is gone.

        """
        if handle.state is ServiceState.STOPPED:
            return
        handle.state = ServiceState.STOPPING
        if handle.keepalive is not None:
            with contextlib.suppress(OSError):
                handle.keepalive.close()
            handle.keepalive = None
        handle.proxy = None

        try:
            if handle.process is not None:
                process = handle.process
                try:
                    self._terminate(process)
                finally:
                    handle.process = None
        finally:
            if handle._stderr_thread is not None:
                handle._stderr_thread.join(timeout=5)
                handle._stderr_thread = None
            bus = handle.bus
            handle.bus = None
            handle.state = ServiceState.STOPPED
            if bus is not None:
                try:
                    leftover = bus.name_has_owner(self._config.service_name, self._config.probe_timeout)
                finally:
                    bus.close()
                if leftover:
                    raise HarnessInternalError(
                        f"{self._config.service_name} still resolves on {self._config.bus_address} after teardown"
                    )
        _logger.info("stub service stopped")


# ---------------------------------------------------------------------------
# Module-level convenience
# ---------------------------------------------------------------------------


def start_service(config: HarnessConfig | None = None, **kwargs: Any) -> ServiceHandle | EnvironmentUnavailable:
    """Start the stub service; see :meth:`ServiceLifecycle.start`."""
    return ServiceLifecycle(config, **kwargs).start()


def stop_service(handle: ServiceHandle | None) -> None:
    """Stop the stub service; ``None`` and stopped handles are ignored."""
    if handle is None:
        return
    lifecycle = handle._lifecycle if handle._lifecycle is not None else ServiceLifecycle(handle.config)
    lifecycle.stop(handle)


def service_available(result: ServiceHandle | EnvironmentUnavailable) -> ServiceHandle:
    """Return the handle, or skip the running pytest test on :class:`EnvironmentUnavailable`."""
    if isinstance(result, ServiceHandle):
        return result
    import pytest

    pytest.skip(result.reason)
