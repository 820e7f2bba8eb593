"""Tests for the stub service lifecycle: start, readiness outcomes and teardown."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from busharness.bus import BusConnection
from busharness.config import HarnessConfig
from busharness.errors import (
    EnvironmentUnavailable,
    HarnessError,
    HarnessInternalError,
    HarnessTimeout,
    ServiceStartError,
)
from busharness.service import (
    ServiceHandle,
    ServiceLifecycle,
    ServiceState,
    StderrMode,
    service_available,
    start_service,
    stop_service,
)

if TYPE_CHECKING:
    from tests.conftest import InProcessStub

_STUBBORN_STUB = (sys.executable, str(Path(__file__).parent / "stubborn_stub.py"))


def _exiting(status: int, stderr: str = "") -> tuple[str, ...]:
    code = f"import sys; sys.stderr.write({stderr!r}); sys.exit({status})"
    return (sys.executable, "-c", code)


# ---------------------------------------------------------------------------
# Successful start and stop
# ---------------------------------------------------------------------------


class TestStartStop:
    """The stub comes up on the bus and goes away again."""

    def test_running_handle(self, service: ServiceHandle, harness_config: HarnessConfig) -> None:
        """A started service is running, owns its name and has a control proxy."""
        assert service.running
        assert service.state is ServiceState.RUNNING
        assert service.pid is not None
        assert service.proxy is not None
        assert service.proxy.interface == harness_config.control_interface
        assert service.bus is not None
        assert service.bus.name_has_owner(harness_config.service_name, 1.0)

    def test_stop_releases_everything(self, harness_config: HarnessConfig) -> None:
        """Stop terminates the stub gracefully and releases the name."""
        handle = service_available(start_service(harness_config))
        process = handle.process
        assert process is not None
        stop_service(handle)
        assert process.poll() is not None
        assert handle.state is ServiceState.STOPPED
        assert (handle.process, handle.bus, handle.proxy, handle.keepalive) == (None, None, None, None)
        with BusConnection.connect(harness_config.bus_address) as bus:
            assert not bus.name_has_owner(harness_config.service_name, 0.5)

    def test_stop_is_idempotent(self, harness_config: HarnessConfig) -> None:
        """Stopping twice, or stopping None, is harmless."""
        lifecycle = ServiceLifecycle(harness_config)
        handle = service_available(lifecycle.start())
        lifecycle.stop(handle)
        lifecycle.stop(handle)
        stop_service(handle)
        stop_service(None)
        assert handle.state is ServiceState.STOPPED

    def test_context_manager_stops(self, harness_config: HarnessConfig) -> None:
        """Leaving the with block stops the service."""
        with service_available(start_service(harness_config)) as handle:
            assert handle.running
        assert handle.state is ServiceState.STOPPED

    def test_keepalive_eof_ends_stub(self, harness_config: HarnessConfig) -> None:
        """Closing the keep-alive descriptor makes the stub exit on its own."""
        handle = service_available(start_service(harness_config))
        process = handle.process
        assert process is not None and handle.keepalive is not None
        handle.keepalive.close()
        assert process.wait(timeout=10) == 0
        stop_service(handle)
        assert handle.state is ServiceState.STOPPED

    def test_stderr_forwarded(self, harness_config: HarnessConfig, caplog: pytest.LogCaptureFixture) -> None:
        """With StderrMode.PIPE the stub's stderr lines reach the harness log."""
        config = harness_config.with_overrides(service_command=_exiting(3, "stub is unhappy\n"))
        with caplog.at_level(logging.INFO, logger="busharness.stub.stderr"), pytest.raises(ServiceStartError):
            start_service(config, stderr=StderrMode.PIPE)
        assert any(r.name == "busharness.stub.stderr" and "stub is unhappy" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# Startup failures
# ---------------------------------------------------------------------------


class TestStartupOutcomes:
    """Every non-ready outcome of the readiness race."""

    def test_missing_dependency_is_a_value(self, harness_config: HarnessConfig, tmp_path: Path) -> None:
        """Exit status 77 is reported as EnvironmentUnavailable, leaving nothing behind."""
        pid_file = tmp_path / "stub.pid"
        code = f"import os, sys; open({str(pid_file)!r}, 'w').write(str(os.getpid())); sys.exit(77)"
        config = harness_config.with_overrides(service_command=(sys.executable, "-c", code))
        result = start_service(config)
        assert isinstance(result, EnvironmentUnavailable)
        assert result.exit_status == 77
        assert "missing dependency for running the stub service" in result.reason
        assert config.service_description in result.reason
        with pytest.raises(ChildProcessError):
            os.waitpid(int(pid_file.read_text()), os.WNOHANG)
        with BusConnection.connect(config.bus_address) as bus:
            assert not bus.name_has_owner(config.service_name, 0.5)

    def test_stub_reports_unavailable_environment(
        self, harness_config: HarnessConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """The real stub exits 77 when told its environment cannot host it."""
        monkeypatch.setenv("BUSHARNESS_STUB_UNAVAILABLE", "1")
        result = start_service(harness_config)
        assert isinstance(result, EnvironmentUnavailable)

    def test_service_available_skips(self) -> None:
        """service_available turns EnvironmentUnavailable into a pytest skip."""
        with pytest.raises(pytest.skip.Exception, match="no stub here"):
            service_available(EnvironmentUnavailable(reason="no stub here", exit_status=77))

    def test_other_exit_status_fails(self, harness_config: HarnessConfig) -> None:
        """Any other early exit is a start failure carrying the status."""
        config = harness_config.with_overrides(service_command=_exiting(3))
        with pytest.raises(ServiceStartError) as exc_info:
            start_service(config)
        assert exc_info.value.exit_status == 3
        assert "exit status 3" in str(exc_info.value)
        assert isinstance(exc_info.value, AssertionError)

    def test_readiness_timeout(self, harness_config: HarnessConfig) -> None:
        """A child that never owns the name is killed and reported as a timeout."""
        config = harness_config.with_overrides(
            service_command=(sys.executable, "-c", "import time; time.sleep(60)"), ready_deadline=0.5
        )
        with pytest.raises(HarnessTimeout) as exc_info:
            start_service(config)
        assert exc_info.value.deadline == 0.5

    def test_spawn_failure(self, harness_config: HarnessConfig, bus_dir: str) -> None:
        """A command that cannot be spawned is an internal error."""
        config = harness_config.with_overrides(service_command=(f"{bus_dir}/does-not-exist",))
        with pytest.raises(HarnessInternalError, match="could not spawn"):
            start_service(config)

    def test_name_already_owned(self, harness_config: HarnessConfig, in_process_stub: InProcessStub) -> None:
        """Starting while someone else owns the name is refused before spawning."""
        with pytest.raises(HarnessInternalError, match="already owned"):
            start_service(harness_config)


# ---------------------------------------------------------------------------
# Teardown failures
# ---------------------------------------------------------------------------


class TestTeardown:
    """Forced teardown and leftover detection."""

    def test_sigterm_ignored(self, harness_config: HarnessConfig) -> None:
        """A stub ignoring SIGTERM is killed and the stop reports a timeout."""
        config = harness_config.with_overrides(service_command=_STUBBORN_STUB, stop_deadline=0.5)
        handle = service_available(start_service(config))
        process = handle.process
        assert process is not None
        with pytest.raises(HarnessTimeout, match="did not exit after SIGTERM") as exc_info:
            stop_service(handle)
        assert exc_info.value.deadline == 0.5
        assert process.returncode is not None and process.returncode < 0
        assert handle.state is ServiceState.STOPPED
        assert handle.bus is None

    def test_leftover_name_detected(self, harness_config: HarnessConfig, in_process_stub: InProcessStub) -> None:
        """A name still resolving once the process is gone is an internal error."""
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"], stdin=subprocess.PIPE)
        handle = ServiceHandle(
            config=harness_config,
            process=process,
            bus=BusConnection.connect(harness_config.bus_address),
            keepalive=process.stdin,
            state=ServiceState.RUNNING,
        )
        with pytest.raises(HarnessInternalError, match="still resolves"):
            stop_service(handle)
        assert process.returncode is not None
        assert handle.state is ServiceState.STOPPED

    def test_fatal_errors_are_assertions(self) -> None:
        """Fatal harness conditions fail the running test rather than erroring it."""
        assert issubclass(HarnessError, AssertionError)
        for cls in (HarnessTimeout, ServiceStartError, HarnessInternalError):
            assert issubclass(cls, HarnessError)
