"""Tests for the stub service: its in-memory store and its command line."""

from __future__ import annotations

import io
import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

import pytest
from typer.testing import CliRunner

from busharness.bus import ERROR_INVALID_ARGS, BusError
from busharness.config import DEFAULT_INTERFACE, DEFAULT_OBJECT_PATH, HarnessConfig
from busharness.stub import (
    ERROR_DEVICE_EXISTS,
    ERROR_INVALID_CONNECTION,
    ERROR_UNKNOWN_CONNECTION,
    UNAVAILABLE_ENV,
    StubService,
    run_stub,
    unavailable_reason,
)
from busharness.stub.__main__ import app

if TYPE_CHECKING:
    from tests.conftest import InProcessStub

runner = CliRunner()


@pytest.fixture
def restore_harness_logger() -> Iterator[None]:
    """Undo the handler and level the command line installs."""
    logger = logging.getLogger("busharness")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


class _RecordingServer:
    """Stands in for BusServer; records emitted signals."""

    def __init__(self) -> None:
        self.signals: list[tuple[str, str, str, tuple[Any, ...], str]] = []

    def emit_signal(
        self, path: str, interface: str, member: str, args: tuple[Any, ...] = (), signature: str = ""
    ) -> int:
        self.signals.append((path, interface, member, args, signature))
        return 1


@pytest.fixture
def recorder() -> _RecordingServer:
    """A signal recorder."""
    return _RecordingServer()


@pytest.fixture
def stub(recorder: _RecordingServer) -> StubService:
    """A stub store emitting into *recorder*."""
    return StubService(recorder)  # type: ignore[arg-type]


_VALID = {"connection": {"id": "wired-1", "uuid": "7d1c", "type": "802-3-ethernet"}}


class TestDevices:
    """Device store."""

    def test_paths_and_properties(self, stub: StubService, recorder: _RecordingServer) -> None:
        """Devices get sequential paths and announce themselves."""
        wired = stub.add_wired_device("eth0", "00:11", ["0.0.1"])
        wifi = stub.add_wifi_device("wlan0")
        assert wired == f"{DEFAULT_OBJECT_PATH}/Devices/1"
        assert wifi == f"{DEFAULT_OBJECT_PATH}/Devices/2"
        assert stub.get_devices()[wired] == {
            "Interface": "eth0",
            "DeviceType": "ethernet",
            "HwAddress": "00:11",
            "Subchannels": ["0.0.1"],
        }
        assert [s[2] for s in recorder.signals] == ["DeviceAdded", "DeviceAdded"]
        path, interface, _, args, signature = recorder.signals[1]
        assert (path, interface, signature) == (DEFAULT_OBJECT_PATH, DEFAULT_INTERFACE, "oa{sv}")
        assert args[0] == wifi
        assert args[1]["DeviceType"] == "wifi"

    def test_snapshot_is_detached(self, stub: StubService) -> None:
        """Mutating a listing does not reach the store."""
        path = stub.add_wimax_device("wmx0")
        stub.get_devices()[path]["Interface"] = "changed"
        assert stub.get_devices()[path]["Interface"] == "wmx0"

    def test_empty_interface(self, stub: StubService) -> None:
        """An interface name is required."""
        with pytest.raises(BusError) as exc_info:
            stub.add_wifi_device("")
        assert exc_info.value.name == ERROR_INVALID_ARGS

    def test_duplicate_interface(self, stub: StubService, recorder: _RecordingServer) -> None:
        """Interface names are unique across device kinds."""
        stub.add_wired_device("eth0", "/", [])
        with pytest.raises(BusError) as exc_info:
            stub.add_wifi_device("eth0")
        assert exc_info.value.name == ERROR_DEVICE_EXISTS
        assert len(recorder.signals) == 1


class TestConnections:
    """Connection store."""

    def test_add_and_list(self, stub: StubService, recorder: _RecordingServer) -> None:
        """Connections are listed in creation order."""
        first = stub.add_connection(_VALID, True)
        second = stub.add_connection({"ipv4": {}}, False)
        assert stub.list_connections() == [first, second]
        assert first == f"{DEFAULT_OBJECT_PATH}/Settings/1"
        assert recorder.signals[-1][2:] == ("ConnectionAdded", (second,), "o")

    @pytest.mark.parametrize(
        "settings",
        [
            {},
            {"connection": {"id": "a", "uuid": "b"}},
            {"connection": {"id": "", "uuid": "b", "type": "wifi"}},
            {"connection": {"id": "a", "uuid": 7, "type": "wifi"}},
        ],
    )
    def test_verify(self, stub: StubService, settings: dict[str, dict[str, Any]]) -> None:
        """Verification requires id, uuid and type strings."""
        with pytest.raises(BusError) as exc_info:
            stub.add_connection(settings, True)
        assert exc_info.value.name == ERROR_INVALID_CONNECTION
        assert stub.list_connections() == []

    def test_update(self, stub: StubService, recorder: _RecordingServer) -> None:
        """Updating replaces the settings and announces the change."""
        path = stub.add_connection(_VALID, True)
        stub.update_connection(path, {"connection": {**_VALID["connection"], "id": "renamed"}}, True)
        assert recorder.signals[-1][2:] == ("ConnectionUpdated", (path,), "o")

    def test_update_unknown(self, stub: StubService) -> None:
        """Only stored connections can be updated."""
        with pytest.raises(BusError) as exc_info:
            stub.update_connection(f"{DEFAULT_OBJECT_PATH}/Settings/5", _VALID, False)  # type: ignore[arg-type]
        assert exc_info.value.name == ERROR_UNKNOWN_CONNECTION


class TestProcessEntry:
    """run_stub and the command line."""

    def test_unavailable_reason(self) -> None:
        """The opt-out variable makes the environment unusable."""
        assert unavailable_reason({}) is None
        assert UNAVAILABLE_ENV in (unavailable_reason({UNAVAILABLE_ENV: "1"}) or "")

    def test_run_stub_unavailable(self, bus_dir: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """An unusable environment exits with the skip status before touching the bus."""
        monkeypatch.setenv(UNAVAILABLE_ENV, "1")
        assert run_stub(bus_dir, "org.busharness.StubService", keepalive=io.BytesIO()) == 77

    def test_run_stub_name_taken(self, harness_config: HarnessConfig, in_process_stub: InProcessStub) -> None:
        """A second stub for an owned name gives up."""
        keepalive = io.BytesIO()
        assert run_stub(harness_config.bus_address, harness_config.service_name, keepalive=keepalive) == 1

    def test_run_stub_until_eof(self, harness_config: HarnessConfig) -> None:
        """With an exhausted keep-alive stream the stub shuts down cleanly."""
        keepalive = io.BytesIO()
        assert run_stub(harness_config.bus_address, harness_config.service_name, keepalive=keepalive) == 0

    @pytest.mark.usefixtures("restore_harness_logger")
    def test_cli_unavailable(self, bus_dir: str, monkeypatch: pytest.MonkeyPatch) -> None:
        """The command line passes the exit status through."""
        monkeypatch.setenv(UNAVAILABLE_ENV, "1")
        result = runner.invoke(app, ["--bus-address", bus_dir, "--log-format", "json"])
        assert result.exit_code == 77

    def test_cli_bad_level(self, bus_dir: str) -> None:
        """Unknown log levels are usage errors."""
        result = runner.invoke(app, ["--bus-address", bus_dir, "--log-level", "LOUD"])
        assert result.exit_code == 2
