"""Tests for the client library, served by an in-process stub."""

from __future__ import annotations

import time
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any

import pytest

from busharness.client import Client, Device
from busharness.config import HarnessConfig
from busharness.mainloop import IdleSource, MainContext, MainLoop, run_loop

if TYPE_CHECKING:
    from tests.conftest import ClientFactory, InProcessStub


def _wait_until_done(future: Future[Any], timeout: float = 5.0) -> None:
    loop = MainLoop()
    future.add_done_callback(lambda _: loop.quit())
    if not future.done():
        assert run_loop(loop, timeout), "construction did not complete"


class TestSyncConstruction:
    """Client.new and the two-step Client().init()."""

    def test_factory(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """A new client is initialized against a running service."""
        client = make_client()
        assert client.initialized
        assert client.service_running
        assert client.devices == ()
        assert client.connections == ()
        assert client.context is MainContext.thread_default()

    def test_loads_existing_state(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """Devices and connections present before construction are mirrored."""
        stub = in_process_stub.service
        wifi_path = stub.add_wifi_device("wlan0")
        conn_path = stub.add_connection({"connection": {"id": "a", "uuid": "u", "type": "wifi"}}, True)
        client = make_client()
        assert client.devices == (Device(path=wifi_path, iface="wlan0", device_type="wifi"),)
        assert client.connections == (conn_path,)

    def test_two_step(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """Allocation alone does nothing; init completes the client exactly once."""
        with Client(harness_config) as client:
            assert not client.initialized
            assert client.context is None
            assert client.init() is True
            assert client.initialized
            with pytest.raises(RuntimeError, match="already initialized"):
                client.init()

    def test_never_iterates_ambient_context(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """Synchronous construction leaves pending ambient sources untouched."""
        calls: list[int] = []

        def _iterated() -> bool:
            calls.append(1)
            return True

        guard = IdleSource(_iterated)
        guard.attach()
        try:
            make_client()
        finally:
            guard.destroy()
        assert calls == []

    def test_without_service(self, make_client: ClientFactory) -> None:
        """A missing service is not an error."""
        client = make_client()
        assert client.initialized
        assert not client.service_running
        assert client.devices == ()

    def test_closed_client_cannot_init(self, harness_config: HarnessConfig) -> None:
        """A client closed before init stays unusable."""
        client = Client(harness_config)
        client.close()
        with pytest.raises(RuntimeError, match="closed"):
            client.init()


class TestAsyncConstruction:
    """Client.new_async completes while the ambient context iterates."""

    def test_completes_in_loop(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """The callback and the future see the same initialized client."""
        seen: list[Future[Client]] = []
        future = Client.new_async(seen.append, harness_config)
        assert not future.done()
        _wait_until_done(future)
        client = Client.new_finish(future)
        try:
            assert seen == [future]
            assert client.initialized
            assert client.service_running
        finally:
            client.close()

    def test_finish_before_completion(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """Finishing early is a usage error."""
        future = Client.new_async(config=harness_config)
        with pytest.raises(RuntimeError, match="before the construction completed"):
            Client.new_finish(future)
        _wait_until_done(future)
        Client.new_finish(future).close()

    def test_without_service(self, harness_config: HarnessConfig) -> None:
        """A missing service resolves the future with a service-less client."""
        future = Client.new_async(config=harness_config)
        _wait_until_done(future)
        with Client.new_finish(future) as client:
            assert client.initialized
            assert not client.service_running


class TestNotifications:
    """Signals from the stub become client notifications."""

    def test_device_added(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """A device added on the stub is reported once, with its properties."""
        client = make_client()
        loop = MainLoop()
        devices: list[Device] = []

        def _on_device(_client: Client, device: Device) -> None:
            devices.append(device)
            loop.quit()

        client.connect("device-added", _on_device)
        path = in_process_stub.service.add_wired_device("eth3", "aa:bb", ["0.0.1"])
        assert run_loop(loop, 5.0)
        assert devices == [
            Device(path=path, iface="eth3", device_type="ethernet", hw_address="aa:bb", subchannels=("0.0.1",))
        ]
        assert client.get_device_by_iface("eth3") == devices[0]

    def test_disconnect_handler(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """A disconnected handler is not called; the state is still updated."""
        client = make_client()
        called: list[str] = []
        handler_id = client.connect("connection-added", lambda _c, path: called.append(path))
        client.disconnect(handler_id)
        path = in_process_stub.service.add_connection({"ipv4": {}}, False)
        deadline = time.monotonic() + 5.0
        while path not in client.connections and time.monotonic() < deadline:
            MainContext.thread_default().iteration(may_block=False)
            time.sleep(0.01)
        assert client.connections == (path,)
        assert called == []

    def test_unknown_signal(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """Only the client's own notifications can be connected."""
        client = make_client()
        with pytest.raises(ValueError, match="unknown signal"):
            client.connect("device-removed", lambda *_: None)
        with pytest.raises(KeyError):
            client.disconnect(12345)

    def test_service_gone(self, in_process_stub: InProcessStub, make_client: ClientFactory) -> None:
        """The client notices when the service drops off the bus."""
        client = make_client()
        in_process_stub.server.shutdown()
        deadline = time.monotonic() + 5.0
        while client.service_running and time.monotonic() < deadline:
            MainContext.thread_default().iteration(may_block=False)
            time.sleep(0.01)
        assert not client.service_running


class TestData:
    """Keyed data with destroy notifications."""

    def test_replace_and_close(self, harness_config: HarnessConfig) -> None:
        """Replaced and remaining values are handed to their destroy notify."""
        destroyed: list[str] = []
        client = Client(harness_config)
        client.set_data("first", "a", destroyed.append)
        client.set_data("second", "b")
        client.set_data("first", "c", destroyed.append)
        assert destroyed == ["a"]
        assert client.get_data("first") == "c"
        assert client.get_data("missing") is None
        assert client.data_keys() == ("second", "first")
        client.close()
        client.close()
        assert destroyed == ["a", "c"]
        assert client.data_keys() == ()
