"""Shared test fixtures for busharness tests."""

from __future__ import annotations

import shutil
import sys
import tempfile
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import pytest

from busharness.bus import BusServer
from busharness.client import Client
from busharness.config import DEFAULT_INTERFACE, DEFAULT_OBJECT_PATH, TEST_CONTROL_INTERFACE, HarnessConfig
from busharness.mainloop import MainContext
from busharness.service import ServiceHandle, StderrMode, service_available, start_service, stop_service
from busharness.stub import ControlInterface, ListingInterface, StubService

STUB_COMMAND = (sys.executable, "-m", "busharness.stub", "--log-level", "DEBUG")

ClientFactory = Callable[..., Client]
"""Type alias for the ``make_client`` fixture return type."""


@pytest.fixture
def bus_dir() -> Iterator[str]:
    """A private bus directory.

    Created under ``/tmp`` rather than pytest's ``tmp_path``: socket paths
    must stay below the ``AF_UNIX`` limit of 108 bytes.
    """
    path = tempfile.mkdtemp(prefix="bh-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def harness_config(bus_dir: str) -> HarnessConfig:
    """A config pointing at the private bus, launching the real stub."""
    return HarnessConfig(bus_address=bus_dir, service_command=STUB_COMMAND, seed=1234)


@pytest.fixture
def service(harness_config: HarnessConfig) -> Iterator[ServiceHandle]:
    """A running stub service process; skips the test where the stub cannot run."""
    handle = service_available(start_service(harness_config, stderr=StderrMode.PIPE))
    yield handle
    stop_service(handle)


@dataclass
class InProcessStub:
    """A stub service served from a thread of the test process."""

    server: BusServer
    service: StubService
    thread: threading.Thread


@pytest.fixture
def in_process_stub(harness_config: HarnessConfig) -> Iterator[InProcessStub]:
    """Serve the stub service's interfaces from a background thread."""
    server = BusServer(harness_config.bus_address, harness_config.service_name)
    stub = StubService(server)
    server.export(DEFAULT_OBJECT_PATH, DEFAULT_INTERFACE, ListingInterface, stub)
    server.export(DEFAULT_OBJECT_PATH, TEST_CONTROL_INTERFACE, ControlInterface, stub)
    server.own_name()
    thread = threading.Thread(target=server.serve_forever, name="in-process-stub", daemon=True)
    thread.start()
    yield InProcessStub(server, stub, thread)
    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def make_client(harness_config: HarnessConfig) -> Iterator[ClientFactory]:
    """Return a factory of synchronously initialized clients, all closed at teardown."""
    clients: list[Client] = []

    def factory(config: HarnessConfig | None = None) -> Client:
        client = Client.new(config if config is not None else harness_config)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture(autouse=True)
def _clean_default_context() -> Iterator[None]:
    """Destroy whatever a test left attached to the process-wide default context."""
    yield
    for source in MainContext.default().sources:
        source.destroy()
