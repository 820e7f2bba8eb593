# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Test harness driving an out-of-process stub service over a local bus."""

import logging

from busharness.bootstrap import (
    NESTED_CONTEXT_KEY_PREFIX,
    BootstrapChoice,
    BootstrapMatrix,
    ConstructionMode,
    DispatchVia,
    SyncStrategy,
    assert_success,
    new_client,
)
from busharness.client import Client, Device
from busharness.config import (
    DEFAULT_INTERFACE,
    DEFAULT_OBJECT_PATH,
    DEFAULT_SERVICE_NAME,
    MISSING_DEPENDENCY_EXIT_STATUS,
    TEST_CONTROL_INTERFACE,
    HarnessConfig,
    default_bus_address,
)
from busharness.control import (
    ADD_WIFI_DEVICE,
    ADD_WIMAX_DEVICE,
    ADD_WIRED_DEVICE,
    PendingAddRequest,
    add_connection,
    add_connection_raw,
    add_device,
    add_wired_device,
    update_connection,
    update_connection_raw,
)
from busharness.errors import (
    EnvironmentUnavailable,
    HarnessError,
    HarnessInternalError,
    HarnessTimeout,
    ProtocolViolation,
    ServiceStartError,
)
from busharness.mainloop import MainContext, MainLoop, run_loop
from busharness.profile import PROFILE_SIGNATURE, ConnectionProfile
from busharness.readiness import ChildExited, ReadinessOutcome, ReadinessRace, Ready, TimedOut
from busharness.service import (
    ServiceHandle,
    ServiceLifecycle,
    ServiceState,
    StderrMode,
    service_available,
    start_service,
    stop_service,
)

__all__ = [
    # Configuration
    "HarnessConfig",
    "default_bus_address",
    "DEFAULT_SERVICE_NAME",
    "DEFAULT_OBJECT_PATH",
    "DEFAULT_INTERFACE",
    "TEST_CONTROL_INTERFACE",
    "MISSING_DEPENDENCY_EXIT_STATUS",
    # Errors
    "EnvironmentUnavailable",
    "HarnessError",
    "HarnessTimeout",
    "ProtocolViolation",
    "HarnessInternalError",
    "ServiceStartError",
    # Main loop
    "MainContext",
    "MainLoop",
    "run_loop",
    # Lifecycle
    "ReadinessRace",
    "ReadinessOutcome",
    "Ready",
    "ChildExited",
    "TimedOut",
    "ServiceLifecycle",
    "ServiceHandle",
    "ServiceState",
    "StderrMode",
    "start_service",
    "stop_service",
    "service_available",
    # Control calls
    "ADD_WIRED_DEVICE",
    "ADD_WIFI_DEVICE",
    "ADD_WIMAX_DEVICE",
    "PendingAddRequest",
    "add_device",
    "add_wired_device",
    "add_connection",
    "add_connection_raw",
    "update_connection",
    "update_connection_raw",
    "PROFILE_SIGNATURE",
    "ConnectionProfile",
    # Client and bootstrap matrix
    "Client",
    "Device",
    "BootstrapChoice",
    "BootstrapMatrix",
    "ConstructionMode",
    "DispatchVia",
    "SyncStrategy",
    "NESTED_CONTEXT_KEY_PREFIX",
    "assert_success",
    "new_client",
]

# Library users get no "No handler found" warnings.
logging.getLogger("busharness").addHandler(logging.NullHandler())
