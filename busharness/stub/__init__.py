# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The stub service driven by the harness.

Run as ``python -m busharness.stub``.  It owns its well-known name on the
bus, exports ``org.busharness.StubService`` and
``org.busharness.StubService.TestControl`` at ``/org/busharness/StubService``
and exits when its stdin reaches EOF or on SIGTERM.  It exits with status 77
when the environment cannot host it.
"""

from busharness.stub._service import (
    ERROR_DEVICE_EXISTS,
    ERROR_INVALID_CONNECTION,
    ERROR_UNKNOWN_CONNECTION,
    UNAVAILABLE_ENV,
    ControlInterface,
    ListingInterface,
    StubService,
    run_stub,
    unavailable_reason,
)

__all__ = [
    "ERROR_DEVICE_EXISTS",
    "ERROR_INVALID_CONNECTION",
    "ERROR_UNKNOWN_CONNECTION",
    "UNAVAILABLE_ENV",
    "ControlInterface",
    "ListingInterface",
    "StubService",
    "run_stub",
    "unavailable_reason",
]
