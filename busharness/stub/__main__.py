# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command line of the stub service.

Usage::

    python -m busharness.stub --bus-address /run/user/1000/busharness
    python -m busharness.stub --log-format json --log-level DEBUG

Defaults come from ``BUSHARNESS_BUS_ADDRESS`` and ``BUSHARNESS_SERVICE_NAME``,
which the harness sets for the child.
"""

from __future__ import annotations

from typing import Annotated

import typer

from busharness.config import DEFAULT_SERVICE_NAME, default_bus_address
from busharness.logging_utils import LogFormat, configure_logging
from busharness.stub._service import run_stub

app = typer.Typer(
    name="busharness-stub",
    help="Stub service for the busharness test harness.",
    add_completion=False,
)


@app.command()
def main(
    bus_address: Annotated[
        str | None, typer.Option("--bus-address", "-a", envvar="BUSHARNESS_BUS_ADDRESS", help="Bus directory")
    ] = None,
    name: Annotated[
        str, typer.Option("--name", "-n", envvar="BUSHARNESS_SERVICE_NAME", help="Well-known name to own")
    ] = DEFAULT_SERVICE_NAME,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log record format")] = LogFormat.text,
    log_level: Annotated[str, typer.Option("--log-level", help="Level of the busharness loggers")] = "INFO",
) -> None:
    """Own NAME on the bus and serve until stdin closes or SIGTERM arrives."""
    try:
        configure_logging(log_level, log_format, static_fields={"service": name})
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from None
    address = bus_address or default_bus_address()
    raise typer.Exit(code=run_stub(address, name))


if __name__ == "__main__":
    app()
