"""Tests for HarnessConfig defaults, validation and environment overrides."""

from __future__ import annotations

import sys

import pytest

from busharness.config import (
    DEFAULT_SERVICE_NAME,
    MISSING_DEPENDENCY_EXIT_STATUS,
    HarnessConfig,
    default_bus_address,
)


class TestDefaults:
    """Values the harness runs with out of the box."""

    def test_timings(self) -> None:
        """Deadlines and probabilities match the documented defaults."""
        config = HarnessConfig(bus_address="/tmp/bus")
        assert config.poll_interval == 0.05
        assert config.ready_deadline == 30.0
        assert config.call_timeout == 3.0
        assert config.nested_context_probability == pytest.approx(0.2)
        assert config.idle_dispatch_probability == pytest.approx(1 / 3)
        assert config.missing_dependency_exit_status == MISSING_DEPENDENCY_EXIT_STATUS == 77
        assert config.service_command == (sys.executable, "-m", "busharness.stub")

    def test_bus_address_lookup(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """An explicit address wins over the runtime directory."""
        monkeypatch.setenv("XDG_RUNTIME_DIR", "/run/user/1000")
        monkeypatch.delenv("BUSHARNESS_BUS_ADDRESS", raising=False)
        assert default_bus_address() == "/run/user/1000/busharness"
        monkeypatch.setenv("BUSHARNESS_BUS_ADDRESS", "/srv/bus")
        assert default_bus_address() == "/srv/bus"

    def test_description_is_shell_quoted(self) -> None:
        """The command is rendered the way a shell would need it."""
        config = HarnessConfig(service_command=("/opt/my stub", "--flag"))
        assert config.service_description == "'/opt/my stub' --flag"

    def test_child_environment(self) -> None:
        """The child learns where the bus is and which name to own."""
        config = HarnessConfig(bus_address="/tmp/bus", service_name="org.example.Stub")
        env = config.child_environment({"PATH": "/usr/bin"})
        assert env == {
            "PATH": "/usr/bin",
            "BUSHARNESS_BUS_ADDRESS": "/tmp/bus",
            "BUSHARNESS_SERVICE_NAME": "org.example.Stub",
        }


class TestValidation:
    """Bad values are refused at construction."""

    @pytest.mark.parametrize("name", ["poll_interval", "ready_deadline", "stop_deadline", "call_timeout"])
    def test_non_positive_timing(self, name: str) -> None:
        """Timing values must be positive."""
        with pytest.raises(ValueError, match=name):
            HarnessConfig(**{name: 0})  # type: ignore[arg-type]

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_probability_range(self, value: float) -> None:
        """Probabilities stay within [0, 1]."""
        with pytest.raises(ValueError, match="within"):
            HarnessConfig(nested_context_probability=value)

    def test_empty_command(self) -> None:
        """There must be something to run."""
        with pytest.raises(ValueError, match="service_command"):
            HarnessConfig(service_command=())

    def test_overrides_are_validated(self) -> None:
        """with_overrides goes through the same checks."""
        config = HarnessConfig()
        assert config.with_overrides(call_timeout=1.0).call_timeout == 1.0
        with pytest.raises(ValueError):
            config.with_overrides(call_timeout=-1.0)


class TestFromEnv:
    """Environment overrides."""

    def test_reads_variables(self) -> None:
        """Recognised variables are parsed into their fields."""
        config = HarnessConfig.from_env(
            {
                "BUSHARNESS_BUS_ADDRESS": "/tmp/bus",
                "BUSHARNESS_SERVICE_COMMAND": "stub-service --verbose 'two words'",
                "BUSHARNESS_READY_DEADLINE": "5",
                "BUSHARNESS_STOP_POLL_INTERVAL": "0.05",
                "BUSHARNESS_IDLE_DISPATCH_PROBABILITY": "0.5",
                "BUSHARNESS_SEED": "99",
            }
        )
        assert config.bus_address == "/tmp/bus"
        assert config.service_name == DEFAULT_SERVICE_NAME
        assert config.service_command == ("stub-service", "--verbose", "two words")
        assert config.ready_deadline == 5.0
        assert config.stop_poll_interval == 0.05
        assert config.idle_dispatch_probability == 0.5
        assert config.seed == 99

    def test_empty_values_ignored(self) -> None:
        """Empty variables fall back to the defaults."""
        config = HarnessConfig.from_env({"BUSHARNESS_BUS_ADDRESS": "/tmp/bus", "BUSHARNESS_SEED": ""})
        assert config.seed is None

    @pytest.mark.parametrize(
        ("variable", "value"), [("BUSHARNESS_CALL_TIMEOUT", "soon"), ("BUSHARNESS_SEED", "1.5")]
    )
    def test_unparsable(self, variable: str, value: str) -> None:
        """Values that do not parse name the offending variable."""
        with pytest.raises(ValueError, match=variable):
            HarnessConfig.from_env({"BUSHARNESS_BUS_ADDRESS": "/tmp/bus", variable: value})
