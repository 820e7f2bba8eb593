"""Tests for the randomized client bootstrap matrix."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

import pytest

from busharness import bootstrap
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
from busharness.client import Client
from busharness.config import HarnessConfig
from busharness.errors import ProtocolViolation
from busharness.mainloop import IntegrationSource, MainContext

if TYPE_CHECKING:
    from tests.conftest import InProcessStub

_ALL_CHOICES = list(BootstrapMatrix(HarnessConfig(), random.Random(0)).enumerate_choices(True))


def _depth(choice: BootstrapChoice) -> int:
    depth = 0
    while choice.inner is not None:
        choice = choice.inner
        depth += 1
    return depth


# ---------------------------------------------------------------------------
# Choices
# ---------------------------------------------------------------------------


class TestChoices:
    """Validation and generation of bootstrap choices."""

    def test_enumeration_counts(self) -> None:
        """Flat choices first, then one nested variant per flat inner choice."""
        matrix = BootstrapMatrix(HarnessConfig())
        with_iterate = list(matrix.enumerate_choices(True))
        without_iterate = list(matrix.enumerate_choices(False))
        assert len(with_iterate) == 20 + 20
        assert len(without_iterate) == 8 + 20
        assert len({c.label for c in with_iterate}) == len(with_iterate)

    def test_no_iterate_never_touches_ambient_loop(self) -> None:
        """Choices made without permission to iterate stay off the ambient loop."""
        matrix = BootstrapMatrix(HarnessConfig(), random.Random(42))
        assert not any(c.iterates_ambient_loop for c in matrix.enumerate_choices(False))
        for _ in range(200):
            choice = matrix.choose(False)
            assert not choice.iterates_ambient_loop
            if not choice.use_extra_nested_context:
                assert choice.construction_mode is ConstructionMode.SYNC
                assert choice.dispatch_via is DispatchVia.DIRECT

    def test_seeded_draws_repeat(self) -> None:
        """The same seed draws the same sequence of choices."""
        first = BootstrapMatrix(HarnessConfig(seed=7))
        second = BootstrapMatrix(HarnessConfig(seed=7))
        assert [first.choose(True).label for _ in range(50)] == [second.choose(True).label for _ in range(50)]

    def test_nesting_is_bounded(self) -> None:
        """Even when nesting always wins the draw, the depth stays bounded."""
        matrix = BootstrapMatrix(HarnessConfig(nested_context_probability=1.0), random.Random(1))
        choice = matrix.choose(True)
        assert _depth(choice) == 4
        assert choice.label.startswith("nested[nested[nested[nested[")

    def test_probabilities_respected(self) -> None:
        """Zero probabilities rule out nesting and idle dispatch."""
        config = HarnessConfig(nested_context_probability=0.0, idle_dispatch_probability=0.0)
        matrix = BootstrapMatrix(config, random.Random(3))
        for _ in range(100):
            choice = matrix.choose(True)
            assert not choice.use_extra_nested_context
            assert choice.dispatch_via is DispatchVia.DIRECT

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"use_extra_nested_context": True},
            {"inner": BootstrapChoice()},
            {"sync_strategy": None},
            {"construction_mode": ConstructionMode.ASYNC},
            {"construction_mode": ConstructionMode.ASYNC, "sync_strategy": None, "guard_ambient_loop": True},
        ],
    )
    def test_invalid_combinations(self, kwargs: dict[str, object]) -> None:
        """Combinations that cannot be run are rejected up front."""
        with pytest.raises(ValueError):
            BootstrapChoice(**kwargs)  # type: ignore[arg-type]

    def test_labels(self) -> None:
        """Labels spell out every field that matters."""
        sync = BootstrapChoice(sync_strategy=SyncStrategy.INITABLE, guard_ambient_loop=True, capture_error=True)
        assert sync.label == "sync-direct-initable-guard-error-slot"
        async_idle = BootstrapChoice(
            construction_mode=ConstructionMode.ASYNC, dispatch_via=DispatchVia.IDLE_CALLBACK, sync_strategy=None
        )
        assert async_idle.label == "async-idle-no-error-slot"
        assert BootstrapChoice.nested(sync).label == f"nested[{sync.label}]"


class TestAssertSuccess:
    """Consistency of a construction outcome."""

    def test_success(self) -> None:
        """Success without an error passes."""
        assert_success(True, None)

    @pytest.mark.parametrize(
        ("success", "error"),
        [(True, RuntimeError("both")), (False, None), (False, RuntimeError("failed"))],
    )
    def test_violations(self, success: bool, error: BaseException | None) -> None:
        """Every other combination is a protocol violation."""
        with pytest.raises(ProtocolViolation):
            assert_success(success, error)


# ---------------------------------------------------------------------------
# Trials
# ---------------------------------------------------------------------------


class TestTrials:
    """Every bootstrap path yields an initialized client."""

    @pytest.mark.parametrize("choice", _ALL_CHOICES, ids=[c.label for c in _ALL_CHOICES])
    def test_every_choice(
        self, in_process_stub: InProcessStub, harness_config: HarnessConfig, choice: BootstrapChoice
    ) -> None:
        """The trial succeeds and no guard fired."""
        matrix = BootstrapMatrix(harness_config)
        ambient = MainContext.thread_default()
        with matrix.run_trial(choice) as client:
            assert client.initialized
            assert client.service_running
            assert matrix.guard_invocations == 0
            assert MainContext.thread_default() is ambient
            if choice.use_extra_nested_context:
                assert client.context is not ambient
                assert isinstance(client.get_data(f"{NESTED_CONTEXT_KEY_PREFIX}0"), IntegrationSource)
            else:
                assert client.context is ambient

    def test_without_service(self, harness_config: HarnessConfig) -> None:
        """Trials succeed when no service is running; the client just knows it."""
        matrix = BootstrapMatrix(harness_config, random.Random(5))
        for _ in range(10):
            with matrix.new_client(True) as client:
                assert client.initialized
                assert not client.service_running

    def test_nested_integration_keys(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """Each nesting level stores its integration source under its own key."""
        matrix = BootstrapMatrix(harness_config)
        inner = BootstrapChoice(construction_mode=ConstructionMode.ASYNC, sync_strategy=None)
        choice = BootstrapChoice.nested(BootstrapChoice.nested(BootstrapChoice.nested(inner)))
        with matrix.run_trial(choice) as client:
            keys = [k for k in client.data_keys() if k.startswith(NESTED_CONTEXT_KEY_PREFIX)]
            assert keys == [f"{NESTED_CONTEXT_KEY_PREFIX}{i}" for i in range(3)]
            sources = [client.get_data(k) for k in keys]
            assert len({id(s) for s in sources}) == 3
            assert sources[-1].context is MainContext.thread_default()
        assert all(s.is_destroyed for s in sources)

    def test_ambient_guard_fires(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """Iterating the ambient loop during a guarded construction is caught."""
        matrix = BootstrapMatrix(harness_config)
        original_new = Client.new

        def _iterating_new(config: HarnessConfig | None = None) -> Client:
            MainContext.thread_default().iteration(may_block=False)
            return original_new(config)

        choice = BootstrapChoice(guard_ambient_loop=True)
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr(Client, "new", staticmethod(_iterating_new))
            with pytest.raises(ProtocolViolation, match="ambient main context was iterated"):
                matrix.run_trial(choice)
        assert matrix.guard_invocations == 1


class TestModuleNewClient:
    """The process-wide convenience constructor."""

    def test_shared_generator(
        self, in_process_stub: InProcessStub, harness_config: HarnessConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Successive calls share one generator seeded from the first config."""
        monkeypatch.setattr(bootstrap, "_shared_rng", None)
        clients = [new_client(config=harness_config) for _ in range(3)]
        try:
            assert all(c.initialized and c.service_running for c in clients)
            assert bootstrap._shared_rng is not None
        finally:
            for client in clients:
                client.close()

    def test_explicit_generator(self, in_process_stub: InProcessStub, harness_config: HarnessConfig) -> None:
        """An explicit generator is used as given."""
        with new_client(False, config=harness_config, rng=random.Random(9)) as client:
            assert client.service_running
