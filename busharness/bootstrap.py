# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Randomized client bootstrap matrix.

A :class:`BootstrapChoice` fully determines how one client is constructed:

- synchronously (factory or two-step initable) or asynchronously;
- directly, or from an idle callback dispatched by the ambient loop;
- with or without a guard proving the synchronous path never iterates the
  ambient loop;
- with the error captured into a slot or left to propagate;
- optionally inside a fresh nested context, integrated back into the
  ambient one afterwards.

:meth:`BootstrapMatrix.run_trial` is a pure function of the choice.
Randomness lives only in :meth:`BootstrapMatrix.choose`;
:meth:`BootstrapMatrix.enumerate_choices` yields every combination for
deterministic runs.  Whatever the path, the trial must hand back an
initialized client with no error alongside.
"""

from __future__ import annotations

import itertools
import logging
import random
from collections.abc import Iterator
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum
from typing import Final

from busharness.client import Client
from busharness.config import HarnessConfig
from busharness.errors import ProtocolViolation
from busharness.mainloop import SOURCE_CONTINUE, IdleSource, IntegrationSource, MainContext, MainLoop

__all__ = [
    "NESTED_CONTEXT_KEY_PREFIX",
    "BootstrapChoice",
    "BootstrapMatrix",
    "ConstructionMode",
    "DispatchVia",
    "SyncStrategy",
    "assert_success",
    "new_client",
]

_logger = logging.getLogger("busharness.bootstrap")

NESTED_CONTEXT_KEY_PREFIX: Final = "busharness-extra-context-"
"""Client data keys holding nested-context integration sources, suffixed ``0``, ``1``, …"""

_MAX_NESTING: Final = 4


class ConstructionMode(Enum):
    """Synchronous or asynchronous construction."""

    SYNC = "sync"
    ASYNC = "async"


class DispatchVia(Enum):
    """Whether construction runs inline or from an idle callback of the ambient loop."""

    DIRECT = "direct"
    IDLE_CALLBACK = "idle"


class SyncStrategy(Enum):
    """Equivalent synchronous constructors."""

    FACTORY = "factory"
    INITABLE = "initable"


@dataclass(frozen=True)
class BootstrapChoice:
    """One point of the bootstrap matrix.

    Attributes:
        use_extra_nested_context: Construct inside a fresh nested context
            using *inner*; the remaining fields are then unused.
        construction_mode: Sync or async construction.
        dispatch_via: Inline, or from an idle callback of the ambient loop.
        sync_strategy: Factory or two-step initable (sync only).
        guard_ambient_loop: Attach an idle guard that fails if the ambient
            loop is iterated during construction (sync only).
        capture_error: Capture errors into a slot (``True``) or let them
            propagate (``False``).
        inner: Choice used inside the nested context.

    Raises:
        ValueError: For combinations that cannot be run.

    """

    use_extra_nested_context: bool = False
    construction_mode: ConstructionMode = ConstructionMode.SYNC
    dispatch_via: DispatchVia = DispatchVia.DIRECT
    sync_strategy: SyncStrategy | None = SyncStrategy.FACTORY
    guard_ambient_loop: bool = False
    capture_error: bool = False
    inner: BootstrapChoice | None = None

    def __post_init__(self) -> None:
        """Reject inconsistent combinations."""
        if self.use_extra_nested_context:
            if self.inner is None:
                raise ValueError("a nested-context choice needs an inner choice")
            return
        if self.inner is not None:
            raise ValueError("only nested-context choices carry an inner choice")
        if self.construction_mode is ConstructionMode.SYNC and self.sync_strategy is None:
            raise ValueError("synchronous construction needs a sync strategy")
        if self.construction_mode is ConstructionMode.ASYNC and (
            self.sync_strategy is not None or self.guard_ambient_loop
        ):
            raise ValueError("sync strategy and ambient-loop guard only apply to synchronous construction")

    @classmethod
    def nested(cls, inner: BootstrapChoice) -> BootstrapChoice:
        """Return the nested-context variant running *inner*."""
        return cls(use_extra_nested_context=True, sync_strategy=None, inner=inner)

    @property
    def iterates_ambient_loop(self) -> bool:
        """Whether the trial iterates the caller's ambient context."""
        if self.use_extra_nested_context:
            return False
        return self.construction_mode is ConstructionMode.ASYNC or self.dispatch_via is DispatchVia.IDLE_CALLBACK

    @property
    def label(self) -> str:
        """Compact description, usable as a test id."""
        if self.use_extra_nested_context:
            assert self.inner is not None
            return f"nested[{self.inner.label}]"
        parts = [self.construction_mode.value, self.dispatch_via.value]
        if self.sync_strategy is not None:
            parts.append(self.sync_strategy.value)
        if self.guard_ambient_loop:
            parts.append("guard")
        parts.append("error-slot" if self.capture_error else "no-error-slot")
        return "-".join(parts)


def assert_success(success: bool, error: BaseException | None) -> None:
    """Check that a construction reported a consistent outcome.

    Raises:
        ProtocolViolation: If success comes with an error, failure comes
            without one, or the construction failed.

    """
    if success and error is not None:
        raise ProtocolViolation(f"construction reported success together with an error: {error}") from error
    if not success and error is None:
        raise ProtocolViolation("construction failed without reporting an error")
    if not success:
        raise ProtocolViolation(f"construction failed: {error}") from error


class BootstrapMatrix:
    """Construct clients along every code path of the bootstrap matrix."""

    def __init__(self, config: HarnessConfig | None = None, rng: random.Random | None = None) -> None:
        """Initialize with a config and an RNG (seeded from ``config.seed`` when omitted)."""
        self._config = config if config is not None else HarnessConfig.from_env()
        self._rng = rng if rng is not None else random.Random(self._config.seed)
        self.guard_invocations = 0

    @property
    def config(self) -> HarnessConfig:
        """The configuration passed to every constructed client."""
        return self._config

    # -- choice generation ---------------------------------------------------

    def choose(self, allow_iterate: bool, *, _depth: int = 0) -> BootstrapChoice:
        """Draw a random choice.

        Args:
            allow_iterate: Whether the trial may iterate the caller's ambient
                loop.  When ``False`` the construction is synchronous and
                direct (a nested context is still possible, since it only
                iterates its own context).

        """
        rng = self._rng
        config = self._config
        if _depth < _MAX_NESTING and rng.random() < config.nested_context_probability:
            return BootstrapChoice.nested(self.choose(True, _depth=_depth + 1))

        if allow_iterate:
            mode = rng.choice((ConstructionMode.SYNC, ConstructionMode.ASYNC))
            inside_loop = rng.random() < config.idle_dispatch_probability
        else:
            mode = ConstructionMode.SYNC
            inside_loop = False
        dispatch = DispatchVia.IDLE_CALLBACK if inside_loop else DispatchVia.DIRECT

        if mode is ConstructionMode.SYNC:
            guard = rng.random() < 0.5
            strategy: SyncStrategy | None = rng.choice((SyncStrategy.FACTORY, SyncStrategy.INITABLE))
        else:
            guard = False
            strategy = None
        return BootstrapChoice(
            construction_mode=mode,
            dispatch_via=dispatch,
            sync_strategy=strategy,
            guard_ambient_loop=guard,
            capture_error=rng.random() < 0.5,
        )

    @staticmethod
    def _flat_choices(allow_iterate: bool) -> Iterator[BootstrapChoice]:
        modes = (ConstructionMode.SYNC, ConstructionMode.ASYNC) if allow_iterate else (ConstructionMode.SYNC,)
        dispatches = (DispatchVia.DIRECT, DispatchVia.IDLE_CALLBACK) if allow_iterate else (DispatchVia.DIRECT,)
        for mode, dispatch, capture in itertools.product(modes, dispatches, (False, True)):
            if mode is ConstructionMode.ASYNC:
                yield BootstrapChoice(
                    construction_mode=mode, dispatch_via=dispatch, sync_strategy=None, capture_error=capture
                )
                continue
            for strategy, guard in itertools.product(SyncStrategy, (False, True)):
                yield BootstrapChoice(
                    construction_mode=mode,
                    dispatch_via=dispatch,
                    sync_strategy=strategy,
                    guard_ambient_loop=guard,
                    capture_error=capture,
                )

    def enumerate_choices(self, allow_iterate: bool) -> Iterator[BootstrapChoice]:
        """Yield every non-nested choice, then one nested variant per non-nested inner choice.

        Inner choices may iterate, since inside a nested context they only
        iterate that context.
        """
        yield from self._flat_choices(allow_iterate)
        for inner in self._flat_choices(True):
            yield BootstrapChoice.nested(inner)

    # -- trials --------------------------------------------------------------

    def run_trial(self, choice: BootstrapChoice) -> Client:
        """Construct a client exactly as *choice* says.

        Returns:
            An initialized client, owned by the caller.

        Raises:
            ProtocolViolation: If construction failed or reported an
                inconsistent outcome.

        """
        _logger.debug("bootstrap trial %s", choice.label)
        if choice.use_extra_nested_context:
            assert choice.inner is not None
            client = self._new_nested(choice.inner)
        elif choice.dispatch_via is DispatchVia.IDLE_CALLBACK:
            client = self._new_inside_loop(choice)
        else:
            client = self._construct(choice)
        if client is None or not client.initialized:
            raise ProtocolViolation(f"trial {choice.label} produced no initialized client: {client!r}")
        return client

    def new_client(self, allow_iterate: bool = True) -> Client:
        """Construct a client along a randomly chosen path."""
        return self.run_trial(self.choose(allow_iterate))

    def _construct(self, choice: BootstrapChoice) -> Client:
        if choice.construction_mode is ConstructionMode.SYNC:
            return self._construct_sync(choice)
        return self._construct_async(choice)

    def _guard_called(self) -> bool:
        self.guard_invocations += 1
        raise ProtocolViolation("the ambient main context was iterated during synchronous construction")

    def _construct_sync(self, choice: BootstrapChoice) -> Client:
        config = self._config
        guard: IdleSource | None = None
        if choice.guard_ambient_loop:
            guard = IdleSource(self._guard_called)
            guard.attach(MainContext.thread_default())
        try:
            error: Exception | None = None
            client: Client | None = None
            if choice.sync_strategy is SyncStrategy.INITABLE:
                client = Client(config)
                if choice.capture_error:
                    try:
                        success = client.init()
                    except Exception as exc:
                        success, error = False, exc
                else:
                    success = client.init()
                assert_success(success, error)
            elif choice.capture_error:
                try:
                    client = Client.new(config)
                except Exception as exc:
                    error = exc
            else:
                client = Client.new(config)
            assert_success(client is not None and client.initialized, error)
        finally:
            if guard is not None:
                guard.destroy()
        assert client is not None
        return client

    def _construct_async(self, choice: BootstrapChoice) -> Client:
        loop = MainLoop(MainContext.thread_default())
        completed: list[Future[Client]] = []

        def _done(future: Future[Client]) -> None:
            completed.append(future)
            loop.quit()

        future = Client.new_async(_done, self._config)
        if not future.done():
            loop.run()
        if len(completed) != 1:
            raise ProtocolViolation(f"completion callback ran {len(completed)} times")

        error: Exception | None = None
        client: Client | None = None
        if choice.capture_error:
            try:
                client = Client.new_finish(future)
            except Exception as exc:
                error = exc
        else:
            client = Client.new_finish(future)
        assert_success(client is not None and client.initialized, error)
        assert client is not None
        return client

    def _new_inside_loop(self, choice: BootstrapChoice) -> Client:
        context = MainContext.thread_default()
        loop = MainLoop(context)
        direct = replace(choice, dispatch_via=DispatchVia.DIRECT)
        result: list[Client] = []

        def _construct_from_idle() -> bool:
            result.append(self._construct(direct))
            loop.quit()
            return SOURCE_CONTINUE

        source = IdleSource(_construct_from_idle)
        source.attach(context)
        try:
            loop.run()
        finally:
            source.destroy()
        return result[0]

    def _new_nested(self, inner: BootstrapChoice) -> Client:
        inner_context = MainContext("busharness-nested")
        inner_context.push_thread_default()
        try:
            client = self.run_trial(inner)
            source = IntegrationSource(inner_context)
        finally:
            inner_context.pop_thread_default()
        source.attach(MainContext.thread_default())

        for index in itertools.count():
            key = f"{NESTED_CONTEXT_KEY_PREFIX}{index}"
            if client.get_data(key) is None:
                client.set_data(key, source, _destroy_source)
                return client
        raise AssertionError("unreachable")


def _destroy_source(source: IntegrationSource) -> None:
    source.destroy()


_shared_rng: random.Random | None = None


def new_client(
    allow_iterate: bool = True, *, config: HarnessConfig | None = None, rng: random.Random | None = None
) -> Client:
    """Construct a client along a randomly chosen bootstrap path.

    Without *rng*, successive calls draw from one process-wide generator,
    seeded from the first config seen.
    """
    global _shared_rng
    if config is None:
        config = HarnessConfig.from_env()
    if rng is None:
        if _shared_rng is None:
            _shared_rng = random.Random(config.seed)
        rng = _shared_rng
    return BootstrapMatrix(config, rng).new_client(allow_iterate)
