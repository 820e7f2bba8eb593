# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Single-threaded cooperative event contexts.

A :class:`MainContext` owns a set of :class:`Source` objects and runs one
*iteration* at a time: every source is asked whether it is ready (``prepare``),
the file descriptors the sources care about are polled, readiness is
re-evaluated (``check``), and the ready sources of the most urgent priority
are dispatched.  A :class:`MainLoop` simply iterates a context until
:meth:`MainLoop.quit` is called.

Each thread has a stack of *thread-default* ("ambient") contexts.  Library
code that needs to deliver callbacks later attaches its sources to
:meth:`MainContext.thread_default` at construction time, so pushing a fresh
context around a constructor isolates the constructed object from the
caller's loop.  An :class:`IntegrationSource` attached to an outer context
lets such an inner context make progress whenever the outer one iterates.

Source kinds
------------
- :class:`IdleSource`: ready whenever nothing more urgent is.
- :class:`TimeoutSource`: ready once its interval has elapsed; re-arms.
- :class:`FdSource`: ready when a file descriptor becomes readable/writable.
- :class:`ChildWatchSource`: ready once a child process has exited.
- :class:`IntegrationSource`: mirrors the readiness of another context.

Callbacks return :data:`SOURCE_CONTINUE` to stay attached or
:data:`SOURCE_REMOVE` to be destroyed after dispatch.  A source is never
dispatched recursively from within its own callback, even when that callback
iterates the same context again.
"""

from __future__ import annotations

import contextlib
import logging
import os
import selectors
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any, Final

__all__ = [
    "PRIORITY_DEFAULT",
    "PRIORITY_DEFAULT_IDLE",
    "PRIORITY_HIGH",
    "SOURCE_CONTINUE",
    "SOURCE_REMOVE",
    "ChildWatchSource",
    "FdSource",
    "IdleSource",
    "IntegrationSource",
    "MainContext",
    "MainLoop",
    "Source",
    "TimeoutSource",
    "idle_add",
    "run_loop",
    "timeout_add",
]

_logger = logging.getLogger("busharness.mainloop")

PRIORITY_HIGH: Final = -100
PRIORITY_DEFAULT: Final = 0
PRIORITY_DEFAULT_IDLE: Final = 200

SOURCE_CONTINUE: Final = True
SOURCE_REMOVE: Final = False

SourceCallback = Callable[..., bool]
"""Source callback type; the return value decides whether the source stays attached."""


# ---------------------------------------------------------------------------
# Source base class
# ---------------------------------------------------------------------------


class Source:
    """An event source that can be attached to exactly one :class:`MainContext`.

    Subclasses override :meth:`prepare`, :meth:`poll_fds` and :meth:`check`
    to describe when they are ready; :meth:`dispatch` invokes the callback.
    ``prepare`` and ``check`` must not have side effects other than reaping
    state they own, since a context may evaluate them more than once per
    iteration.
    """

    default_priority: int = PRIORITY_DEFAULT

    def __init__(self, callback: SourceCallback | None = None, *args: Any, priority: int | None = None) -> None:
        """Initialize with an optional callback and its positional arguments."""
        self._callback = callback
        self._args = args
        self.priority = self.default_priority if priority is None else priority
        self._context: MainContext | None = None
        self._destroyed = False
        self._dispatching = False
        self.id = 0

    def __repr__(self) -> str:
        """Return a short description including the id and state."""
        state = "destroyed" if self._destroyed else ("attached" if self._context is not None else "detached")
        return f"<{type(self).__name__} id={self.id} priority={self.priority} {state}>"

    @property
    def context(self) -> MainContext | None:
        """The context this source is attached to, or ``None``."""
        return self._context

    @property
    def is_destroyed(self) -> bool:
        """Whether :meth:`destroy` has been called."""
        return self._destroyed

    def attach(self, context: MainContext | None = None) -> int:
        """Attach to *context* (the thread-default context when ``None``).

        Returns:
            The source id, unique within the context.

        Raises:
            RuntimeError: If the source is destroyed or already attached.

        """
        if self._destroyed:
            raise RuntimeError(f"cannot attach destroyed source {self!r}")
        if self._context is not None:
            raise RuntimeError(f"source {self!r} is already attached")
        if context is None:
            context = MainContext.thread_default()
        context._add(self)
        self._on_attach(time.monotonic())
        return self.id

    def destroy(self) -> None:
        """Detach from the context and release resources; idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        if self._context is not None:
            self._context._remove(self)
        self._on_destroy()

    # -- hooks ---------------------------------------------------------------

    def _on_attach(self, now: float) -> None:
        """Called once the source joined a context."""

    def _on_destroy(self) -> None:
        """Called once when the source is destroyed."""

    def prepare(self, now: float) -> tuple[bool, float | None]:
        """Return ``(ready, timeout)``; *timeout* bounds how long the poll may block."""
        return False, None

    def poll_fds(self) -> Sequence[tuple[int, int]]:
        """Return ``(fd, selectors.EVENT_*)`` pairs to poll."""
        return ()

    def check(self, now: float, ready_fds: Mapping[int, int]) -> bool:
        """Return whether the source is ready after polling."""
        return False

    def dispatch(self) -> bool:
        """Invoke the callback; return whether to stay attached."""
        if self._callback is None:
            return SOURCE_REMOVE
        return bool(self._callback(*self._args))


# ---------------------------------------------------------------------------
# Concrete sources
# ---------------------------------------------------------------------------


class IdleSource(Source):
    """Always ready, dispatched only when no higher-priority source is ready."""

    default_priority = PRIORITY_DEFAULT_IDLE

    def prepare(self, now: float) -> tuple[bool, float | None]:
        """Idle sources are always ready."""
        return True, 0.0


class TimeoutSource(Source):
    """Ready once *interval* seconds have elapsed; re-armed after each dispatch."""

    def __init__(
        self,
        interval: float,
        callback: SourceCallback | None = None,
        *args: Any,
        priority: int | None = None,
    ) -> None:
        """Initialize with the interval in seconds."""
        if interval < 0:
            raise ValueError(f"interval must be non-negative, got {interval}")
        super().__init__(callback, *args, priority=priority)
        self.interval = interval
        self._expiration = 0.0

    def _on_attach(self, now: float) -> None:
        self._expiration = now + self.interval

    def prepare(self, now: float) -> tuple[bool, float | None]:
        """Ready when the expiration passed, else block at most until then."""
        remaining = self._expiration - now
        if remaining <= 0:
            return True, 0.0
        return False, remaining

    def check(self, now: float, ready_fds: Mapping[int, int]) -> bool:
        """Ready when the expiration passed."""
        return now >= self._expiration

    def dispatch(self) -> bool:
        """Invoke the callback and re-arm relative to the dispatch time."""
        keep = super().dispatch()
        self._expiration = time.monotonic() + self.interval
        return keep


class FdSource(Source):
    """Ready when *fd* polls with any of *events* (``selectors.EVENT_READ`` by default)."""

    def __init__(
        self,
        fd: int,
        callback: SourceCallback | None = None,
        *args: Any,
        events: int = selectors.EVENT_READ,
        priority: int | None = None,
    ) -> None:
        """Initialize with the file descriptor and the events of interest."""
        super().__init__(callback, *args, priority=priority)
        self.fd = fd
        self.events = events

    def poll_fds(self) -> Sequence[tuple[int, int]]:
        """Poll the single descriptor."""
        return ((self.fd, self.events),)

    def check(self, now: float, ready_fds: Mapping[int, int]) -> bool:
        """Ready when the descriptor reported one of the requested events."""
        return bool(ready_fds.get(self.fd, 0) & self.events)


class ChildWatchSource(Source):
    """Ready once *process* has exited; dispatches ``callback(pid, returncode, *args)``.

    On Linux a pidfd wakes the poll as soon as the child exits; elsewhere the
    source re-checks the process every *fallback_interval* seconds.  The
    source reaps the child through :meth:`subprocess.Popen.poll`, so the exit
    status stays available on ``process.returncode``.
    """

    def __init__(
        self,
        process: subprocess.Popen[Any],
        callback: SourceCallback | None = None,
        *args: Any,
        fallback_interval: float = 0.05,
        priority: int | None = None,
    ) -> None:
        """Initialize with the child process to watch."""
        super().__init__(callback, *args, priority=priority)
        self._process = process
        self._fallback_interval = fallback_interval
        self._pidfd: int | None = None
        if process.returncode is None and hasattr(os, "pidfd_open"):
            try:
                self._pidfd = os.pidfd_open(process.pid)
            except OSError:
                _logger.debug("pidfd_open(%d) failed, polling instead", process.pid, exc_info=True)

    @property
    def pid(self) -> int:
        """The watched process id."""
        return self._process.pid

    def _on_destroy(self) -> None:
        if self._pidfd is not None:
            os.close(self._pidfd)
            self._pidfd = None

    def prepare(self, now: float) -> tuple[bool, float | None]:
        """Ready when the exit was already observed."""
        if self._process.returncode is not None:
            return True, 0.0
        return False, (None if self._pidfd is not None else self._fallback_interval)

    def poll_fds(self) -> Sequence[tuple[int, int]]:
        """Poll the pidfd when one is available."""
        if self._pidfd is None:
            return ()
        return ((self._pidfd, selectors.EVENT_READ),)

    def check(self, now: float, ready_fds: Mapping[int, int]) -> bool:
        """Reap the child without blocking and report whether it exited."""
        return self._process.poll() is not None

    def dispatch(self) -> bool:
        """Invoke ``callback(pid, returncode, *args)``; the watch is one-shot."""
        if self._callback is not None:
            self._callback(self._process.pid, self._process.returncode, *self._args)
        return SOURCE_REMOVE


class IntegrationSource(Source):
    """Make progress on *inner* whenever the context this source is attached to iterates.

    The source reports the inner context's readiness, timeouts and file
    descriptors as its own, and its dispatch runs one non-blocking iteration
    of the inner context.  The inner context is never pumped directly by the
    outer one except through this handoff.
    """

    def __init__(self, inner: MainContext, *, priority: int | None = None) -> None:
        """Initialize for the given inner context."""
        super().__init__(priority=priority)
        self._inner = inner

    @property
    def inner(self) -> MainContext:
        """The integrated context."""
        return self._inner

    def prepare(self, now: float) -> tuple[bool, float | None]:
        """Mirror the inner context's readiness and earliest timeout."""
        ready, timeout, _ = self._inner._query(now)
        return ready, timeout

    def poll_fds(self) -> Sequence[tuple[int, int]]:
        """Expose the inner context's descriptors."""
        return tuple(self._inner._query(time.monotonic())[2].items())

    def check(self, now: float, ready_fds: Mapping[int, int]) -> bool:
        """Ready when any inner source is ready."""
        return bool(self._inner._ready_sources(now, ready_fds))

    def dispatch(self) -> bool:
        """Run one non-blocking iteration of the inner context."""
        self._inner.iteration(may_block=False)
        return SOURCE_CONTINUE


# ---------------------------------------------------------------------------
# MainContext
# ---------------------------------------------------------------------------


class _ThreadState(threading.local):
    def __init__(self) -> None:
        self.stack: list[MainContext] = []


_thread_state = _ThreadState()
_default_lock = threading.Lock()
_default_context: MainContext | None = None


class MainContext:
    """A set of sources iterated together.

    Not thread-safe: a context is iterated by the thread that uses it.
    """

    __slots__ = ("_next_id", "_sources", "name")

    def __init__(self, name: str = "") -> None:
        """Initialize an empty context; *name* only appears in ``repr``."""
        self.name = name
        self._sources: dict[int, Source] = {}
        self._next_id = 1

    def __repr__(self) -> str:
        """Return a short description including the number of sources."""
        label = f" {self.name!r}" if self.name else ""
        return f"<MainContext{label} sources={len(self._sources)}>"

    # -- thread default ------------------------------------------------------

    @staticmethod
    def default() -> MainContext:
        """Return the process-wide default context."""
        global _default_context
        with _default_lock:
            if _default_context is None:
                _default_context = MainContext("default")
            return _default_context

    @staticmethod
    def thread_default() -> MainContext:
        """Return the ambient context of the calling thread.

        This is the top of the thread's push stack, or the process-wide
        default context when nothing was pushed.
        """
        stack = _thread_state.stack
        if stack:
            return stack[-1]
        return MainContext.default()

    def push_thread_default(self) -> None:
        """Make this context the calling thread's ambient context."""
        _thread_state.stack.append(self)

    def pop_thread_default(self) -> None:
        """Undo :meth:`push_thread_default`.

        Raises:
            RuntimeError: If this context is not the current top of the stack.

        """
        stack = _thread_state.stack
        if not stack or stack[-1] is not self:
            raise RuntimeError(f"{self!r} is not the thread-default context")
        stack.pop()

    @contextlib.contextmanager
    def as_thread_default(self) -> Iterator[MainContext]:
        """Context manager pushing this context for the duration of the block."""
        self.push_thread_default()
        try:
            yield self
        finally:
            self.pop_thread_default()

    # -- sources -------------------------------------------------------------

    def _add(self, source: Source) -> None:
        source.id = self._next_id
        self._next_id += 1
        source._context = self
        self._sources[source.id] = source

    def _remove(self, source: Source) -> None:
        self._sources.pop(source.id, None)
        source._context = None

    def find_source_by_id(self, source_id: int) -> Source | None:
        """Return the attached source with *source_id*, if any."""
        return self._sources.get(source_id)

    @property
    def sources(self) -> tuple[Source, ...]:
        """Snapshot of the attached sources."""
        return tuple(self._sources.values())

    # -- iteration -----------------------------------------------------------

    def _candidates(self) -> list[Source]:
        return [s for s in self._sources.values() if not s._destroyed and not s._dispatching]

    def _query(self, now: float) -> tuple[bool, float | None, dict[int, int]]:
        """Return ``(any_ready, earliest_timeout, fds)`` over all candidate sources."""
        ready = False
        timeout: float | None = None
        fds: dict[int, int] = {}
        for source in self._candidates():
            source_ready, source_timeout = source.prepare(now)
            ready = ready or source_ready
            if source_timeout is not None:
                timeout = source_timeout if timeout is None else min(timeout, source_timeout)
            for fd, events in source.poll_fds():
                fds[fd] = fds.get(fd, 0) | events
        return ready, timeout, fds

    def _ready_sources(self, now: float, ready_fds: Mapping[int, int]) -> list[Source]:
        return [s for s in self._candidates() if s.prepare(now)[0] or s.check(now, ready_fds)]

    @staticmethod
    def _poll(fds: Mapping[int, int], timeout: float | None) -> dict[int, int]:
        if not fds:
            if timeout is None:
                raise RuntimeError("iteration would block forever: no file descriptors and no timeout")
            if timeout > 0:
                time.sleep(timeout)
            return {}
        with selectors.DefaultSelector() as selector:
            for fd, events in fds.items():
                selector.register(fd, events)
            return {key.fd: mask for key, mask in selector.select(timeout)}

    def iteration(self, may_block: bool = True) -> bool:
        """Run a single iteration.

        Args:
            may_block: Whether to wait for a source to become ready.  When
                ``False`` the poll returns immediately.

        Returns:
            Whether any source was dispatched.

        Raises:
            RuntimeError: If *may_block* is set but no source could ever wake
                the context up.

        """
        ready, timeout, fds = self._query(time.monotonic())
        if ready or not may_block:
            timeout = 0.0
        ready_fds = self._poll(fds, timeout)
        ready_sources = self._ready_sources(time.monotonic(), ready_fds)
        if not ready_sources:
            return False
        top = min(s.priority for s in ready_sources)
        for source in ready_sources:
            if source.priority != top or source._destroyed or source._dispatching:
                continue
            self._dispatch(source)
        return True

    @staticmethod
    def _dispatch(source: Source) -> None:
        source._dispatching = True
        try:
            keep = source.dispatch()
        finally:
            source._dispatching = False
        if not keep:
            source.destroy()


# ---------------------------------------------------------------------------
# MainLoop
# ---------------------------------------------------------------------------


class MainLoop:
    """Iterates a context until :meth:`quit` is called."""

    __slots__ = ("_context", "_running")

    def __init__(self, context: MainContext | None = None) -> None:
        """Initialize for *context* (the thread-default context when ``None``)."""
        self._context = context if context is not None else MainContext.thread_default()
        self._running = False

    @property
    def context(self) -> MainContext:
        """The iterated context."""
        return self._context

    @property
    def is_running(self) -> bool:
        """Whether :meth:`run` is active and :meth:`quit` was not called."""
        return self._running

    def run(self) -> None:
        """Iterate the context until :meth:`quit`; exceptions from callbacks propagate."""
        self._running = True
        try:
            while self._running:
                self._context.iteration(may_block=True)
        finally:
            self._running = False

    def quit(self) -> None:
        """Stop :meth:`run` after the current dispatch."""
        self._running = False


def run_loop(loop: MainLoop, timeout: float) -> bool:
    """Run *loop* for at most *timeout* seconds.

    Returns:
        ``True`` if the loop was quit before the timeout, ``False`` if the
        timeout expired.

    """
    expired = False

    def _expire() -> bool:
        nonlocal expired
        expired = True
        loop.quit()
        return SOURCE_REMOVE

    source = TimeoutSource(timeout, _expire, priority=PRIORITY_HIGH)
    source.attach(loop.context)
    try:
        loop.run()
    finally:
        source.destroy()
    return not expired


def idle_add(callback: SourceCallback, *args: Any, context: MainContext | None = None) -> IdleSource:
    """Attach an :class:`IdleSource` for *callback* and return it."""
    source = IdleSource(callback, *args)
    source.attach(context)
    return source


def timeout_add(
    interval: float, callback: SourceCallback, *args: Any, context: MainContext | None = None
) -> TimeoutSource:
    """Attach a :class:`TimeoutSource` for *callback* and return it."""
    source = TimeoutSource(interval, callback, *args)
    source.attach(context)
    return source
