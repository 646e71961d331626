"""Ambient call context — "my own track" without threading it through every frame.

A run-wrapper prepares a context immediately before invoking a tracked
function and restores it immediately after the call returns. While the
function's own code runs, get_current_context() hands back the context, so
helpers deep in the call stack can read or update the call's data.

Contexts nest strictly. Each prepare() returns a one-shot restore callable,
and restores must happen in exact reverse order:

    restore_outer = prepare_context(outer)
    restore_inner = prepare_context(inner)
    get_current_context()       # inner
    restore_inner()
    get_current_context()       # outer
    restore_outer()
    get_current_context()       # None

Calling a restore out of order, or twice, raises instead of silently
repairing the chain.

The slot lives in a ContextVar, so it is task-local under asyncio: a task
created while a context is current keeps it for its whole run, and code
outside that task never observes it once restored.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from racetrack.exceptions import ContextOrderError, ContextReleasedError, NoActiveContextError

logger = logging.getLogger("racetrack.context")

Restore = Callable[[], None]


@dataclass(frozen=True)
class CallContext:
    """Read and update the data of the call that owns this context."""

    get_data: Callable[[], Any]
    update_data: Callable[[Any], Any]


class _Frame:
    __slots__ = ("context", "parent", "released")

    def __init__(self, context: Any, parent: _Frame | None) -> None:
        self.context = context
        self.parent = parent
        self.released = False


class ContextStack:
    """A strictly nested stack of ambient contexts.

    strict=True makes get_current() raise NoActiveContextError instead of
    returning None when nothing is active.
    """

    __slots__ = ("_name", "_strict", "_current")

    def __init__(self, name: str = "racetrack.context", *, strict: bool = False) -> None:
        self._name = name
        self._strict = strict
        self._current: contextvars.ContextVar[_Frame | None] = contextvars.ContextVar(name, default=None)

    @property
    def name(self) -> str:
        return self._name

    @property
    def strict(self) -> bool:
        return self._strict

    @property
    def depth(self) -> int:
        """Number of active nested contexts."""
        depth = 0
        frame = self._current.get()
        while frame is not None:
            depth += 1
            frame = frame.parent
        return depth

    def prepare(self, context: Any) -> Restore:
        """Make context current. Returns the callable that pops it again."""
        frame = _Frame(context, self._current.get())
        self._current.set(frame)
        logger.debug("%s: pushed context (depth %d)", self._name, self.depth)

        def restore() -> None:
            if frame.released:
                logger.error("%s: context restored twice", self._name)
                raise ContextReleasedError(f"{self._name}: context was already restored")
            if self._current.get() is not frame:
                logger.error("%s: nested context restored out of order", self._name)
                raise ContextOrderError(f"{self._name}: nested contexts must be restored in reverse order")
            frame.released = True
            self._current.set(frame.parent)
            logger.debug("%s: popped context (depth %d)", self._name, self.depth)

        return restore

    def get_current(self, *, strict: bool | None = None) -> Any:
        """The innermost active context, or None when there is none."""
        frame = self._current.get()
        if frame is not None:
            return frame.context
        if self._strict if strict is None else strict:
            raise NoActiveContextError(f"{self._name}: no active context")
        return None

    @contextmanager
    def activate(self, context: Any) -> Iterator[Any]:
        """prepare() on entry, restore() on exit."""
        restore = self.prepare(context)
        try:
            yield context
        finally:
            restore()

    def __repr__(self) -> str:
        return f"ContextStack({self._name}, depth={self.depth})"


# Process-wide stack used by the module-level helpers and the function monitor.
_default_stack = ContextStack()


def default_stack() -> ContextStack:
    return _default_stack


def prepare_context(context: Any) -> Restore:
    """prepare() on the process-wide stack."""
    return _default_stack.prepare(context)


def get_current_context(*, strict: bool | None = None) -> Any:
    """Context of the tracked call whose code is running, or None outside one.

    Usage:
        def load(user_id):
            ctx = get_current_context()
            ctx.update_data(placeholder_for(user_id))
            return fetch(user_id)
    """
    return _default_stack.get_current(strict=strict)
