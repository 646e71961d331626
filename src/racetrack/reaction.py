"""Reactions — side effects that follow tracker flags.

Projections are lazy; a Reaction is eager. It re-runs as soon as any mark or
projection it read changes, which is how an observer layer keeps a
"loading" or "data expired" flag in step with a Tracker.

Two flavors:
- autorun(fn): runs fn now, re-runs whenever anything it read changes.
- reaction(data_fn, effect_fn): tracks data_fn and calls effect_fn only when
  data_fn's result changes.
"""

from __future__ import annotations

from typing import Callable, TypeVar

from racetrack._tracking import current_derivation, schedule

T = TypeVar("T")


class Reaction:
    """A side effect re-run whenever its tracked sources change."""

    __slots__ = ("_fn", "_dependencies", "_disposed")

    def __init__(self, fn: Callable[[], None]) -> None:
        self._fn = fn
        self._dependencies: set = set()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _evaluate(self, fn: Callable[[], T]) -> T:
        for dep in self._dependencies:
            dep._remove_observer(self)
        self._dependencies.clear()

        token = current_derivation.set(self)
        try:
            return fn()
        finally:
            current_derivation.reset(token)

    def _invalidate(self) -> None:
        schedule(self)

    def _run(self) -> None:
        if self._disposed:
            return
        self._evaluate(self._fn)

    def dispose(self) -> None:
        """Stop reacting and detach from every source."""
        self._disposed = True
        for dep in self._dependencies:
            dep._remove_observer(self)
        self._dependencies.clear()

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "active"
        return f"Reaction({getattr(self._fn, '__name__', 'fn')}, {state})"


class _DataReaction(Reaction):
    """reaction(data_fn, effect_fn): effect fires only when data_fn's result changes."""

    __slots__ = ("_effect_fn", "_last_value", "_initialized")

    def __init__(self, data_fn: Callable[[], T], effect_fn: Callable[[T], None]) -> None:
        super().__init__(data_fn)
        self._effect_fn = effect_fn
        self._last_value = None
        self._initialized = False

    def _run(self) -> None:
        if self._disposed:
            return
        new_value = self._evaluate(self._fn)
        if not self._initialized or new_value != self._last_value:
            self._last_value = new_value
            self._initialized = True
            self._effect_fn(new_value)

    def _prime(self) -> None:
        self._last_value = self._evaluate(self._fn)
        self._initialized = True


def autorun(fn: Callable[[], None]) -> Reaction:
    """Run fn immediately, then again whenever a mark or projection it read changes.

    Usage:
        tracker = Tracker()
        log = []

        r = autorun(lambda: log.append(tracker.has.finished))
        # log == [False]

        tracker.track().fulfill()
        # log == [False, True]

        r.dispose()
    """
    r = Reaction(fn)
    r._run()
    return r


def reaction(
    data_fn: Callable[[], T],
    effect_fn: Callable[[T], None],
    *,
    fire_immediately: bool = False,
) -> Reaction:
    """Track data_fn; call effect_fn with its result whenever that result changes.

    Without fire_immediately, data_fn runs once to establish dependencies and
    effect_fn waits for the first change.
    """
    r = _DataReaction(data_fn, effect_fn)
    if fire_immediately:
        r._run()
    else:
        r._prime()
    return r
