"""High-water marks and projections — the reactive counters behind a Tracker.

A HighWaterMark is an integer that only ever moves up. Every write is a
"raise if higher", which is commutative and idempotent, so any interleaving
of writers leaves the mark at the largest value written.

A Projection derives a value from marks (or other projections). It tracks
what it reads, caches the result, and is invalidated when any of those
sources change. Invalidation is immediate, even inside a transaction, so a
get() never returns a value older than the marks it was derived from. The
recompute itself is lazy and waits for the next get().
"""

from __future__ import annotations

from typing import Callable, Generic, TypeVar

from racetrack._tracking import begin_batch, current_derivation, end_batch, track_read

T = TypeVar("T")

_UNSET = object()


class HighWaterMark:
    """A reactive, monotonically non-decreasing integer."""

    __slots__ = ("_name", "_value", "_observers")

    def __init__(self, name: str = "mark", value: int = 0) -> None:
        self._name = name
        self._value = value
        self._observers: set = set()

    @property
    def name(self) -> str:
        return self._name

    def get(self) -> int:
        """Read the mark. Inside a derivation, registers the dependency."""
        track_read(self)
        return self._value

    def peek(self) -> int:
        """Read the mark without registering a dependency."""
        return self._value

    def raise_to(self, value: int) -> bool:
        """Raise the mark to value if it is higher. Returns True if it moved."""
        if value <= self._value:
            return False
        self._value = value
        self._notify()
        return True

    def advance(self) -> int:
        """Increment the mark by one and return the new value."""
        self._value += 1
        self._notify()
        return self._value

    def _notify(self) -> None:
        # Projections go dirty right away; reactions wait for the batch to close.
        begin_batch()
        try:
            for observer in list(self._observers):
                observer._invalidate()
        finally:
            end_batch()

    def _remove_observer(self, observer) -> None:
        self._observers.discard(observer)

    def __repr__(self) -> str:
        return f"HighWaterMark({self._name}={self._value})"


class Projection(Generic[T]):
    """A cached value derived from marks, recomputed after they change.

    Usage:
        fulfilled = HighWaterMark("fulfilled")
        has_fulfilled = Projection(lambda: fulfilled.get() > 0)

        has_fulfilled.get()  # False
        fulfilled.raise_to(3)
        has_fulfilled.get()  # True
    """

    __slots__ = ("_fn", "_name", "_cached", "_dirty", "_dependencies", "_observers")

    def __init__(self, fn: Callable[[], T], name: str | None = None) -> None:
        self._fn = fn
        self._name = name or getattr(fn, "__name__", "projection")
        self._cached: object = _UNSET
        self._dirty = True
        self._dependencies: set = set()
        self._observers: set = set()

    @property
    def name(self) -> str:
        return self._name

    def get(self) -> T:
        """Read the projected value, recomputing it first if a source changed."""
        track_read(self)
        if self._dirty:
            self._recompute()
        return self._cached

    def _recompute(self) -> None:
        for dep in self._dependencies:
            dep._remove_observer(self)
        self._dependencies.clear()

        token = current_derivation.set(self)
        try:
            self._cached = self._fn()
        finally:
            current_derivation.reset(token)

        self._dirty = False

    def _invalidate(self) -> None:
        if self._dirty:
            return
        self._dirty = True
        for observer in list(self._observers):
            observer._invalidate()

    def _remove_observer(self, observer) -> None:
        self._observers.discard(observer)

    def dispose(self) -> None:
        """Disconnect from all sources. The next get() re-evaluates from scratch."""
        for dep in self._dependencies:
            dep._remove_observer(self)
        self._dependencies.clear()
        self._observers.clear()
        self._dirty = True
        self._cached = _UNSET

    def __repr__(self) -> str:
        state = "dirty" if self._dirty else f"cached={self._cached!r}"
        return f"Projection({self._name}, {state})"
