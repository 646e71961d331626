"""Call sequencing and race resolution — the heart of racetrack.

A Tracker hands out one Track per invocation of a tracked operation. Each
Track gets a sequence number (sn) from the tracker's creation counter, so
creation order is a total order even though completion order is not.

The tracker keeps one high-water mark per target state: the largest sn that
has reached UPDATING, FULFILLED and REJECTED so far. A Track compares its own
sn against those marks to answer "has something newer already made me
obsolete?" without locks or call history:

    t1, t2 = tracker.track(), tracker.track()
    t2.fulfill("fresh")
    t1.fulfill("late")       # arrives out of order
    t1.is_stale_value()      # True, t2 finished past it
    t2.is_stale_value()      # False

Updating and finishing use separate marks, so an observer can keep showing
the newest progress while an older call's final answer is outstanding, and
still recognise staleness as soon as a later call progresses.

State machine (terminal states never transition; extra calls are no-ops):

    PENDING --update--> UPDATING --update--> UPDATING
    {PENDING, UPDATING} --fulfill--> FULFILLED
    {PENDING, UPDATING} --reject--> REJECTED
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Hashable

from racetrack.marks import HighWaterMark, Projection
from racetrack.stream import EventStream

logger = logging.getLogger("racetrack.tracker")


class TrackState(enum.Enum):
    PENDING = "pending"
    UPDATING = "updating"
    FULFILLED = "fulfilled"
    REJECTED = "rejected"


_TRANSITIONS: dict[TrackState, frozenset[TrackState]] = {
    TrackState.PENDING: frozenset({TrackState.UPDATING, TrackState.FULFILLED, TrackState.REJECTED}),
    TrackState.UPDATING: frozenset({TrackState.UPDATING, TrackState.FULFILLED, TrackState.REJECTED}),
    TrackState.FULFILLED: frozenset(),
    TrackState.REJECTED: frozenset(),
}


def allow_transition(source: TrackState, target: TrackState) -> bool:
    return target in _TRANSITIONS[source]


@dataclass(frozen=True)
class TrackData:
    """Notification emitted when a shared data key is written."""

    track: Track
    key: Hashable
    value: Any


@dataclass(frozen=True)
class TrackSnapshot:
    """Point-in-time view of a track and its tracker's marks, for debugging."""

    sn: int
    state: TrackState
    value: Any
    error: Any
    latest_call: bool
    latest_update: bool
    latest_fulfill: bool
    latest_finish: bool
    stale_value: bool
    marks: dict[str, int] = field(default_factory=dict)


class Track:
    """One invocation of a tracked operation.

    Created by Tracker.track(); the caller that created it owns its
    transitions. Anyone may query it at any time.
    """

    __slots__ = ("_tracker", "_sn", "_state", "_value", "_error", "_data", "_shared", "_data_events")

    def __init__(self, tracker: Tracker, sn: int, initial: Any = None) -> None:
        self._tracker = tracker
        self._sn = sn
        self._state = TrackState.PENDING
        self._value = initial
        self._error: Any = None
        self._data: dict[Hashable, Any] = {}
        self._shared: dict[Hashable, Hashable] = {}
        self._data_events: EventStream[TrackData] | None = None

    @property
    def sn(self) -> int:
        return self._sn

    @property
    def tracker(self) -> Tracker:
        return self._tracker

    @property
    def state(self) -> TrackState:
        return self._state

    @property
    def value(self) -> Any:
        return self._value

    @property
    def error(self) -> Any:
        return self._error

    # --- State predicates ---

    def in_state_pending(self) -> bool:
        return self._state is TrackState.PENDING

    def in_state_updating(self) -> bool:
        return self._state is TrackState.UPDATING

    def in_state_fulfilled(self) -> bool:
        return self._state is TrackState.FULFILLED

    def in_state_rejected(self) -> bool:
        return self._state is TrackState.REJECTED

    def in_state_finished(self) -> bool:
        return self._state is TrackState.FULFILLED or self._state is TrackState.REJECTED

    def can_update(self) -> bool:
        return allow_transition(self._state, TrackState.UPDATING)

    def can_fulfill(self) -> bool:
        return allow_transition(self._state, TrackState.FULFILLED)

    def can_reject(self) -> bool:
        return allow_transition(self._state, TrackState.REJECTED)

    # --- Transitions ---

    def _enter(self, target: TrackState) -> bool:
        if not allow_transition(self._state, target):
            logger.debug("track #%d: ignored %s -> %s", self._sn, self._state.value, target.value)
            return False
        logger.debug("track #%d: %s -> %s", self._sn, self._state.value, target.value)
        self._state = target
        return True

    def update(self, value: Any = None) -> None:
        """Report progress. Stores value and moves to UPDATING unless already finished."""
        if not self._enter(TrackState.UPDATING):
            return
        self._value = value
        self._tracker._updating.raise_to(self._sn)

    def fulfill(self, value: Any = None) -> None:
        """Settle successfully. The first terminal transition wins."""
        if not self._enter(TrackState.FULFILLED):
            return
        self._value = value
        self._tracker._fulfilled.raise_to(self._sn)

    def reject(self, error: Any = None) -> None:
        """Settle with an error. The error is stored as given, never inspected."""
        if not self._enter(TrackState.REJECTED):
            return
        self._error = error
        self._tracker._rejected.raise_to(self._sn)

    def finish(self, error: bool = False, value: Any = None) -> None:
        """reject(value) when error is true, otherwise fulfill(value)."""
        if error:
            self.reject(value)
        else:
            self.fulfill(value)

    # --- Ordering queries ---

    def is_latest_call(self) -> bool:
        """No newer track has been created. Says nothing about completion order."""
        return self._tracker._total_created.get() == self._sn

    def is_latest_update(self) -> bool:
        if not self.in_state_updating():
            return False
        tracker = self._tracker
        return tracker._fulfilled.get() < self._sn and tracker._updating.get() == self._sn

    def is_latest_fulfill(self) -> bool:
        if not self.in_state_fulfilled():
            return False
        tracker = self._tracker
        return tracker._updating.get() <= self._sn and tracker._fulfilled.get() == self._sn

    def is_latest_finish(self) -> bool:
        if not self.in_state_finished():
            return False
        tracker = self._tracker
        return tracker._updating.get() <= self._sn and tracker._finished_mark() == self._sn

    def is_stale_value(self) -> bool:
        """Whether value may no longer be the current answer.

        A rejected track never carries a trustworthy value. Otherwise the value
        is stale once any newer track has updated or finished, whichever order
        the completions arrived in.
        """
        if self.in_state_rejected():
            return True
        tracker = self._tracker
        return tracker._updating.get() > self._sn or tracker._finished_mark() > self._sn

    def has_later_reject(self) -> bool:
        return self._tracker._rejected.get() > self._sn

    # --- Per-call data ---

    @property
    def data_events(self) -> EventStream[TrackData]:
        """Stream of TrackData notifications for writes to shared keys."""
        if self._data_events is None:
            self._data_events = EventStream()
        return self._data_events

    def set_data(self, key: Hashable, value: Any = None) -> None:
        """Store value under key; None deletes the key.

        If key was shared via share_data(), the value is mirrored under the
        public key and a TrackData notification is emitted before returning.
        """
        self._store(key, value)
        public_key = self._shared.get(key)
        if public_key is None:
            return
        self._store(public_key, value)
        if self._data_events is not None:
            self._data_events.emit(TrackData(self, public_key, value))

    def _store(self, key: Hashable, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
        else:
            self._data[key] = value

    def get_data(self, key: Hashable, default: Any = None) -> Any:
        return self._data.get(key, default)

    def take_data(self, key: Hashable, default: Any = None) -> Any:
        """Return the value under key and clear it."""
        if key not in self._data:
            return default
        value = self._data[key]
        self.set_data(key, None)
        return value

    def share_data(self, private_key: Hashable, public_key: Hashable) -> None:
        """Mirror later writes to private_key under public_key, with a notification."""
        self._shared[private_key] = public_key

    def snapshot(self) -> TrackSnapshot:
        tracker = self._tracker
        return TrackSnapshot(
            sn=self._sn,
            state=self._state,
            value=self._value,
            error=self._error,
            latest_call=self.is_latest_call(),
            latest_update=self.is_latest_update(),
            latest_fulfill=self.is_latest_fulfill(),
            latest_finish=self.is_latest_finish(),
            stale_value=self.is_stale_value(),
            marks=tracker.marks(),
        )

    def __repr__(self) -> str:
        return f"Track(#{self._sn}, {self._state.value})"


class TrackerHas:
    """Whether any track of the tracker ever reached a state."""

    __slots__ = ("_tracking", "_updating", "_fulfilled", "_rejected", "_finished")

    def __init__(self, tracker: Tracker) -> None:
        self._tracking = Projection(lambda: tracker._total_created.get() > 0, name="has.tracking")
        self._updating = Projection(lambda: tracker._updating.get() > 0, name="has.updating")
        self._fulfilled = Projection(lambda: tracker._fulfilled.get() > 0, name="has.fulfilled")
        self._rejected = Projection(lambda: tracker._rejected.get() > 0, name="has.rejected")
        self._finished = Projection(lambda: tracker._finished_mark() > 0, name="has.finished")

    @property
    def tracking(self) -> bool:
        return self._tracking.get()

    @property
    def updating(self) -> bool:
        return self._updating.get()

    @property
    def fulfilled(self) -> bool:
        return self._fulfilled.get()

    @property
    def rejected(self) -> bool:
        return self._rejected.get()

    @property
    def finished(self) -> bool:
        return self._finished.get()


class TrackerLatest:
    """Whether the newest track has settled."""

    __slots__ = ("_finished", "_fulfilled")

    def __init__(self, tracker: Tracker) -> None:
        self._finished = Projection(
            lambda: tracker._total_created.get() == tracker._finished_mark(),
            name="latest.finished",
        )
        self._fulfilled = Projection(
            lambda: tracker._total_created.get() == tracker._fulfilled.get() and tracker._total_created.get() > 0,
            name="latest.fulfilled",
        )

    @property
    def finished(self) -> bool:
        return self._finished.get()

    @property
    def fulfilled(self) -> bool:
        return self._fulfilled.get()


class Tracker:
    """Factory for Tracks; owns the creation counter and per-state high-water marks.

    Create one per logical tracked function. Trackers never share marks.
    """

    __slots__ = ("_name", "_total_created", "_updating", "_fulfilled", "_rejected", "has", "latest")

    def __init__(self, name: str = "tracker") -> None:
        self._name = name
        self._total_created = HighWaterMark(f"{name}.total_created")
        self._updating = HighWaterMark(f"{name}.latest_updating")
        self._fulfilled = HighWaterMark(f"{name}.latest_fulfilled")
        self._rejected = HighWaterMark(f"{name}.latest_rejected")
        self.has = TrackerHas(self)
        self.latest = TrackerLatest(self)

    @property
    def name(self) -> str:
        return self._name

    def track(self, initial: Any = None) -> Track:
        """Start tracking a new invocation. Its sn is greater than every earlier one."""
        sn = self._total_created.advance()
        logger.debug("%s: created track #%d", self._name, sn)
        return Track(self, sn, initial)

    @property
    def total_created(self) -> int:
        return self._total_created.get()

    @property
    def latest_updating(self) -> int:
        return self._updating.get()

    @property
    def latest_fulfilled(self) -> int:
        return self._fulfilled.get()

    @property
    def latest_rejected(self) -> int:
        return self._rejected.get()

    @property
    def latest_finished(self) -> int:
        return self._finished_mark()

    def _finished_mark(self) -> int:
        # derived on every read so it is never behind the two marks
        return max(self._fulfilled.get(), self._rejected.get())

    def marks(self) -> dict[str, int]:
        """Current value of every mark, without registering dependencies."""
        return {
            "total_created": self._total_created.peek(),
            "latest_updating": self._updating.peek(),
            "latest_fulfilled": self._fulfilled.peek(),
            "latest_rejected": self._rejected.peek(),
            "latest_finished": max(self._fulfilled.peek(), self._rejected.peek()),
        }

    def __repr__(self) -> str:
        return f"Tracker({self._name}, created={self._total_created.peek()})"
