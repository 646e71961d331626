"""Function monitor — drive a Tracker and the ambient context around a callable.

with_function_monitor(fn) returns a callable that, on every invocation:

1. creates a Track (init, before events),
2. prepares a CallContext for the track on the context stack,
3. calls fn and restores the context as soon as the call returns,
4. emits after, then settles the track: fulfill on return, reject on raise.

When fn returns an awaitable, it is scheduled as a task on the running loop
while the call context is still current, so the context stays visible to
the task (and only to it) until it completes. The task is returned and the
track settles from its done callback.

Observers subscribe with monitor.on(event, handler). Events are "init",
"before", "after", "update", "fulfill", "reject" and "track:data"; every
handler receives a MonitorEvent.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable

from racetrack.action import transaction
from racetrack.context import CallContext, ContextStack, default_stack
from racetrack.stream import Disposer, EventStream
from racetrack.tracker import Track, TrackData, Tracker

logger = logging.getLogger("racetrack.monitor")

EVENTS = ("init", "before", "after", "update", "fulfill", "reject", "track:data")


@dataclass(frozen=True)
class MonitorEvent:
    track: Track
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    value: Any = None
    error: Any = None
    key: Hashable | None = None


class FunctionMonitor:
    """Named event streams for the lifecycle of monitored calls."""

    def __init__(self) -> None:
        self._streams: dict[str, EventStream[MonitorEvent]] = {name: EventStream() for name in EVENTS}

    def _stream(self, event: str) -> EventStream[MonitorEvent]:
        try:
            return self._streams[event]
        except KeyError:
            raise ValueError(f"unknown monitor event {event!r}") from None

    def on(self, event: str, handler: Callable[[MonitorEvent], None]) -> Disposer:
        """Subscribe handler to event. Returns a function that unsubscribes it."""
        return self._stream(event).subscribe(handler)

    def off(self, event: str, handler: Callable[[MonitorEvent], None]) -> None:
        self._stream(event).unsubscribe(handler)

    def emit(self, event: str, payload: MonitorEvent) -> None:
        self._stream(event).emit(payload)


def _schedule(awaitable: Any) -> asyncio.Future:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # Nothing will ever await it; close it so it is not reported as never awaited.
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise
    return asyncio.ensure_future(awaitable, loop=loop)


class MonitoredFunction:
    """A callable whose invocations are tracked. See with_function_monitor()."""

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        context_stack: ContextStack | None = None,
        name: str | None = None,
    ) -> None:
        self._fn = fn
        self._stack = context_stack or default_stack()
        self._tracker = Tracker(name or getattr(fn, "__name__", "tracker"))
        self._monitor = FunctionMonitor()
        functools.update_wrapper(self, fn)

    @property
    def tracker(self) -> Tracker:
        return self._tracker

    @property
    def monitor(self) -> FunctionMonitor:
        return self._monitor

    @property
    def context_stack(self) -> ContextStack:
        return self._stack

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        track = self._tracker.track()
        monitor = self._monitor
        logger.debug("%s: call #%d started", self._tracker.name, track.sn)

        track.data_events.subscribe(
            lambda data: monitor.emit("track:data", self._data_event(data, args, kwargs))
        )
        monitor.emit("init", MonitorEvent(track, args, kwargs))
        monitor.emit("before", MonitorEvent(track, args, kwargs))

        restore = self._stack.prepare(self._context_for(track, args, kwargs))
        try:
            try:
                result = self._fn(*args, **kwargs)
                if inspect.isawaitable(result):
                    # Scheduled before restore() so the task inherits the call context.
                    result = _schedule(result)
            finally:
                restore()
        except Exception as exc:
            monitor.emit("after", MonitorEvent(track, args, kwargs))
            self._finish(track, args, kwargs, error=exc, failed=True)
            raise

        monitor.emit("after", MonitorEvent(track, args, kwargs))
        if isinstance(result, asyncio.Future):
            result.add_done_callback(lambda task: self._settle_task(track, args, kwargs, task))
        else:
            self._finish(track, args, kwargs, value=result)
        return result

    def _context_for(self, track: Track, args: tuple, kwargs: dict[str, Any]) -> CallContext:
        monitor = self._monitor

        def update_data(value: Any) -> Any:
            if not track.can_update():
                return None
            track.update(value)
            monitor.emit("update", MonitorEvent(track, args, kwargs, value=value))
            return value

        return CallContext(get_data=lambda: track.value, update_data=update_data)

    @staticmethod
    def _data_event(data: TrackData, args: tuple, kwargs: dict[str, Any]) -> MonitorEvent:
        return MonitorEvent(data.track, args, kwargs, value=data.value, key=data.key)

    def _settle_task(self, track: Track, args: tuple, kwargs: dict[str, Any], task: asyncio.Future) -> None:
        if task.cancelled():
            error: BaseException | None = asyncio.CancelledError()
        else:
            error = task.exception()
        try:
            if error is not None:
                self._finish(track, args, kwargs, error=error, failed=True)
            else:
                self._finish(track, args, kwargs, value=task.result())
        except Exception:
            logger.exception("%s: handler failed while settling call #%d", self._tracker.name, track.sn)

    def _finish(
        self,
        track: Track,
        args: tuple,
        kwargs: dict[str, Any],
        *,
        value: Any = None,
        error: Any = None,
        failed: bool = False,
    ) -> None:
        # Handlers see the settled marks; reactions re-run once, after them.
        with transaction():
            track.finish(failed, error if failed else value)
            logger.debug(
                "%s: call #%d %s", self._tracker.name, track.sn, "rejected" if failed else "fulfilled"
            )
            if failed:
                self._monitor.emit("reject", MonitorEvent(track, args, kwargs, error=error))
            else:
                self._monitor.emit("fulfill", MonitorEvent(track, args, kwargs, value=value))

    def __repr__(self) -> str:
        return f"MonitoredFunction({self._tracker.name}, calls={self._tracker.marks()['total_created']})"


def with_function_monitor(
    fn: Callable[..., Any],
    *,
    context_stack: ContextStack | None = None,
    name: str | None = None,
) -> MonitoredFunction:
    """Wrap fn so that every call is tracked.

    Usage:
        search = with_function_monitor(fetch_results)
        search.monitor.on("fulfill", lambda e: show(e.value) if e.track.is_latest_fulfill() else None)

        search("py")
        search("python")   # whichever finishes last, only the newest result is shown
        search.tracker.latest.finished
    """
    return MonitoredFunction(fn, context_stack=context_stack, name=name)
