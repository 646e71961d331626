"""Tests for with_function_monitor — the run-wrapper around Tracker and ContextStack."""

import asyncio
import contextlib
import inspect
import logging

import pytest

from racetrack import (
    ContextStack,
    MonitoredFunction,
    autorun,
    get_current_context,
    transaction,
    with_function_monitor,
)


def _record(fn, events=("init", "before", "after", "update", "fulfill", "reject")):
    log = []
    for name in events:
        fn.monitor.on(name, lambda e, name=name: log.append((name, e.track.sn)))
    return log


class TestSyncCalls:
    def test_fulfills_with_return_value(self):
        double = with_function_monitor(lambda x: x * 2, name="double")
        log = _record(double)
        assert double(21) == 42
        assert log == [("init", 1), ("before", 1), ("after", 1), ("fulfill", 1)]
        assert double.tracker.latest.fulfilled
        assert isinstance(double, MonitoredFunction)

    def test_raise_rejects_and_propagates(self):
        err = ValueError("bad input")

        def parse(text):
            raise err

        parse_m = with_function_monitor(parse)
        log = _record(parse_m)
        rejected = []
        parse_m.monitor.on("reject", lambda e: rejected.append(e.error))

        with pytest.raises(ValueError) as excinfo:
            parse_m("x")

        assert excinfo.value is err
        assert rejected == [err]
        assert log == [("init", 1), ("before", 1), ("after", 1), ("reject", 1)]
        assert parse_m.tracker.has.rejected
        assert get_current_context() is None

    def test_args_in_events(self):
        fn = with_function_monitor(lambda a, b=0: a + b)
        seen = []
        fn.monitor.on("before", lambda e: seen.append((e.args, e.kwargs)))
        fn(1, b=2)
        assert seen == [((1,), {"b": 2})]

    def test_wraps_metadata(self):
        def load_user(user_id):
            """Load a user."""
            return user_id

        wrapped = with_function_monitor(load_user)
        assert wrapped.__name__ == "load_user"
        assert wrapped.__doc__ == "Load a user."
        assert wrapped.tracker.name == "load_user"

    def test_handlers_see_settled_tracker_inside_transaction(self):
        fn = with_function_monitor(lambda x: x)
        seen = []
        fn.monitor.on(
            "fulfill",
            lambda e: seen.append((e.track.is_latest_finish(), fn.tracker.latest.finished)),
        )
        with transaction():
            fn(1)
        assert seen == [(True, True)]

    def test_settle_reruns_reactions_once(self):
        fn = with_function_monitor(lambda: "done")
        fn.monitor.on("fulfill", lambda e: e.track.set_data("_loading", False))
        log = []
        autorun(lambda: log.append((fn.tracker.latest.finished, fn.tracker.has.fulfilled)))
        fn()
        assert log == [(True, False), (False, False), (True, True)]


class TestCallContext:
    def test_context_only_during_call(self):
        seen = []

        def fn():
            seen.append(get_current_context())

        wrapped = with_function_monitor(fn)
        wrapped()
        assert seen[0] is not None
        assert get_current_context() is None

    def test_update_data(self):
        def fn():
            ctx = get_current_context()
            ctx.update_data("partial")
            return ctx.get_data()

        wrapped = with_function_monitor(fn)
        updates = []
        wrapped.monitor.on("update", lambda e: updates.append(e.value))
        assert wrapped() == "partial"
        assert updates == ["partial"]
        assert wrapped.tracker.has.updating

    def test_nested_calls(self):
        seen = []

        def inner():
            seen.append(("inner", get_current_context().get_data()))
            return "inner"

        inner_m = with_function_monitor(inner)

        def outer():
            ctx = get_current_context()
            ctx.update_data("outer-data")
            inner_m()
            seen.append(("outer", get_current_context().get_data()))

        with_function_monitor(outer)()
        assert seen == [("inner", None), ("outer", "outer-data")]
        assert get_current_context() is None

    def test_custom_stack(self):
        stack = ContextStack("test.monitor", strict=True)
        seen = []
        wrapped = with_function_monitor(lambda: seen.append(stack.get_current()), context_stack=stack)
        wrapped()
        assert seen[0] is not None
        assert get_current_context() is None
        assert wrapped.context_stack is stack


class TestAsyncCalls:
    def test_out_of_order_completion(self):
        async def main():
            gates = {"slow": asyncio.Event(), "fast": asyncio.Event()}

            async def fetch(name):
                await gates[name].wait()
                return name

            search = with_function_monitor(fetch)
            shown = []
            search.monitor.on(
                "fulfill",
                lambda e: shown.append(e.value) if e.track.is_latest_fulfill() else None,
            )

            slow = search("slow")
            fast = search("fast")
            assert not search.tracker.latest.finished

            gates["fast"].set()
            await fast
            gates["slow"].set()
            await slow
            await asyncio.sleep(0)
            return search, shown

        search, shown = asyncio.run(main())
        assert shown == ["fast"]
        assert search.tracker.latest.finished
        assert search.tracker.latest_fulfilled == 2

    def test_context_is_task_local(self):
        seen = {}

        async def load(key):
            ctx = get_current_context()
            ctx.update_data(f"{key}-partial")
            await asyncio.sleep(0)
            seen["after_await"] = get_current_context() is ctx
            return ctx.get_data()

        async def main():
            wrapped = with_function_monitor(load)
            task = wrapped("k")
            seen["caller"] = get_current_context()
            return await task

        assert asyncio.run(main()) == "k-partial"
        assert seen == {"caller": None, "after_await": True}

    def test_async_rejection(self):
        async def boom():
            await asyncio.sleep(0)
            raise KeyError("missing")

        async def main():
            wrapped = with_function_monitor(boom)
            errors = []
            wrapped.monitor.on("reject", lambda e: errors.append(type(e.error)))
            with pytest.raises(KeyError):
                await wrapped()
            await asyncio.sleep(0)
            return wrapped, errors

        wrapped, errors = asyncio.run(main())
        assert errors == [KeyError]
        assert wrapped.tracker.has.rejected

    def test_cancellation_rejects(self):
        async def main():
            never = asyncio.Event()

            async def wait():
                await never.wait()

            wrapped = with_function_monitor(wait)
            tracks = []
            wrapped.monitor.on("init", lambda e: tracks.append(e.track))
            task = wrapped()
            await asyncio.sleep(0)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await asyncio.sleep(0)
            return tracks[0]

        track = asyncio.run(main())
        assert track.in_state_rejected()
        assert isinstance(track.error, asyncio.CancelledError)

    def test_handler_failure_is_logged(self, caplog):
        async def ok():
            return 1

        async def main():
            wrapped = with_function_monitor(ok, name="ok")
            tracks = []
            wrapped.monitor.on("init", lambda e: tracks.append(e.track))

            def broken(event):
                raise RuntimeError("handler bug")

            wrapped.monitor.on("fulfill", broken)
            await wrapped()
            await asyncio.sleep(0)
            return tracks[0]

        with caplog.at_level(logging.ERROR, logger="racetrack.monitor"):
            track = asyncio.run(main())

        assert track.in_state_fulfilled()
        assert "handler failed while settling call #1" in caplog.text


    def test_no_running_loop_rejects_and_closes_coroutine(self):
        async def fetch():
            return 1

        made = []

        def start():
            coro = fetch()
            made.append(coro)
            return coro

        wrapped = with_function_monitor(start)
        tracks = []
        wrapped.monitor.on("init", lambda e: tracks.append(e.track))

        with pytest.raises(RuntimeError):
            wrapped()

        assert tracks[0].in_state_rejected()
        assert isinstance(tracks[0].error, RuntimeError)
        assert inspect.getcoroutinestate(made[0]) == inspect.CORO_CLOSED
        assert get_current_context() is None


class TestMonitorEvents:
    def test_track_data_forwarded(self):
        wrapped = with_function_monitor(lambda: None)
        forwarded = []
        wrapped.monitor.on("init", lambda e: e.track.share_data("_loading", "loading"))
        wrapped.monitor.on("before", lambda e: e.track.set_data("_loading", True))
        wrapped.monitor.on("fulfill", lambda e: e.track.set_data("_loading", False))
        wrapped.monitor.on("track:data", lambda e: forwarded.append((e.key, e.value)))
        wrapped()
        assert forwarded == [("loading", True), ("loading", False)]

    def test_off(self):
        wrapped = with_function_monitor(lambda: None)
        log = []
        handler = lambda e: log.append(e.track.sn)  # noqa: E731
        wrapped.monitor.on("fulfill", handler)
        wrapped()
        wrapped.monitor.off("fulfill", handler)
        wrapped()
        assert log == [1]

    def test_unknown_event(self):
        wrapped = with_function_monitor(lambda: None)
        with pytest.raises(ValueError):
            wrapped.monitor.on("done", lambda e: None)
