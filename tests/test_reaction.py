"""Tests for Reaction, autorun, and reaction."""

from racetrack import HighWaterMark, Tracker, autorun, reaction


class TestAutorun:
    def test_runs_immediately(self):
        mark = HighWaterMark(value=10)
        log = []
        autorun(lambda: log.append(mark.get()))
        assert log == [10]

    def test_reruns_on_change(self):
        mark = HighWaterMark(value=10)
        log = []
        autorun(lambda: log.append(mark.get()))
        mark.raise_to(20)
        assert log == [10, 20]

    def test_dispose_stops(self):
        mark = HighWaterMark(value=10)
        log = []
        r = autorun(lambda: log.append(mark.get()))
        r.dispose()
        mark.raise_to(20)
        assert log == [10]
        assert r.disposed

    def test_dynamic_dependencies(self):
        tracker = Tracker()
        log = []

        def follow():
            # reads latest_updating only once something has been created
            if tracker.has.tracking:
                log.append(("updating", tracker.latest_updating))
            else:
                log.append(("idle", None))

        autorun(follow)
        t = tracker.track()
        t.update()
        assert log == [("idle", None), ("updating", 0), ("updating", 1)]


class TestReaction:
    def test_no_initial_effect(self):
        mark = HighWaterMark()
        effects = []
        reaction(lambda: mark.get(), effects.append)
        assert effects == []

    def test_fires_on_change(self):
        mark = HighWaterMark()
        effects = []
        reaction(lambda: mark.get(), effects.append)
        mark.raise_to(1)
        assert effects == [1]

    def test_fire_immediately(self):
        mark = HighWaterMark()
        effects = []
        reaction(lambda: mark.get(), effects.append, fire_immediately=True)
        assert effects == [0]

    def test_dedup_effect(self):
        tracker = Tracker()
        effects = []
        reaction(lambda: tracker.has.fulfilled, effects.append)
        tracker.track().fulfill()
        tracker.track().fulfill()
        assert effects == [True]

    def test_dispose(self):
        mark = HighWaterMark()
        effects = []
        r = reaction(lambda: mark.get(), effects.append)
        mark.raise_to(1)
        r.dispose()
        mark.raise_to(2)
        assert effects == [1]
