"""Tests for the track poller."""

import asyncio
import threading
import time

import pytest

from conftest import wait_for
from presence_sync.errors import SourceUnavailable
from presence_sync.models import PlaybackSnapshot
from presence_sync.poller import TrackPoller


def snap(position=10.0, playing=True, title="A"):
    return PlaybackSnapshot(title, "B", "C", 200.0, position, playing)


class Script:
    """Snapshot source that returns the scripted values in order, then repeats the last."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        value = self.values[0] if len(self.values) == 1 else self.values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value


class TestTrackPoller:
    @pytest.mark.asyncio
    async def test_first_poll_emits(self):
        events = asyncio.Queue()
        poller = TrackPoller(Script(snap()), events)
        assert await poller.poll_once() is True
        assert events.get_nowait() == snap()
        assert poller.last_snapshot == snap()

    @pytest.mark.asyncio
    async def test_subsecond_jitter_is_not_a_change(self):
        events = asyncio.Queue()
        poller = TrackPoller(Script(snap(10.1), snap(10.6)), events)
        await poller.poll_once()
        assert await poller.poll_once() is False
        assert events.qsize() == 1

    @pytest.mark.asyncio
    async def test_track_and_state_changes_emit(self):
        events = asyncio.Queue()
        poller = TrackPoller(
            Script(snap(), snap(playing=False), snap(title="Next"), None), events
        )
        for _ in range(4):
            assert await poller.poll_once() is True
        assert events.qsize() == 4

    @pytest.mark.asyncio
    async def test_source_error_reads_as_nothing_playing(self):
        events = asyncio.Queue()
        poller = TrackPoller(Script(snap(), SourceUnavailable("Music not running")), events)
        await poller.poll_once()
        assert await poller.poll_once() is True
        assert events.get_nowait() == snap()
        assert events.get_nowait() is None

    @pytest.mark.asyncio
    async def test_nothing_playing_twice_emits_once(self):
        events = asyncio.Queue()
        poller = TrackPoller(Script(None), events)
        assert await poller.poll_once() is True
        assert await poller.poll_once() is False

    @pytest.mark.asyncio
    async def test_slow_source_drops_tick(self):
        events = asyncio.Queue()

        def slow():
            time.sleep(0.3)
            return snap()

        poller = TrackPoller(slow, events, timeout=0.05)
        assert await poller.poll_once() is False
        assert events.empty()
        # The call is still outstanding, so the next tick is skipped.
        assert poller.busy()
        assert poller.tick() is False
        await wait_for(lambda: not poller.busy())

    @pytest.mark.asyncio
    async def test_overlapping_tick_skipped(self):
        events = asyncio.Queue()
        release = threading.Event()

        def blocking():
            release.wait(2)
            return snap()

        poller = TrackPoller(blocking, events)
        assert poller.tick() is True
        await asyncio.sleep(0.05)
        assert poller.tick() is False
        assert poller.skipped == 1

        release.set()
        await wait_for(lambda: not poller.busy())
        assert events.qsize() == 1
        assert poller.ticks == 1

    @pytest.mark.asyncio
    async def test_run_and_stop(self):
        events = asyncio.Queue()
        source = Script(snap())
        poller = TrackPoller(source, events, interval=0.01)
        task = asyncio.ensure_future(poller.run())
        await wait_for(lambda: source.calls >= 3)
        poller.stop()
        await asyncio.wait_for(task, 1.0)
        assert events.qsize() == 1

    def test_interval_clamped(self):
        poller = TrackPoller(Script(None), asyncio.Queue())
        poller.set_interval(100)
        assert poller.interval == 15
