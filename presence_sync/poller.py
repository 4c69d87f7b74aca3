# presence_sync/poller.py
import asyncio
import logging
from typing import Callable, Optional

from .config import DEFAULT_POLL_SECONDS, clamp_poll_interval
from .models import PlaybackSnapshot, snapshot_key

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Optional[PlaybackSnapshot]]

_UNSET = object()


class TrackPoller:
    """
    Calls the snapshot source on a fixed interval and puts a change event on
    `events` whenever the track, play state or whole-second position differs
    from the last emitted snapshot.

    A tick is skipped while the previous source call is still running, so a
    stalled player never builds a backlog.
    """

    def __init__(
        self,
        source: SnapshotSource,
        events: "asyncio.Queue[Optional[PlaybackSnapshot]]",
        interval: float = DEFAULT_POLL_SECONDS,
        timeout: float = 4.0,
    ):
        self.source = source
        self.events = events
        self.interval = interval
        self.timeout = timeout
        self.ticks = 0
        self.skipped = 0
        self._last = _UNSET
        self._call: Optional[asyncio.Future] = None
        self._poll: Optional[asyncio.Task] = None
        self._running = False

    @property
    def last_snapshot(self) -> Optional[PlaybackSnapshot]:
        return None if self._last is _UNSET else self._last

    def set_interval(self, seconds) -> None:
        self.interval = clamp_poll_interval(seconds)

    def busy(self) -> bool:
        return (self._poll is not None and not self._poll.done()) or (
            self._call is not None and not self._call.done()
        )

    def _read_source(self) -> Optional[PlaybackSnapshot]:
        try:
            return self.source()
        except Exception as e:
            # Player missing or not running reads as "nothing playing".
            logger.debug("Snapshot source failed: %s", e)
            return None

    async def poll_once(self) -> bool:
        """Run one source call; returns True if a change event was emitted."""
        self.ticks += 1
        loop = asyncio.get_running_loop()
        self._call = loop.run_in_executor(None, self._read_source)
        try:
            snapshot = await asyncio.wait_for(asyncio.shield(self._call), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Snapshot source did not answer within %.1fs", self.timeout)
            return False

        if self._last is not _UNSET and snapshot_key(snapshot) == snapshot_key(self._last):
            return False
        self._last = snapshot
        self.events.put_nowait(snapshot)
        if snapshot is None:
            logger.debug("Nothing playing")
        else:
            logger.debug(
                "Now %s: %s - %s",
                "playing" if snapshot.is_playing else "paused",
                snapshot.title,
                snapshot.artist,
            )
        return True

    def tick(self) -> bool:
        """Start a poll unless one is still outstanding. Returns False when skipped."""
        if self.busy():
            self.skipped += 1
            logger.debug("Previous poll still running; skipping tick")
            return False
        self._poll = asyncio.ensure_future(self.poll_once())
        return True

    async def run(self) -> None:
        self._running = True
        try:
            while self._running:
                self.tick()
                await asyncio.sleep(self.interval)
        finally:
            self._running = False
            if self._poll is not None and not self._poll.done():
                self._poll.cancel()

    def stop(self) -> None:
        self._running = False
