# presence_sync/controller.py
import asyncio
import logging
import time
from typing import Callable, List, Optional

from .artwork import ArtworkResolver
from .config import AppConfig, IdleBehavior
from .discord_rpc import PresenceSession, build_activity
from .models import DEFAULT_ARTWORK, PlaybackSnapshot, PresenceKind, PresenceState, fingerprint

logger = logging.getLogger(__name__)

StateListener = Callable[[PresenceState], None]

_CLEARED_FINGERPRINT = ("cleared",)


class SyncController:
    """
    Decides what Discord should show for each change event.

        IDLE --playing--> PLAYING --paused/stopped--> CLEARED --playing--> PLAYING

    A paused track with the "show paused" idle behavior stays CLEARED but
    carries the snapshot, and a paused activity is published instead of a
    clear. Ticks that reproduce the last fingerprint publish nothing.
    """

    def __init__(
        self,
        resolver: ArtworkResolver,
        session: PresenceSession,
        config: Optional[AppConfig] = None,
        reuse_artwork: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.resolver = resolver
        self.session = session
        self.config = config or AppConfig()
        self.reuse_artwork = reuse_artwork
        self.enabled = self.config.enable_on_launch
        self.publishes = 0
        self._clock = clock
        self._state = PresenceState.idle()
        self._fingerprint = None
        self._last_snapshot: Optional[PlaybackSnapshot] = None
        self._pending: Optional[asyncio.Task] = None
        self._listeners: List[StateListener] = []

    def current_state(self) -> PresenceState:
        return self._state

    @property
    def last_snapshot(self) -> Optional[PlaybackSnapshot]:
        return self._last_snapshot

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    # --- event intake ---

    async def run(self, events: "asyncio.Queue[Optional[PlaybackSnapshot]]") -> None:
        try:
            while True:
                snapshot = await events.get()
                self.submit(snapshot)
        finally:
            self._cancel_pending()

    def submit(self, snapshot: Optional[PlaybackSnapshot]) -> asyncio.Task:
        """Handle a change event; a newer event supersedes one still resolving artwork."""
        self._last_snapshot = snapshot
        self._cancel_pending()
        self._pending = asyncio.ensure_future(self.apply(snapshot))
        return self._pending

    async def wait_idle(self) -> None:
        if self._pending is not None:
            await asyncio.gather(self._pending, return_exceptions=True)

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            logger.debug("Superseding in-flight update")
            self._pending.cancel()

    # --- transitions ---

    async def apply(self, snapshot: Optional[PlaybackSnapshot]) -> None:
        if not self.enabled:
            return

        if snapshot is None:
            if self._state.kind is PresenceKind.IDLE:
                return
            self._publish_clear()
            return

        if snapshot.is_playing:
            await self._publish_track(snapshot, PresenceKind.PLAYING)
        elif self.config.idle_behavior is IdleBehavior.SHOW_PAUSED:
            await self._publish_track(snapshot, PresenceKind.CLEARED)
        elif self._state.kind is not PresenceKind.IDLE:
            self._publish_clear()

    async def _publish_track(self, snapshot: PlaybackSnapshot, kind: PresenceKind) -> None:
        now = self._clock()
        fp = fingerprint(snapshot, now)
        if fp.matches(self._fingerprint):
            return

        artwork = await self._artwork_for(snapshot)
        # Nothing below awaits: a superseding event cannot interleave with the publish.
        activity = build_activity(
            snapshot,
            artwork,
            now,
            show_timestamps=self.config.show_timestamps,
            display_format=self.config.display_format,
        )
        self.session.set_activity(activity)
        self.publishes += 1
        self._fingerprint = fp
        if kind is PresenceKind.PLAYING:
            state = PresenceState.playing(snapshot, artwork)
        else:
            state = PresenceState.cleared(snapshot, artwork)
        self._set_state(state)
        logger.info(
            "%s: %s - %s", "Playing" if snapshot.is_playing else "Paused", snapshot.title, snapshot.artist
        )

    def _publish_clear(self) -> None:
        if self._fingerprint == _CLEARED_FINGERPRINT:
            return
        self.session.clear_activity()
        self.publishes += 1
        self._fingerprint = _CLEARED_FINGERPRINT
        self._set_state(PresenceState.cleared())
        logger.info("Presence cleared")

    async def _artwork_for(self, snapshot: PlaybackSnapshot) -> str:
        if not self.config.show_album_art:
            return DEFAULT_ARTWORK
        held = self._state.snapshot
        if (
            self.reuse_artwork
            and held is not None
            and self._state.artwork not in (None, DEFAULT_ARTWORK)
            and (held.artist, held.album) == (snapshot.artist, snapshot.album)
        ):
            return self._state.artwork
        return await self.resolver.resolve(snapshot.artist, snapshot.album)

    def _set_state(self, state: PresenceState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # --- enable / disable ---

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self.enabled:
            return
        self.enabled = enabled
        if not enabled:
            self._cancel_pending()
            self.resolver.cancel_pending()
            self.session.clear_activity()
            self._fingerprint = None
            self._set_state(PresenceState.idle())
            logger.info("Presence disabled")
        else:
            logger.info("Presence enabled")
            self.submit(self._last_snapshot)
