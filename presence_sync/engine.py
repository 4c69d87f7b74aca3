# presence_sync/engine.py
import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

from .artwork import ArtworkResolver
from .config import AppConfig, data_dir
from .controller import SyncController
from .discord_rpc import PresenceSession
from .itunes_lookup import ArtworkSearch
from .models import ConnectionStatus, Notification, PlaybackSnapshot, PresenceState
from .poller import SnapshotSource, TrackPoller

logger = logging.getLogger(__name__)

Listener = Callable[[Notification], None]


class PresenceEngine:
    """Owns one poller, resolver, session and controller, and the tasks running them."""

    def __init__(
        self,
        config: AppConfig,
        source: SnapshotSource,
        session: Optional[PresenceSession] = None,
        resolver: Optional[ArtworkResolver] = None,
        cache_path: Optional[Path] = None,
    ):
        self.config = config
        self.events: "asyncio.Queue[Optional[PlaybackSnapshot]]" = asyncio.Queue()
        self.resolver = resolver or ArtworkResolver(
            ArtworkSearch(), cache_path or data_dir() / "art-cache.json"
        )
        self.session = session or PresenceSession(config.client_id)
        self.poller = TrackPoller(source, self.events, config.poll_interval_secs)
        self.controller = SyncController(self.resolver, self.session, config)
        self._listeners: List[Listener] = []
        self._tasks: List[asyncio.Task] = []
        self._stop = asyncio.Event()

        self.session.subscribe(self._on_status)
        self.controller.subscribe(self._on_state)

    # --- queries for the UI layer ---

    def current_state(self) -> PresenceState:
        return self.controller.current_state()

    @property
    def status(self) -> ConnectionStatus:
        return self.session.status

    def current_snapshot(self) -> Optional[PlaybackSnapshot]:
        return self.poller.last_snapshot

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def set_enabled(self, enabled: bool) -> None:
        self.controller.set_enabled(enabled)

    def _notify(self, note: Notification) -> None:
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception:
                logger.exception("Engine listener failed")

    def _on_status(self, status: ConnectionStatus) -> None:
        self._notify(Notification("status", status=status))

    def _on_state(self, state: PresenceState) -> None:
        self._notify(Notification("state", state=state))

    # --- lifecycle ---

    def start(self) -> None:
        if self._tasks:
            return
        self._stop.clear()
        self.session.start()
        self._tasks = [
            asyncio.ensure_future(self.controller.run(self.events)),
            asyncio.ensure_future(self.poller.run()),
        ]
        logger.info("Watching for playback every %ss", self.poller.interval)

    def request_stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        self.start()
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        self.poller.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        # Stopped last so the session can still clear the activity and say goodbye.
        await self.session.close()
        await self.resolver.close()
        self._tasks = []
        logger.info("Stopped")
