# presence_sync/discord_rpc.py
import asyncio
import json
import logging
import os
import urllib.parse
from typing import Awaitable, Callable, Iterable, List, Optional

from pypresence.exceptions import DiscordNotFound, PyPresenceException, ResponseTimeout, ServerError
from pypresence.types import ActivityType

from .config import DisplayFormat
from .ipc import ENDPOINT_INDICES, PresenceClient
from .models import DEFAULT_ARTWORK, Backoff, ConnectionState, ConnectionStatus, PlaybackSnapshot

logger = logging.getLogger(__name__)

# Hard limit Discord applies to every activity string.
MAX_FIELD_LENGTH = 128
ELLIPSIS = "…"

# I/O failures that end a connection attempt or a live connection.
SESSION_ERRORS = (PyPresenceException, OSError, asyncio.TimeoutError)
# pypresence parses the READY reply without checking it; a garbled one surfaces as ValueError.
CONNECT_ERRORS = SESSION_ERRORS + (ValueError,)

StatusListener = Callable[[ConnectionStatus], None]
ClientFactory = Callable[..., PresenceClient]


def truncate(value: str, limit: int = MAX_FIELD_LENGTH) -> str:
    value = value or ""
    if len(value) <= limit:
        return value
    return value[: limit - len(ELLIPSIS)] + ELLIPSIS


def apple_music_search_url(title: str, artist: str) -> str:
    q = urllib.parse.quote(f"{title} {artist}".strip())
    return f"https://music.apple.com/us/search?term={q}"


def build_activity(
    snapshot: PlaybackSnapshot,
    artwork: Optional[str],
    now: float,
    show_timestamps: bool = True,
    display_format: DisplayFormat = DisplayFormat.SONG_ARTIST,
) -> dict:
    """Keyword arguments for AioPresence.update() describing the track."""
    title = snapshot.title or "Unknown track"
    artist = snapshot.artist or "Unknown artist"
    if display_format is DisplayFormat.ARTIST_SONG:
        details, state = artist, title
    else:
        details, state = title, f"by {artist}"

    payload = {
        "details": truncate(details),
        "state": truncate(state),
        "large_image": artwork or DEFAULT_ARTWORK,
        "large_text": truncate(snapshot.album or "Apple Music"),
        "small_image": "play" if snapshot.is_playing else "pause",
        "small_text": "Playing" if snapshot.is_playing else "Paused",
        "activity_type": ActivityType.LISTENING,
        "buttons": [
            {"label": "Search Apple Music", "url": apple_music_search_url(snapshot.title, snapshot.artist)}
        ],
    }

    # Progress bar only while playing
    if snapshot.is_playing and show_timestamps and snapshot.duration > 0:
        start = int(now - snapshot.position)
        payload["start"] = start
        payload["end"] = start + int(snapshot.duration)

    return payload


class PresenceSession:
    """
    Keeps one connection to the Discord client alive and mirrors the
    requested activity onto it.

    Callers only record what should be shown (set_activity/clear_activity);
    the session task owns the pipe, sends the latest request once the
    handshake is done, and re-sends it after every reconnect.
    """

    def __init__(
        self,
        client_id: str,
        endpoints: Iterable[int] = ENDPOINT_INDICES,
        client_factory: ClientFactory = PresenceClient,
        handshake_timeout: float = 5.0,
        response_timeout: float = 5.0,
        keepalive_interval: float = 15.0,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        pid: Optional[int] = None,
    ):
        self.client_id = client_id
        self.endpoints = list(endpoints)
        self.handshake_timeout = handshake_timeout
        self.response_timeout = response_timeout
        self.keepalive_interval = keepalive_interval
        self.backoff = backoff or Backoff()
        self.pid = pid or os.getpid()
        self.status = ConnectionStatus()
        self.connection: Optional[PresenceClient] = None
        self.frames_sent = 0
        self._client_factory = client_factory
        self._sleep = sleep
        self._desired: Optional[dict] = None
        self._wake = asyncio.Event()
        self._closing = False
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[StatusListener] = []

    # --- public commands ---

    def subscribe(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def set_activity(self, activity: dict) -> None:
        self._desired = activity
        self._wake.set()

    def clear_activity(self) -> None:
        self._desired = None
        self._wake.set()

    @property
    def desired_activity(self) -> Optional[dict]:
        return self._desired

    @property
    def connected(self) -> bool:
        return self.status.state is ConnectionState.CONNECTED

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def close(self, timeout: float = 2.0) -> None:
        """Clear the activity, say goodbye to Discord, and stop the session task."""
        self._closing = True
        self._wake.set()
        task = self._task
        if task is None or task.done():
            self._set_status(ConnectionState.DISCONNECTED)
            return
        if self.connection is None:
            # Connecting or backing off; nothing to say goodbye to.
            task.cancel()
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            await asyncio.wait({task})

    # --- status ---

    def _set_status(self, state: ConnectionState, message: str = "") -> None:
        status = ConnectionStatus(state, message)
        if status == self.status:
            return
        self.status = status
        logger.debug("Discord status: %s", status)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")

    # --- connection loop ---

    async def run(self) -> None:
        delay = 0.0
        try:
            while not self._closing:
                if delay:
                    await self._sleep(delay)
                self._set_status(ConnectionState.CONNECTING)
                try:
                    client = await self._connect()
                except CONNECT_ERRORS as e:
                    delay = self.backoff.next_delay()
                    logger.warning(
                        "Discord connect attempt %d failed (%s); retrying in %.0fs",
                        self.backoff.attempts,
                        e,
                        delay,
                    )
                    self._set_status(ConnectionState.ERRORED, _short_message(e))
                    continue

                self.backoff.reset()
                self.connection = client
                logger.info("Connected to Discord on discord-ipc-%s", client.pipe)
                self._set_status(ConnectionState.CONNECTED, f"discord-ipc-{client.pipe}")
                try:
                    await self._serve(client)
                except SESSION_ERRORS as e:
                    logger.warning("Discord connection lost: %s", e)
                finally:
                    self.connection = None
                    client.abort()
                    await client.wait_closed()

                if not self._closing:
                    self._set_status(ConnectionState.CONNECTING)
                    delay = self.backoff.next_delay()
        finally:
            self.connection = None
            self._set_status(ConnectionState.DISCONNECTED)

    async def _connect(self) -> PresenceClient:
        """Try the pipes in index order; the first that completes the handshake wins."""
        last_error: Optional[BaseException] = None
        for pipe in self.endpoints:
            client = self._client_factory(
                self.client_id,
                pipe=pipe,
                handshake_timeout=self.handshake_timeout,
                response_timeout=self.response_timeout,
            )
            try:
                await asyncio.wait_for(client.connect(), self.handshake_timeout)
            except DiscordNotFound as e:
                last_error = last_error or e
                continue
            except asyncio.TimeoutError:
                logger.debug("discord-ipc-%s did not answer the handshake in time", pipe)
                last_error = ResponseTimeout()
            except CONNECT_ERRORS as e:
                logger.debug("discord-ipc-%s rejected the handshake: %s", pipe, e)
                last_error = e
            else:
                return client
            client.abort()
            await client.wait_closed()
        raise last_error or DiscordNotFound()

    async def _serve(self, client: PresenceClient) -> None:
        while True:
            self._wake.clear()
            if self._closing:
                await self._goodbye(client)
                return
            await self._sync(client)
            if not await self._idle(client):
                await client.ping()

    async def _idle(self, client: PresenceClient) -> bool:
        """Wait for a new request while watching the pipe. False when the keep-alive is due."""
        waiter = asyncio.ensure_future(self._wake.wait())
        watcher = asyncio.ensure_future(client.watch())
        try:
            done, _ = await asyncio.wait(
                {waiter, watcher},
                timeout=self.keepalive_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            watcher.cancel()
            await asyncio.gather(waiter, watcher, return_exceptions=True)
        if watcher in done:
            watcher.result()
        return bool(done)

    async def _sync(self, client: PresenceClient) -> None:
        desired = self._desired
        key = json.dumps(desired, sort_keys=True) if desired is not None else None
        if key == client.last_activity:
            return

        try:
            if desired is None:
                await client.clear(self.pid)
            else:
                await client.update(pid=self.pid, **desired)
        except ServerError as e:
            # Refused activity; the pipe stays up.
            logger.warning("Discord rejected the activity: %s", e)
        client.last_activity = key
        self.frames_sent += 1
        logger.debug("Sent %s", "activity" if key else "clear")

    async def _goodbye(self, client: PresenceClient) -> None:
        if client.last_activity is not None:
            self._desired = None
            try:
                await self._sync(client)
            except SESSION_ERRORS as e:
                logger.debug("Final clear not delivered: %s", e)
        client.close()
        await client.wait_closed()


def _short_message(error: BaseException) -> str:
    if isinstance(error, DiscordNotFound):
        return "Discord not running"
    if isinstance(error, (ResponseTimeout, asyncio.TimeoutError)):
        return "Discord did not respond"
    text = str(error).strip()
    return text or type(error).__name__
