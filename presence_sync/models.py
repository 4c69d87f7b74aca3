# presence_sync/models.py
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

# Asset key uploaded to the Discord application, used when no cover is found.
DEFAULT_ARTWORK = "am_logo"

FINGERPRINT_BUCKET_SECONDS = 5


def _finite(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


@dataclass(frozen=True)
class PlaybackSnapshot:
    title: str
    artist: str
    album: str
    duration: float
    position: float
    is_playing: bool

    def __post_init__(self):
        # Noisy sources report positions past the end or below zero; clamp them.
        duration = max(0.0, _finite(self.duration))
        position = min(max(0.0, _finite(self.position)), duration)
        object.__setattr__(self, "duration", duration)
        object.__setattr__(self, "position", position)

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.title, self.artist, self.album)


def snapshot_key(snapshot: Optional[PlaybackSnapshot]) -> Optional[Tuple]:
    """Comparison key used by the poller: position quantized to whole seconds."""
    if snapshot is None:
        return None
    return (
        snapshot.title,
        snapshot.artist,
        snapshot.album,
        snapshot.is_playing,
        int(snapshot.position),
    )


@dataclass(frozen=True)
class Fingerprint:
    """
    Identity of what would be shown for a snapshot.

    While playing, the position is anchored to a start time so that elapsed
    time alone never changes it; a seek moves the anchor. Anchors closer than
    half a bucket count as the same, so poll jitter never republishes.
    """

    identity: Tuple[str, str, str]
    is_playing: bool
    anchor: float

    def matches(self, other) -> bool:
        return (
            isinstance(other, Fingerprint)
            and self.identity == other.identity
            and self.is_playing == other.is_playing
            and abs(self.anchor - other.anchor) < FINGERPRINT_BUCKET_SECONDS / 2
        )


def fingerprint(snapshot: Optional[PlaybackSnapshot], now: float) -> Optional[Fingerprint]:
    if snapshot is None:
        return None
    if snapshot.is_playing:
        anchor = now - snapshot.position
    else:
        anchor = snapshot.position
    return Fingerprint(snapshot.identity, snapshot.is_playing, anchor)


class PresenceKind(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    CLEARED = "cleared"


@dataclass(frozen=True)
class PresenceState:
    kind: PresenceKind = PresenceKind.IDLE
    snapshot: Optional[PlaybackSnapshot] = None
    artwork: Optional[str] = None

    @classmethod
    def idle(cls) -> "PresenceState":
        return cls(PresenceKind.IDLE)

    @classmethod
    def playing(cls, snapshot: PlaybackSnapshot, artwork: str) -> "PresenceState":
        return cls(PresenceKind.PLAYING, snapshot, artwork)

    @classmethod
    def cleared(
        cls, snapshot: Optional[PlaybackSnapshot] = None, artwork: Optional[str] = None
    ) -> "PresenceState":
        return cls(PresenceKind.CLEARED, snapshot, artwork)

    @property
    def is_paused(self) -> bool:
        return self.kind is PresenceKind.CLEARED and self.snapshot is not None

    def as_dict(self) -> dict:
        d = {"state": self.kind.value, "artwork_url": self.artwork or ""}
        if self.snapshot is not None:
            d.update(
                title=self.snapshot.title,
                artist=self.snapshot.artist,
                album=self.snapshot.album,
                duration=self.snapshot.duration,
                position=self.snapshot.position,
                playing=self.snapshot.is_playing,
            )
        return d


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERRORED = "errored"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState = ConnectionState.DISCONNECTED
    message: str = ""

    def __str__(self) -> str:
        if self.message:
            return f"{self.state.value}: {self.message}"
        return self.state.value


@dataclass(frozen=True)
class Notification:
    kind: str  # "state" or "status"
    state: Optional[PresenceState] = None
    status: Optional[ConnectionStatus] = None


@dataclass
class Backoff:
    """Reconnect delay counter: initial, doubling, capped."""

    initial: float = 1.0
    cap: float = 30.0
    factor: float = 2.0
    attempts: int = field(default=0)

    def next_delay(self) -> float:
        # Exponent is bounded so long outages cannot overflow the float.
        delay = min(self.cap, self.initial * (self.factor ** min(self.attempts, 32)))
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
