# presence_sync/config.py
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Discord application ID
APP_CLIENT_ID = "1465803809761792193"

MIN_POLL_SECONDS = 2
MAX_POLL_SECONDS = 15
DEFAULT_POLL_SECONDS = 5


class DisplayFormat(str, Enum):
    SONG_ARTIST = "songArtist"
    ARTIST_SONG = "artistSong"


class IdleBehavior(str, Enum):
    CLEAR_STATUS = "clearStatus"
    SHOW_PAUSED = "showPaused"


def data_dir() -> Path:
    return Path.home() / ".amdp"


def config_path() -> Path:
    return data_dir() / "config.json"


def clamp_poll_interval(value) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        return DEFAULT_POLL_SECONDS
    return max(MIN_POLL_SECONDS, min(MAX_POLL_SECONDS, value))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class AppConfig:
    enable_on_launch: bool = True
    show_album_art: bool = True
    show_timestamps: bool = True
    display_format: DisplayFormat = DisplayFormat.SONG_ARTIST
    idle_behavior: IdleBehavior = IdleBehavior.CLEAR_STATUS
    poll_interval_secs: int = DEFAULT_POLL_SECONDS
    client_id: str = APP_CLIENT_ID

    def __post_init__(self):
        self.poll_interval_secs = clamp_poll_interval(self.poll_interval_secs)
        self.display_format = DisplayFormat(self.display_format)
        self.idle_behavior = IdleBehavior(self.idle_behavior)

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """Build from the camelCase JSON form, ignoring unknown or invalid fields."""
        defaults = cls()
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in data:
                continue
            value = data[key]
            default = getattr(defaults, f.name)
            try:
                if isinstance(default, bool):
                    if not isinstance(value, bool):
                        raise ValueError(value)
                elif isinstance(default, Enum):
                    value = type(default)(value)
                elif isinstance(default, int):
                    value = int(value)
                elif isinstance(default, str):
                    value = str(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid config value %s=%r", key, value)
                continue
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        out = {}
        for name, value in asdict(self).items():
            out[_camel(name)] = value.value if isinstance(value, Enum) else value
        return out

    def apply_env(self) -> "AppConfig":
        poll = os.getenv("RMP_POLL_SECONDS")
        if poll:
            self.poll_interval_secs = clamp_poll_interval(poll)
        client_id = os.getenv("RMP_CLIENT_ID")
        if client_id:
            self.client_id = client_id.strip()
        return self


def load_config(path: Optional[Path] = None) -> AppConfig:
    path = path or config_path()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return AppConfig()
    except (OSError, ValueError) as e:
        logger.warning("Failed to read config %s: %s", path, e)
        return AppConfig()
    if not isinstance(data, dict):
        logger.warning("Config %s is not a JSON object; using defaults", path)
        return AppConfig()
    return AppConfig.from_dict(data)


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    os.replace(tmp, path)
