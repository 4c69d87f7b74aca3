# presence_sync/main.py
import asyncio
import logging
import sys

from .config import load_config
from .debug import configure_logging
from .engine import PresenceEngine
from .models import Notification

logger = logging.getLogger(__name__)


def default_source():
    if sys.platform == "darwin":
        from .music_macos import get_now_playing

        return get_now_playing
    return None


def _log_notification(note: Notification) -> None:
    if note.kind == "status":
        logger.info("[RPC] %s", note.status)
    elif note.state is not None and note.state.snapshot is not None:
        snap = note.state.snapshot
        logger.info("[Music] %s: %s - %s", note.state.kind.value, snap.title, snap.artist)


async def run(engine: PresenceEngine) -> None:
    engine.subscribe(_log_notification)
    await engine.run()


def main() -> int:
    configure_logging()
    get_now_playing = default_source()
    if not get_now_playing:
        logger.error("[Music] Unsupported OS: no snapshot source for %s", sys.platform)
        return 1

    config = load_config().apply_env()
    engine = PresenceEngine(config, get_now_playing)

    logger.info("[Music] Watching Apple Music… (Ctrl+C to stop)")
    try:
        asyncio.run(run(engine))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
