# presence_sync/ui/worker.py
import asyncio
import logging
from typing import Optional

from PySide6.QtCore import QThread, Signal

from ..config import AppConfig, load_config
from ..engine import PresenceEngine
from ..models import ConnectionState, Notification
from ..poller import SnapshotSource

logger = logging.getLogger(__name__)


def account_info(user: dict) -> dict:
    """Display name and avatar URL for the connected Discord user."""
    username = user.get("username")
    if not username:
        return {"name": "Connected", "avatar_url": ""}

    disc = user.get("discriminator", "")
    display = f"{username}#{disc}" if disc and disc != "0" else username

    user_id = user.get("id", "")
    avatar = user.get("avatar")  # can be None
    avatar_url = ""

    # Custom avatar
    if user_id and avatar:
        ext = "gif" if str(avatar).startswith("a_") else "png"
        avatar_url = f"https://cdn.discordapp.com/avatars/{user_id}/{avatar}.{ext}?size=128"

    # Default avatar fallback
    elif user_id:
        # discriminator can be "0" for newer usernames; fall back to 0 in that case
        disc_num = int(disc) if disc and str(disc).isdigit() else 0
        avatar_url = f"https://cdn.discordapp.com/embed/avatars/{disc_num % 5}.png"

    return {"name": display, "avatar_url": avatar_url}


class PresenceWorker(QThread):
    """
    Runs a PresenceEngine on its own asyncio loop and re-emits its
    notifications as Qt signals for the UI thread.
    """

    status = Signal(str)
    account = Signal(dict)       # {"name": str, "avatar_url": str}
    now_playing = Signal(dict)   # PresenceState.as_dict()

    def __init__(self, source: SnapshotSource, config: Optional[AppConfig] = None, parent=None):
        super().__init__(parent)
        self.source = source
        self.config = config or load_config()
        self.engine: Optional[PresenceEngine] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def run(self):
        try:
            asyncio.run(self._main())
        except Exception as e:
            logger.exception("Presence engine crashed")
            self.status.emit(f"Presence stopped: {e}")

    async def _main(self):
        self._loop = asyncio.get_running_loop()
        self.engine = PresenceEngine(self.config, self.source)
        self.engine.subscribe(self.on_notification)
        try:
            await self.engine.run()
        finally:
            self._loop = None

    def _call(self, fn, *args):
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(fn, *args)

    def stop(self):
        if self.engine is not None:
            self._call(self.engine.request_stop)

    def set_enabled(self, enabled: bool):
        if self.engine is not None:
            self._call(self.engine.set_enabled, enabled)

    def on_notification(self, note: Notification):
        if note.kind == "status" and note.status is not None:
            status = note.status
            self.status.emit(str(status))
            if status.state is ConnectionState.CONNECTED and self.engine is not None:
                conn = self.engine.session.connection
                self.account.emit(account_info(getattr(conn, "user", None) or {}))
            elif status.state is not ConnectionState.CONNECTED:
                self.account.emit({"name": "Not connected", "avatar_url": ""})
        elif note.kind == "state" and note.state is not None:
            self.now_playing.emit(note.state.as_dict())
