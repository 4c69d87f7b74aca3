# presence_sync/music_macos.py
import subprocess
from typing import Optional

from .errors import SourceUnavailable
from .models import PlaybackSnapshot

SEPARATOR = "||"

SCRIPT = r'''
tell application "System Events"
    if not ((name of processes) contains "Music") then
        return "OK=0"
    end if
end tell
tell application "Music"
    set ps to (player state as string)
    if ps is "stopped" then
        return "OK=0"
    end if

    set tName to (name of current track as string)
    set tArtist to (artist of current track as string)
    set tAlbum to (album of current track as string)
    set tDur to (duration of current track)
    set tPos to (player position)
    set isPlaying to (ps is "playing")

    return "OK=1||" & tName & "||" & tArtist & "||" & tAlbum & "||" & (tDur as string) & "||" & (tPos as string) & "||" & (isPlaying as string)
end tell
'''


def _to_float(v: str) -> float:
    try:
        # AppleScript honours the user's locale for decimals.
        return float(v.strip().replace(",", "."))
    except ValueError:
        return 0.0


def parse_output(out: str) -> Optional[PlaybackSnapshot]:
    out = out.strip()
    if not out.startswith("OK=1" + SEPARATOR):
        return None

    parts = out.split(SEPARATOR)
    if len(parts) < 7:
        raise SourceUnavailable(f"Expected 7 fields from Music, got {len(parts)}: {out!r}")

    return PlaybackSnapshot(
        title=parts[1],
        artist=parts[2],
        album=parts[3],
        duration=_to_float(parts[4]),
        position=_to_float(parts[5]),
        is_playing=parts[6].strip().lower() == "true",
    )


def get_now_playing(timeout: float = 3.0) -> Optional[PlaybackSnapshot]:
    """Read Music.app through osascript. None when Music is closed or stopped."""
    try:
        out = subprocess.check_output(
            ["osascript", "-e", SCRIPT],
            text=True,
            timeout=timeout,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise SourceUnavailable("osascript not available") from e
    except subprocess.TimeoutExpired as e:
        raise SourceUnavailable("Music did not answer in time") from e
    except subprocess.CalledProcessError as e:
        raise SourceUnavailable(f"AppleScript failed: {(e.stderr or '').strip()}") from e

    return parse_output(out)
