"""Tests for parsing the Music.app AppleScript output."""

import subprocess

import pytest

from presence_sync import music_macos
from presence_sync.errors import SourceUnavailable
from presence_sync.music_macos import parse_output


class TestParseOutput:
    def test_playing(self):
        snap = parse_output("OK=1||One More Time||Daft Punk||Discovery||320.5||12.25||true\n")
        assert snap.title == "One More Time"
        assert snap.artist == "Daft Punk"
        assert snap.album == "Discovery"
        assert snap.duration == 320.5
        assert snap.position == 12.25
        assert snap.is_playing is True

    def test_paused_with_comma_decimals(self):
        snap = parse_output("OK=1||T||A||B||200,5||10,5||false")
        assert snap.duration == 200.5
        assert snap.position == 10.5
        assert snap.is_playing is False

    def test_not_running(self):
        assert parse_output("OK=0") is None
        assert parse_output("") is None

    def test_missing_fields(self):
        with pytest.raises(SourceUnavailable):
            parse_output("OK=1||T||A")

    def test_garbage_numbers_become_zero(self):
        snap = parse_output("OK=1||T||A||B||missing value||missing value||true")
        assert (snap.duration, snap.position) == (0.0, 0.0)


class TestGetNowPlaying:
    def test_osascript_missing(self, monkeypatch):
        def boom(*args, **kwargs):
            raise FileNotFoundError("osascript")

        monkeypatch.setattr(subprocess, "check_output", boom)
        with pytest.raises(SourceUnavailable):
            music_macos.get_now_playing()

    def test_script_timeout(self, monkeypatch):
        def slow(*args, **kwargs):
            raise subprocess.TimeoutExpired("osascript", 3)

        monkeypatch.setattr(subprocess, "check_output", slow)
        with pytest.raises(SourceUnavailable):
            music_macos.get_now_playing()

    def test_output_parsed(self, monkeypatch):
        monkeypatch.setattr(
            subprocess, "check_output", lambda *a, **k: "OK=1||T||A||B||100||5||true"
        )
        assert music_macos.get_now_playing().title == "T"
