"""Shared pytest fixtures for the presence_sync test suite."""

import asyncio
import json
import shutil
import struct
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

from presence_sync.ipc import OP_CLOSE, OP_FRAME, OP_PING, OP_PONG
from presence_sync.models import PlaybackSnapshot


needs_unix_sockets = pytest.mark.skipif(
    sys.platform == "win32", reason="fake Discord server uses Unix sockets"
)


# =============================================================================
# Fake Discord IPC server
# =============================================================================

FRAME_HEADER = struct.Struct("<II")


def encode(op, payload):
    body = json.dumps(payload).encode("utf-8")
    return FRAME_HEADER.pack(op, len(body)) + body


async def read_message(reader):
    op, length = FRAME_HEADER.unpack(await reader.readexactly(FRAME_HEADER.size))
    body = await reader.readexactly(length)
    return op, json.loads(body) if body else {}


class FakeDiscord:
    """
    Speaks just enough of the Discord IPC protocol to drive a session.

    pypresence test-connects to every matching socket before the real
    connection; those arrive empty and are ignored.
    """

    def __init__(self, path, reject=False, ready_delay=0.0, garbage_after_ready=0,
                 ping_after_ready=False, refuse_activity=False):
        self.path = str(path)
        self.reject = reject
        self.ready_delay = ready_delay
        self.garbage_after_ready = garbage_after_ready
        self.ping_after_ready = ping_after_ready
        self.refuse_activity = refuse_activity
        self.handshakes = []
        self.frames = []
        self.server = None
        self._writers = []

    async def start(self):
        self.server = await asyncio.start_unix_server(self._handle, path=self.path)

    async def stop(self):
        if self.server is not None:
            self.server.close()
            for w in self._writers:
                w.close()
            await self.server.wait_closed()
            self.server = None
        self._writers = []
        Path(self.path).unlink(missing_ok=True)

    async def drop_clients(self):
        for w in self._writers:
            w.close()
        self._writers = []

    async def _handle(self, reader, writer):
        self._writers.append(writer)
        try:
            op, payload = await read_message(reader)
            self.handshakes.append((op, payload))
            if self.reject:
                writer.write(encode(OP_CLOSE, {"code": 4000, "message": "Invalid Client ID"}))
                await writer.drain()
                return
            if self.ready_delay:
                await asyncio.sleep(self.ready_delay)
            writer.write(encode(OP_FRAME, {
                "cmd": "DISPATCH",
                "evt": "READY",
                "data": {"v": 1, "user": {"id": "42", "username": "listener"}},
            }))
            await writer.drain()
            if self.garbage_after_ready:
                self.garbage_after_ready -= 1
                writer.write(FRAME_HEADER.pack(9, 2) + b"{}")
            if self.ping_after_ready:
                writer.write(encode(OP_PING, {"check": 1}))
            await writer.drain()

            while True:
                op, payload = await read_message(reader)
                self.frames.append((op, payload))
                if op == OP_CLOSE:
                    return
                if op == OP_PING:
                    writer.write(encode(OP_PONG, payload))
                elif op == OP_FRAME:
                    reply = {"cmd": payload.get("cmd"), "evt": None, "nonce": payload.get("nonce"), "data": {}}
                    if self.refuse_activity:
                        reply.update(evt="ERROR", data={"code": 4000, "message": "child \"activity\" fails"})
                    writer.write(encode(OP_FRAME, reply))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    def activity_frames(self):
        return [
            p for op, p in self.frames
            if op == OP_FRAME and p.get("cmd") == "SET_ACTIVITY"
        ]

    def opcodes(self):
        return [op for op, _ in self.frames]


async def wait_for(predicate, timeout=3.0, interval=0.01):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def ipc_dir(monkeypatch):
    """Runtime dir pypresence scans for discord-ipc-N sockets."""
    # Unix socket paths are length limited; keep them short.
    path = Path(tempfile.mkdtemp(prefix="ipc"))
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(path))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fast_sleep():
    """Replacement for asyncio.sleep that records delays instead of waiting."""
    delays = []

    async def _sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    _sleep.delays = delays
    return _sleep


# =============================================================================
# Fakes for the controller side
# =============================================================================

class FakeSession:
    """Records what the controller asks the presence session to show."""

    def __init__(self):
        self.calls = []

    def set_activity(self, activity):
        self.calls.append(("set", activity))

    def clear_activity(self):
        self.calls.append(("clear", None))

    @property
    def activities(self):
        return [a for kind, a in self.calls if kind == "set"]

    @property
    def clears(self):
        return [a for kind, a in self.calls if kind == "clear"]


class CountingSearch:
    """Thread-safe fake artwork search with a scripted answer per key."""

    def __init__(self, answers=None, default="https://art.example/cover.jpg", delay=0.0, error=None):
        self.answers = answers or {}
        self.default = default
        self.delay = delay
        self.error = error
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, artist, album):
        with self._lock:
            self.calls.append((artist, album))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answers.get((artist, album), self.default)


@pytest.fixture
def snapshot():
    return PlaybackSnapshot(
        title="A", artist="B", album="C", duration=200.0, position=10.0, is_playing=True
    )


@pytest.fixture
def fake_session():
    return FakeSession()
