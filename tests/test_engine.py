"""End-to-end tests: poller -> controller -> session against a fake Discord."""

import asyncio

import pytest

from conftest import CountingSearch, FakeDiscord, needs_unix_sockets, wait_for
from presence_sync.artwork import ArtworkResolver, RateBudget
from presence_sync.config import AppConfig
from presence_sync.discord_rpc import PresenceSession
from presence_sync.engine import PresenceEngine
from presence_sync.ipc import OP_CLOSE
from presence_sync.models import ConnectionState, PresenceKind


class Source:
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def __call__(self):
        return self.snapshot


def make_engine(source, tmp_path, fast_sleep, search=None, config=None):
    session = PresenceSession("123", sleep=fast_sleep, pid=7)
    resolver = ArtworkResolver(
        search or CountingSearch(), tmp_path / "art-cache.json", budget=RateBudget(interval=0.01)
    )
    return PresenceEngine(config or AppConfig(), source, session=session, resolver=resolver)


@needs_unix_sockets
class TestPresenceEngine:
    @pytest.mark.asyncio
    async def test_track_reaches_discord(self, ipc_dir, tmp_path, fast_sleep, snapshot):
        server = FakeDiscord(ipc_dir / "discord-ipc-0")
        await server.start()
        search = CountingSearch()
        engine = make_engine(Source(snapshot), tmp_path, fast_sleep, search)
        notes = []
        engine.subscribe(notes.append)
        try:
            engine.start()
            await wait_for(lambda: server.activity_frames())

            activity = server.activity_frames()[0]["args"]["activity"]
            assert activity["details"] == "A"
            assert activity["assets"]["large_image"] == "https://art.example/cover.jpg"
            assert search.calls == [("B", "C")]
            assert engine.current_state().kind is PresenceKind.PLAYING
            assert engine.current_snapshot() == snapshot
            assert engine.status.state is ConnectionState.CONNECTED
            assert any(n.kind == "status" for n in notes)
            assert any(n.kind == "state" and n.state.kind is PresenceKind.PLAYING for n in notes)
        finally:
            await engine.shutdown()
            await server.stop()

    @pytest.mark.asyncio
    async def test_stop_playing_then_shutdown(self, ipc_dir, tmp_path, fast_sleep, snapshot):
        server = FakeDiscord(ipc_dir / "discord-ipc-0")
        await server.start()
        source = Source(snapshot)
        engine = make_engine(source, tmp_path, fast_sleep)
        try:
            engine.start()
            await wait_for(lambda: len(server.activity_frames()) == 1)

            source.snapshot = None
            await engine.poller.poll_once()
            await wait_for(lambda: len(server.activity_frames()) == 2)
            assert server.activity_frames()[1]["args"] == {"pid": 7}
            assert engine.current_state().kind is PresenceKind.CLEARED
        finally:
            await engine.shutdown()
        await wait_for(lambda: OP_CLOSE in server.opcodes())
        # Already cleared: no second clear on the way out.
        assert len(server.activity_frames()) == 2
        assert engine.status.state is ConnectionState.DISCONNECTED
        await server.stop()

    @pytest.mark.asyncio
    async def test_disable_keeps_connection(self, ipc_dir, tmp_path, fast_sleep, snapshot):
        server = FakeDiscord(ipc_dir / "discord-ipc-0")
        await server.start()
        engine = make_engine(Source(snapshot), tmp_path, fast_sleep)
        try:
            engine.start()
            await wait_for(lambda: len(server.activity_frames()) == 1)
            engine.set_enabled(False)
            await wait_for(lambda: len(server.activity_frames()) == 2)
            assert "activity" not in server.activity_frames()[1]["args"]
            assert engine.status.state is ConnectionState.CONNECTED
            assert len(server.handshakes) == 1
        finally:
            await engine.shutdown()
            await server.stop()

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, ipc_dir, tmp_path, fast_sleep, snapshot):
        server = FakeDiscord(ipc_dir / "discord-ipc-0")
        await server.start()
        engine = make_engine(Source(snapshot), tmp_path, fast_sleep)
        try:
            runner = asyncio.ensure_future(engine.run())
            await wait_for(lambda: server.activity_frames())
            engine.request_stop()
            await asyncio.wait_for(runner, 3.0)
            assert engine.status.state is ConnectionState.DISCONNECTED
            await wait_for(lambda: OP_CLOSE in server.opcodes())
        finally:
            await server.stop()
