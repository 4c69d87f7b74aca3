# presence_sync/ipc.py
"""
Discord IPC client.

pypresence's AioPresence finds the discord-ipc-N endpoint, performs the
handshake and builds the SET_ACTIVITY frames. PresenceClient adds what a
long-lived session needs on top of that: replies are read frame by frame so
PING, PONG and CLOSE from the client are handled, a keep-alive ping, and a
close() that only drops the pipe (AioPresence.close() also closes the
event loop).
"""
import asyncio
import json
import logging
import struct
import uuid
from typing import Optional, Tuple

from pypresence import AioPresence
from pypresence.exceptions import PipeClosed, ResponseTimeout, ServerError

from .errors import ProtocolViolation

logger = logging.getLogger(__name__)

HEADER = struct.Struct("<II")
MAX_PAYLOAD_SIZE = 64 * 1024
ENDPOINT_INDICES = range(10)

OP_HANDSHAKE = 0
OP_FRAME = 1
OP_CLOSE = 2
OP_PING = 3
OP_PONG = 4


def new_nonce() -> str:
    return str(uuid.uuid4())


class PresenceClient(AioPresence):
    """One discord-ipc-N pipe. Owned by a single session task."""

    def __init__(self, client_id: str, pipe: int = 0, handshake_timeout: float = 5.0,
                 response_timeout: float = 5.0):
        super().__init__(
            client_id,
            pipe=pipe,
            connection_timeout=handshake_timeout,
            response_timeout=response_timeout,
        )
        self.closed = False
        # Serialized form of the activity currently shown; None when nothing is.
        self.last_activity: Optional[str] = None

    async def _read_frame(self) -> Tuple[int, dict]:
        try:
            op, length = HEADER.unpack(await self.sock_reader.readexactly(HEADER.size))
            if length > MAX_PAYLOAD_SIZE:
                raise ProtocolViolation(f"Frame length {length} exceeds {MAX_PAYLOAD_SIZE}")
            body = await self.sock_reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            if not e.partial:
                raise PipeClosed() from None
            raise ProtocolViolation("Connection closed mid-frame") from None
        except ConnectionError:
            raise PipeClosed() from None
        try:
            payload = json.loads(body.decode("utf-8")) if body else {}
        except ValueError as e:
            raise ProtocolViolation(f"Malformed frame payload: {e}") from None
        if not isinstance(payload, dict):
            raise ProtocolViolation("Frame payload is not a JSON object")
        return op, payload

    async def _receive(self, timeout: Optional[float] = None) -> Tuple[int, dict]:
        """Next FRAME or PONG. Pings are answered on the way; CLOSE ends the pipe."""
        while True:
            try:
                op, payload = await asyncio.wait_for(self._read_frame(), timeout)
            except asyncio.TimeoutError:
                raise ResponseTimeout() from None
            if op == OP_PING:
                self.send_data(OP_PONG, payload)
            elif op == OP_CLOSE:
                logger.info("Discord closed the pipe: %s", payload.get("message", ""))
                raise PipeClosed()
            elif op in (OP_FRAME, OP_PONG):
                return op, payload
            else:
                raise ProtocolViolation(f"Unexpected opcode {op} from Discord")

    async def read_output(self) -> dict:
        while True:
            op, payload = await self._receive(self.response_timeout)
            if op == OP_PONG:
                continue
            if payload.get("evt") == "ERROR":
                data = payload.get("data") or {}
                raise ServerError(str(data.get("message", "unknown error")))
            return payload

    async def ping(self) -> None:
        self.send_data(OP_PING, {"nonce": new_nonce()})
        while True:
            op, payload = await self._receive(self.response_timeout)
            if op == OP_PONG:
                return
            logger.debug("Ignoring %s while waiting for PONG", payload.get("cmd"))

    async def watch(self) -> None:
        """Read while nothing is in flight. Only returns by raising once the pipe ends."""
        while True:
            op, payload = await self._receive()
            if op == OP_FRAME:
                logger.debug("Ignoring unsolicited %s/%s", payload.get("cmd"), payload.get("evt"))

    def close(self) -> None:
        """Send CLOSE and drop the pipe; the event loop keeps running."""
        if self.closed or self.sock_writer is None:
            self.abort()
            return
        try:
            self.send_data(OP_CLOSE, {"v": 1, "client_id": self.client_id})
        except (OSError, RuntimeError) as e:
            logger.debug("CLOSE frame not delivered: %s", e)
        self.abort()

    def abort(self) -> None:
        self.closed = True
        if self.sock_writer is not None:
            self.sock_writer.close()

    async def wait_closed(self) -> None:
        # Windows pipes hand back a bare transport without wait_closed().
        wait_closed = getattr(self.sock_writer, "wait_closed", None)
        if wait_closed is None:
            return
        try:
            await asyncio.wait_for(wait_closed(), 1.0)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("Pipe close did not complete cleanly: %s", e)
