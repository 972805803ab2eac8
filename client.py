"""Command line chat client.

Connects to the signaling server, joins a room and chats with every peer
in it over WebRTC data channels. Signaling frames go through the server;
chat messages never do.

Usage:
    python client.py my-room
    python client.py --url ws://example.com:3000/ws my-room
"""
import argparse
import asyncio
import json
import sys
import threading
from typing import Any, Callable, Optional

import websockets

from constants import LOG_FILE, LOG_LEVEL, SIGNAL_URL
from coordinator import NegotiationCoordinator
from logging_config import get_logger, setup_logging
from schemas.signaling import CONNECTED, ERROR, JOIN_ROOM, ChatMessage, Frame

logger = get_logger(__name__)


class SignalingClient:
    """Websocket transport for a ``NegotiationCoordinator``."""

    def __init__(self, url: str, room_id: str, on_message: Callable[[ChatMessage], Any], **coordinator_options):
        self.url = url
        self.room_id = room_id
        self.ws = None
        self.coordinator = NegotiationCoordinator(self, on_message, **coordinator_options)
        self._joined = asyncio.Event()

    @property
    def member_id(self) -> Optional[str]:
        return self.coordinator.local_id

    async def emit(self, event: str, data: Any):
        if self.ws is None:
            raise ConnectionError("signaling connection is not open")
        await self.ws.send(json.dumps({"type": event, "data": data}))

    async def run(self):
        """Connect, join the room and pump signaling until the socket closes.

        Every peer link is torn down when the connection ends; calling
        ``run`` again joins from scratch.
        """
        logger.info(f"Connecting to signaling server {self.url} for room '{self.room_id}'")
        try:
            async with websockets.connect(self.url) as ws:
                self.ws = ws
                async for raw in ws:
                    await self._handle_raw(raw)
        finally:
            self.ws = None
            self._joined.clear()
            await self.coordinator.reset()
            logger.info("Signaling connection closed")

    async def _handle_raw(self, raw):
        try:
            frame = Frame.model_validate(json.loads(raw))
        except ValueError as e:
            logger.warning(f"Ignoring malformed signaling frame: {e}")
            return

        if frame.type == ERROR:
            logger.warning(f"Server rejected a message: {frame.data}")
            return

        await self.coordinator.handle_event(frame.type, frame.data)
        if frame.type == CONNECTED:
            await self.emit(JOIN_ROOM, self.room_id)
            self._joined.set()

    async def wait_joined(self, timeout: float = 10.0):
        await asyncio.wait_for(self._joined.wait(), timeout)

    def send(self, text: str) -> bool:
        return self.coordinator.broadcast_application_message(text)

    async def leave(self):
        if self.ws is None:
            await self.coordinator.reset()
            return
        await self.coordinator.leave()
        await self.ws.close()


def render_message(message: ChatMessage):
    print(f"[{message.timestamp}] Peer {message.sender[:8]}: {message.content}")


def _read_lines(loop, stdin, lines: asyncio.Queue):
    """Feed input lines into ``lines`` from a daemon thread; ``None`` marks EOF."""
    try:
        for line in stdin:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        loop.call_soon_threadsafe(lines.put_nowait, None)
    except RuntimeError:
        # event loop already closed
        pass


async def chat(url: str, room_id: str, stdin=None):
    client = SignalingClient(url, room_id, render_message)
    signaling = asyncio.create_task(client.run())
    lines: asyncio.Queue = asyncio.Queue()
    threading.Thread(
        target=_read_lines,
        args=(asyncio.get_running_loop(), stdin or sys.stdin, lines),
        daemon=True,
    ).start()
    try:
        while True:
            next_line = asyncio.ensure_future(lines.get())
            done, _ = await asyncio.wait({signaling, next_line}, return_when=asyncio.FIRST_COMPLETED)
            if next_line not in done:
                next_line.cancel()
                break
            line = next_line.result()
            if line is None:
                break
            text = line.strip()
            if not text:
                continue
            if not client.send(text):
                print("No peer connected. The message was kept locally.")
    finally:
        if not signaling.done():
            await client.leave()
        [result] = await asyncio.gather(signaling, return_exceptions=True)
        if isinstance(result, Exception):
            logger.error(f"Signaling connection failed: {result}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Peer-to-peer room chat")
    parser.add_argument("room", help="room to join")
    parser.add_argument("--url", default=SIGNAL_URL, help="signaling websocket URL")
    args = parser.parse_args(argv)

    setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
    try:
        asyncio.run(chat(args.url, args.room))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
