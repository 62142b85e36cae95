from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Frame = Dict[str, Any]

STATUS_FINISHED = "finished"
STATUS_ERROR = "error"


def chunk_frame(chunk: str) -> Frame:
    return {"type": "chunk", "chunk": chunk}


def completion_frame(success: bool) -> Frame:
    return {
        "type": "completion",
        "status": STATUS_FINISHED if success else STATUS_ERROR,
        "success": success,
        "timestamp": int(time.time() * 1000),
    }


def error_frame(code: str, message: str) -> Frame:
    return {"type": "error", "code": code, "error": message}


def parse_inbound(raw: str) -> str:
    """Accept plain text or a JSON object carrying `message` / `content`."""
    text = (raw or "").strip()
    if not text:
        return ""
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, dict):
            value = parsed.get("message")
            if not isinstance(value, str):
                value = parsed.get("content")
            return value.strip() if isinstance(value, str) else ""
    return text


_STOP = object()


class ClientChannel:
    """FIFO outbound frames for one client connection.

    `post` may be called from any thread: frames are handed to the owning loop
    with `call_soon_threadsafe`, so they reach the socket in the order `post`
    was called and a single writer task does all sends.
    """

    def __init__(
        self,
        send: Callable[[Frame], Awaitable[None]],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._send = send
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> "ClientChannel":
        if self._writer is None:
            self._writer = self._loop.create_task(self._drain())
        return self

    def post(self, frame: Frame) -> bool:
        if self._closed or self._loop.is_closed():
            return False
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)
        except RuntimeError:
            # loop shut down between the check and the call
            return False
        return True

    async def _drain(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is _STOP:
                return
            try:
                await self._send(frame)
            except Exception as exc:
                logger.warning("client send failed, dropping channel: %s", exc)
                self._closed = True
                return

    async def close(self, drain: bool = True) -> None:
        self._closed = True
        if self._writer is None:
            return
        if drain:
            # queued behind any post() still waiting in the loop's ready queue
            self._loop.call_soon(self._queue.put_nowait, _STOP)
            await self._writer
            return
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
