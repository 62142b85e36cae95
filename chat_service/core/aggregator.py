from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional


class _Buffer:
    __slots__ = ("parts", "length")

    def __init__(self) -> None:
        self.parts: List[str] = []
        self.length = 0


class StreamAggregator:
    """Per-session text buffers written by the chunk callback and sampled by the watcher.

    Every operation takes the same lock, so a writer on a foreign thread and the
    watcher on the event loop never see a half-applied append.
    """

    def __init__(self) -> None:
        self._buffers: Dict[str, _Buffer] = {}
        self._lock = Lock()

    def open(self, session_id: str) -> None:
        with self._lock:
            self._buffers[session_id] = _Buffer()

    def append(self, session_id: str, chunk: str) -> bool:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                # late chunk after close
                return False
            if not chunk:
                return True
            buffer.parts.append(chunk)
            buffer.length += len(chunk)
            return True

    def length(self, session_id: str) -> Optional[int]:
        with self._lock:
            buffer = self._buffers.get(session_id)
            return None if buffer is None else buffer.length

    def snapshot(self, session_id: str) -> Optional[str]:
        with self._lock:
            buffer = self._buffers.get(session_id)
            if buffer is None:
                return None
            text = "".join(buffer.parts)
            buffer.parts = [text]
            return text

    def close(self, session_id: str) -> Optional[str]:
        with self._lock:
            buffer = self._buffers.pop(session_id, None)
        if buffer is None:
            return None
        return "".join(buffer.parts)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffers)
