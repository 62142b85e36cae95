from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, List

from chat_service.core.cache import KeyValueStore, StoreError
from chat_service.core.errors import HistorySerializationFailure
from chat_service.core.metrics import metrics
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


@dataclass(frozen=True)
class HistoryEntry:
    role: str
    content: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def history_key(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def _now_timestamp() -> str:
    # local wall clock, second precision, no zone marker
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def decode_history(raw: str) -> List[HistoryEntry]:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise HistorySerializationFailure(f"invalid json: {exc}", cause=exc) from exc
    if not isinstance(parsed, list):
        raise HistorySerializationFailure(f"expected a list, got {type(parsed).__name__}")
    entries: List[HistoryEntry] = []
    for item in parsed:
        if not isinstance(item, dict):
            raise HistorySerializationFailure(f"expected an object entry, got {type(item).__name__}")
        entries.append(
            HistoryEntry(
                role=str(item.get("role") or ""),
                content=str(item.get("content") or ""),
                timestamp=str(item.get("timestamp") or ""),
            )
        )
    return entries


def encode_history(entries: List[HistoryEntry]) -> str:
    try:
        return json.dumps([entry.to_dict() for entry in entries], ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise HistorySerializationFailure(f"encode failed: {exc}", cause=exc) from exc


class ConversationHistoryStore:
    """Length-bounded turn log per conversation, stored as one JSON array.

    `append` is a read-modify-write without any lock: two turns finishing at the
    same time on one conversation race and the later write wins. That is fine
    while a user drives one turn at a time, but multi-device chat on a shared
    conversation can lose turns.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_sec: int | None = None,
        max_entries: int | None = None,
        clock: Callable[[], str] = _now_timestamp,
    ) -> None:
        self._store = store
        self._ttl_sec = ttl_sec if ttl_sec is not None else SETTINGS.conversation_ttl_sec
        self._max_entries = max_entries if max_entries is not None else SETTINGS.history_max_entries
        self._clock = clock

    def read(self, conversation_id: str) -> List[HistoryEntry]:
        key = history_key(conversation_id)
        try:
            raw = self._store.get(key)
        except StoreError as exc:
            logger.error("history read failed conversation_id=%s error=%s", conversation_id, exc)
            metrics.inc("chat_history_read_failures_total", {"reason": "store"})
            return []
        except Exception as exc:
            logger.exception("history read raised unexpectedly conversation_id=%s: %s", conversation_id, exc)
            metrics.inc("chat_history_read_failures_total", {"reason": "unexpected"})
            return []
        if raw is None:
            logger.debug("no history conversation_id=%s", conversation_id)
            return []
        try:
            entries = decode_history(raw)
        except HistorySerializationFailure as exc:
            logger.error("history decode failed conversation_id=%s error=%s", conversation_id, exc)
            metrics.inc("chat_history_read_failures_total", {"reason": "decode"})
            return []
        logger.debug("read history conversation_id=%s entries=%s", conversation_id, len(entries))
        return entries

    def append(self, conversation_id: str, user_message: str, assistant_response: str) -> bool:
        key = history_key(conversation_id)
        entries = self.read(conversation_id)
        captured_at = self._clock()
        entries.append(HistoryEntry(role=ROLE_USER, content=user_message, timestamp=captured_at))
        entries.append(HistoryEntry(role=ROLE_ASSISTANT, content=assistant_response, timestamp=captured_at))
        if len(entries) > self._max_entries:
            entries = entries[-self._max_entries :]
        try:
            self._store.set(key, encode_history(entries), ttl=self._ttl_sec)
        except (HistorySerializationFailure, StoreError) as exc:
            logger.error("history write failed conversation_id=%s error=%s", conversation_id, exc)
            metrics.inc("chat_history_write_failures_total")
            return False
        logger.debug("updated history conversation_id=%s entries=%s", conversation_id, len(entries))
        return True


def history_as_messages(entries: List[HistoryEntry]) -> List[dict[str, Any]]:
    return [{"role": entry.role, "content": entry.content} for entry in entries if entry.content]
