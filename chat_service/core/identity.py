from __future__ import annotations

import logging
import uuid
from typing import Optional

from chat_service.core.cache import KeyValueStore, StoreError
from chat_service.core.errors import IdentityStoreFailure
from chat_service.core.metrics import metrics
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)


def identity_key(user_id: str) -> str:
    return f"user:{user_id}:current_conversation"


class ConversationIdentityResolver:
    """Maps a user to the conversation id they are currently writing into.

    The mapping expires a fixed `ttl_sec` after it was created. Lookups never
    extend it, so a user who keeps chatting past the window is moved to a fresh
    conversation (and therefore an empty history) without notice.
    """

    def __init__(self, store: KeyValueStore, ttl_sec: int | None = None) -> None:
        self._store = store
        self._ttl_sec = ttl_sec if ttl_sec is not None else SETTINGS.identity_ttl_sec

    def current(self, user_id: str) -> Optional[str]:
        try:
            return self._store.get(identity_key(user_id))
        except StoreError as exc:
            raise IdentityStoreFailure(f"lookup failed for user {user_id}", cause=exc) from exc

    def resolve(self, user_id: str) -> str:
        key = identity_key(user_id)
        try:
            conversation_id = self._store.get(key)
        except StoreError as exc:
            raise IdentityStoreFailure(f"lookup failed for {key}", cause=exc) from exc

        if conversation_id:
            logger.info("resolved conversation user_id=%s conversation_id=%s", user_id, conversation_id)
            return conversation_id

        conversation_id = str(uuid.uuid4())
        try:
            self._store.set(key, conversation_id, ttl=self._ttl_sec)
        except StoreError as exc:
            raise IdentityStoreFailure(f"create failed for {key}", cause=exc) from exc
        metrics.inc("chat_conversation_created_total")
        logger.info("created conversation user_id=%s conversation_id=%s", user_id, conversation_id)
        return conversation_id
