import pytest

from chat_service.core.cache import MemoryStore, StoreError
from chat_service.core.errors import IdentityStoreFailure
from chat_service.core.identity import ConversationIdentityResolver, identity_key

WEEK = 7 * 24 * 3600


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


class _BrokenStore:
    def get(self, key):
        raise StoreError("connection refused")

    def set(self, key, value, ttl=None):
        raise StoreError("connection refused")

    def ttl(self, key):
        return None


def test_resolve_creates_and_reuses_conversation_id():
    store = MemoryStore()
    resolver = ConversationIdentityResolver(store, ttl_sec=WEEK)

    first = resolver.resolve("u1")
    second = resolver.resolve("u1")

    assert first == second
    assert store.get("user:u1:current_conversation") == first
    assert resolver.current("u1") == first


def test_resolve_keeps_users_apart():
    resolver = ConversationIdentityResolver(MemoryStore(), ttl_sec=WEEK)

    assert resolver.resolve("u1") != resolver.resolve("u2")


def test_resolve_does_not_extend_mapping_ttl():
    clock = _Clock()
    store = MemoryStore(clock=clock)
    resolver = ConversationIdentityResolver(store, ttl_sec=WEEK)

    conversation_id = resolver.resolve("u1")
    assert store.ttl(identity_key("u1")) == WEEK

    clock.now += 3600
    assert resolver.resolve("u1") == conversation_id
    assert store.ttl(identity_key("u1")) == WEEK - 3600


def test_resolve_issues_new_id_after_expiry():
    clock = _Clock()
    store = MemoryStore(clock=clock)
    resolver = ConversationIdentityResolver(store, ttl_sec=WEEK)

    original = resolver.resolve("u1")
    clock.now += WEEK + 1

    assert resolver.current("u1") is None
    renewed = resolver.resolve("u1")
    assert renewed != original


def test_resolve_wraps_store_errors():
    resolver = ConversationIdentityResolver(_BrokenStore(), ttl_sec=WEEK)

    with pytest.raises(IdentityStoreFailure) as exc_info:
        resolver.resolve("u1")
    assert exc_info.value.code == "identity_store_failure"
    assert isinstance(exc_info.value.cause, StoreError)
