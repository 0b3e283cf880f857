from __future__ import annotations

from rankflow.core.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore


class _FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value).encode("utf-8")
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def exists(self, key) -> int:
        return int(key in self.data)


def test_in_memory_store_keeps_first_outcome() -> None:
    store = InMemoryIdempotencyStore()

    assert store.mark("evt-1", ttl_seconds=60, outcome="applied") is True
    assert store.mark("evt-1", ttl_seconds=60, outcome="stale") is False

    assert store.seen("evt-1") is True
    assert store.first_outcome("evt-1") == "applied"
    assert store.first_outcome("evt-2") is None


def test_in_memory_store_forgets_after_ttl() -> None:
    now = [1000.0]
    store = InMemoryIdempotencyStore(clock=lambda: now[0])
    store.mark("evt-1", ttl_seconds=10)

    now[0] += 9
    assert store.seen("evt-1") is True
    now[0] += 1
    assert store.seen("evt-1") is False
    assert store.mark("evt-1", ttl_seconds=10) is True


def test_redis_store_uses_prefixed_keys_with_ttl() -> None:
    client = _FakeRedis()
    store = RedisIdempotencyStore(client, key_prefix="rankflow:processed:votes:")

    assert store.mark("evt-1", ttl_seconds=3600, outcome="applied") is True
    assert store.mark("evt-1", ttl_seconds=3600, outcome="duplicate") is False

    assert client.ttls == {"rankflow:processed:votes:evt-1": 3600}
    assert store.first_outcome("evt-1") == "applied"
    assert store.seen("evt-1") is True
    assert store.seen("evt-2") is False
