from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Protocol


class IdempotencyStore(Protocol):
    """Remembers which event_ids a consumer group has fully handled, and with what outcome.

    Contract: if `seen(event_id)` is True then the event must be treated as already processed.
    Only successful handling is recorded, so a failed event is retried on redelivery.
    """

    def seen(self, event_id: str) -> bool:
        ...

    def first_outcome(self, event_id: str) -> Optional[str]:
        ...

    def mark(self, event_id: str, *, ttl_seconds: int, outcome: str = "processed") -> bool:
        """Record the event as handled. False when another worker recorded it first."""
        ...


class InMemoryIdempotencyStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._entries: dict[str, tuple[float, str]] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            self._entries.pop(k, None)

    def seen(self, event_id: str) -> bool:
        return self.first_outcome(event_id) is not None

    def first_outcome(self, event_id: str) -> Optional[str]:
        with self._lock:
            self._purge(self._clock())
            entry = self._entries.get(event_id)
            return entry[1] if entry else None

    def mark(self, event_id: str, *, ttl_seconds: int, outcome: str = "processed") -> bool:
        with self._lock:
            now = self._clock()
            self._purge(now)
            if event_id in self._entries:
                return False
            self._entries[event_id] = (now + ttl_seconds, outcome)
            return True


class RedisIdempotencyStore:
    """One key per handled event: `<prefix>:<event_id>` holding the first outcome, with a TTL."""

    def __init__(self, redis_client, *, key_prefix: str):
        self._client = redis_client
        self._prefix = key_prefix.rstrip(":")

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}:{event_id}"

    def seen(self, event_id: str) -> bool:
        return bool(self._client.exists(self._key(event_id)))

    def first_outcome(self, event_id: str) -> Optional[str]:
        raw = self._client.get(self._key(event_id))
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)

    def mark(self, event_id: str, *, ttl_seconds: int, outcome: str = "processed") -> bool:
        # NX keeps the first worker's outcome when two deliveries race.
        return bool(self._client.set(self._key(event_id), outcome, ex=ttl_seconds, nx=True))
