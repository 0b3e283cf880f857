from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import redis

from rankflow.core.errors import PublishError
from rankflow.core.models import EventEnvelope

if TYPE_CHECKING:
    from rankflow.consumer.middleware import DeliveryResult, ValidationMiddleware


logger = logging.getLogger(__name__)


class MessageBus:
    """Abstraction for component-to-component communication."""

    def publish(self, stream: str, event: EventEnvelope) -> str:  # pragma: no cover
        raise NotImplementedError


@dataclass(frozen=True)
class ReceivedMessage:
    stream: str
    message_id: str
    body: str
    fields: dict[str, str]


def envelope_to_body(event: EventEnvelope) -> str:
    return json.dumps(event.to_wire_dict(), ensure_ascii=False)


class RedisStreamBus(MessageBus):
    """Redis Streams implementation.

    Wire format: one stream entry per event with a single `event` field holding the
    JSON envelope. Consumers read through a consumer group (at-least-once); entries
    left unacknowledged are reclaimed by `reclaim_stale`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        client: Optional[redis.Redis] = None,
        block_ms: int = 5000,
        read_count: int = 10,
        reclaim_idle_ms: int = 60_000,
        reclaim_interval_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = redis_url
        self._client = client
        self.block_ms = block_ms
        self.read_count = read_count
        self.reclaim_idle_ms = reclaim_idle_ms
        self.reclaim_interval_ms = reclaim_idle_ms if reclaim_interval_ms is None else reclaim_interval_ms
        self._clock = clock

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    def _ensure_group(self, stream: str, group: str) -> None:
        try:
            self.client.xgroup_create(name=stream, groupname=group, id="$", mkstream=True)
        except redis.ResponseError as e:
            # BUSYGROUP means it already exists.
            if "BUSYGROUP" not in str(e):
                raise

    def publish(self, stream: str, event: EventEnvelope) -> str:
        body = envelope_to_body(event)
        try:
            return str(self.client.xadd(stream, {"event": body}))
        except redis.RedisError as e:
            raise PublishError(f"xadd {stream} failed: {e}") from e

    def publish_raw(self, stream: str, body: str) -> str:
        return str(self.client.xadd(stream, {"event": body}))

    def poll(self, *, stream: str, group: str, consumer: str) -> list[ReceivedMessage]:
        self._ensure_group(stream, group)
        resp = self.client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: ">"},
            count=self.read_count,
            block=self.block_ms,
        )
        out: list[ReceivedMessage] = []
        for (sname, items) in resp or []:
            for (msg_id, fields) in items:
                raw = dict(fields)
                out.append(ReceivedMessage(stream=sname, message_id=msg_id, body=raw.get("event") or "", fields=raw))
        return out

    def reclaim_stale(self, *, stream: str, group: str, consumer: str) -> list[ReceivedMessage]:
        """Take over entries another worker read but never acknowledged."""
        self._ensure_group(stream, group)
        resp = self.client.xautoclaim(
            stream, group, consumer, min_idle_time=self.reclaim_idle_ms, start_id="0-0", count=self.read_count
        )
        items = resp[1] if resp else []
        return [
            ReceivedMessage(stream=stream, message_id=msg_id, body=dict(fields).get("event") or "", fields=dict(fields))
            for (msg_id, fields) in items
            if fields
        ]

    def ack(self, *, stream: str, group: str, message_id: str) -> None:
        self.client.xack(stream, group, message_id)

    def run_worker(
        self,
        *,
        stream: str,
        group: str,
        consumer: str,
        middleware: "ValidationMiddleware",
        stop_after_messages: int | None = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """Run an at-least-once worker.

        - Envelope validation, idempotency, retry and dead-lettering live in the middleware
        - Every delivery the middleware settled (handled or dead-lettered) is acknowledged
        - Deliveries that could not even be dead-lettered stay pending, and are reclaimed
          every `reclaim_interval_ms` for as long as the worker runs
        """

        processed = 0
        next_reclaim = 0.0
        while stop_event is None or not stop_event.is_set():
            batch: list[ReceivedMessage] = []
            if self._clock() >= next_reclaim:
                batch = self.reclaim_stale(stream=stream, group=group, consumer=consumer)
                next_reclaim = self._clock() + self.reclaim_interval_ms / 1000.0
            batch += self.poll(stream=stream, group=group, consumer=consumer)
            if not batch:
                continue

            for msg in batch:
                result = middleware.process(msg.body, delivery_id=msg.message_id)
                self._settle(stream=stream, group=group, msg=msg, result=result)

                processed += 1
                if stop_after_messages is not None and processed >= stop_after_messages:
                    return

    def _settle(self, *, stream: str, group: str, msg: ReceivedMessage, result: "DeliveryResult") -> None:
        if result.redeliver:
            logger.error(
                "delivery_left_pending",
                extra={"stream": stream, "message_id": msg.message_id, "error": result.error},
            )
            return
        self.ack(stream=stream, group=group, message_id=msg.message_id)


class InMemoryBus(MessageBus):
    """Process-local bus used by tests and single-process dev runs."""

    def __init__(self) -> None:
        self._streams: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self._seq = 0
        self._lock = threading.Lock()

    def publish(self, stream: str, event: EventEnvelope) -> str:
        return self.publish_raw(stream, envelope_to_body(event))

    def publish_raw(self, stream: str, body: str) -> str:
        with self._lock:
            self._seq += 1
            msg_id = f"{self._seq}-0"
            self._streams[stream].append((msg_id, body))
            return msg_id

    def published(self, stream: Optional[str] = None) -> list[tuple[str, str]]:
        with self._lock:
            if stream is None:
                return [item for items in self._streams.values() for item in items]
            return list(self._streams.get(stream, []))

    def drain(self, stream: str) -> list[ReceivedMessage]:
        with self._lock:
            items = self._streams.pop(stream, [])
        return [ReceivedMessage(stream=stream, message_id=m, body=b, fields={"event": b}) for m, b in items]

    def pump(self, stream: str, middleware: "ValidationMiddleware") -> list["DeliveryResult"]:
        """Deliver everything currently queued on `stream` through `middleware`."""
        return [middleware.process(msg.body, delivery_id=msg.message_id) for msg in self.drain(stream)]
