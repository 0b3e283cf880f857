"""Transactional outbox relay.

Domain writes that must emit an event insert an outbox row in the same database
transaction. The relay drains PENDING rows in creation order and publishes them. The
row id doubles as the event_id, so a row published twice (crash between publish and
mark) is deduplicated downstream by the idempotency key.

Failed attempts stay PENDING; a row becomes FAILED after `max_attempts` and only
then is it dead-lettered as a publish failure.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol, Union

from rankflow.core.ids import new_event_id, new_trace_id
from rankflow.core.postgres import PostgresConnection

from .publisher import EventPublisher


logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class OutboxEvent:
    id: str
    aggregate_id: str
    event_type: str
    user_id: str
    payload: dict[str, Any]
    trace_id: str
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def new(
        cls,
        *,
        aggregate_id: str,
        event_type: str,
        user_id: str,
        payload: dict[str, Any],
        trace_id: Optional[str] = None,
    ) -> "OutboxEvent":
        return cls(
            id=new_event_id(),
            aggregate_id=aggregate_id,
            event_type=event_type,
            user_id=user_id,
            payload=payload,
            trace_id=trace_id or new_trace_id(),
        )


class OutboxStore(Protocol):
    def add(self, event: OutboxEvent) -> None:
        ...

    def pending(self, *, limit: int) -> list[OutboxEvent]:
        """Oldest PENDING rows first."""
        ...

    def mark_published(self, event_id: str) -> None:
        ...

    def mark_failed_attempt(self, event_id: str, *, error: str, give_up: bool) -> None:
        ...


class InMemoryOutboxStore:
    def __init__(self) -> None:
        self._rows: dict[str, OutboxEvent] = {}
        self._lock = threading.Lock()

    def add(self, event: OutboxEvent) -> None:
        with self._lock:
            self._rows[event.id] = event

    def get(self, event_id: str) -> Optional[OutboxEvent]:
        with self._lock:
            return self._rows.get(event_id)

    def pending(self, *, limit: int) -> list[OutboxEvent]:
        with self._lock:
            rows = [r for r in self._rows.values() if r.status == OutboxStatus.PENDING]
        rows.sort(key=lambda r: r.created_at)
        return rows[:limit]

    def mark_published(self, event_id: str) -> None:
        with self._lock:
            row = self._rows[event_id]
            self._rows[event_id] = replace(row, status=OutboxStatus.PUBLISHED, attempts=row.attempts + 1)

    def mark_failed_attempt(self, event_id: str, *, error: str, give_up: bool) -> None:
        with self._lock:
            row = self._rows[event_id]
            status = OutboxStatus.FAILED if give_up else OutboxStatus.PENDING
            self._rows[event_id] = replace(row, status=status, attempts=row.attempts + 1, last_error=error)


class PostgresOutboxStore:
    """PostgreSQL implementation.

    CREATE TABLE IF NOT EXISTS outbox_events (
        id VARCHAR(64) PRIMARY KEY,
        aggregate_id VARCHAR(64) NOT NULL,
        event_type VARCHAR(64) NOT NULL,
        user_id VARCHAR(128) NOT NULL,
        trace_id VARCHAR(64) NOT NULL,
        payload JSONB NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox_events(created_at) WHERE status = 'PENDING';
    """

    _COLUMNS = "id, aggregate_id, event_type, user_id, payload, trace_id, status, attempts, last_error, created_at"

    def __init__(self, dsn: Union[str, PostgresConnection]) -> None:
        self._db = dsn if isinstance(dsn, PostgresConnection) else PostgresConnection(dsn)

    def add(self, event: OutboxEvent) -> None:
        with self._db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO outbox_events (id, aggregate_id, event_type, user_id, payload, trace_id,
                                           status, attempts, last_error, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    event.id,
                    event.aggregate_id,
                    event.event_type,
                    event.user_id,
                    json.dumps(event.payload),
                    event.trace_id,
                    event.status.value,
                    event.attempts,
                    event.last_error,
                    event.created_at,
                ),
            )

    def pending(self, *, limit: int) -> list[OutboxEvent]:
        with self._db.transaction() as cur:
            cur.execute(
                f"""
                SELECT {self._COLUMNS} FROM outbox_events
                WHERE status = 'PENDING'
                ORDER BY created_at ASC
                LIMIT %s
                """,
                (limit,),
            )
            return [self._row_to_event(r) for r in cur.fetchall()]

    def mark_published(self, event_id: str) -> None:
        with self._db.transaction() as cur:
            cur.execute(
                "UPDATE outbox_events SET status = 'PUBLISHED', attempts = attempts + 1 WHERE id = %s",
                (event_id,),
            )

    def mark_failed_attempt(self, event_id: str, *, error: str, give_up: bool) -> None:
        status = OutboxStatus.FAILED if give_up else OutboxStatus.PENDING
        with self._db.transaction() as cur:
            cur.execute(
                "UPDATE outbox_events SET status = %s, attempts = attempts + 1, last_error = %s WHERE id = %s",
                (status.value, error, event_id),
            )

    def _row_to_event(self, row: tuple) -> OutboxEvent:
        cols = self._COLUMNS.split(", ")
        d = dict(zip(cols, row))
        payload = d["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return OutboxEvent(
            id=d["id"],
            aggregate_id=d["aggregate_id"],
            event_type=d["event_type"],
            user_id=d["user_id"],
            payload=payload,
            trace_id=d["trace_id"],
            status=OutboxStatus(d["status"]),
            attempts=int(d["attempts"]),
            last_error=d["last_error"],
            created_at=d["created_at"],
        )


@dataclass(frozen=True)
class RelayStats:
    published: int = 0
    retried: int = 0
    failed: int = 0


class OutboxRelay:
    def __init__(
        self,
        store: OutboxStore,
        publisher: EventPublisher,
        *,
        batch_size: int = 10,
        max_attempts: int = 5,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    def drain_once(self) -> RelayStats:
        published = retried = failed = 0
        for row in self._store.pending(limit=self.batch_size):
            result = self._publisher.publish(
                row.event_type,
                user_id=row.user_id,
                payload=row.payload,
                trace_id=row.trace_id,
                metadata={"aggregate_id": row.aggregate_id, "outbox": True},
                event_id=row.id,
                timestamp=row.created_at,
                dead_letter=False,
            )
            if result.ok:
                self._store.mark_published(row.id)
                published += 1
                continue

            give_up = row.attempts + 1 >= self.max_attempts
            self._store.mark_failed_attempt(row.id, error=result.error or "publish failed", give_up=give_up)
            if give_up:
                failed += 1
                logger.error("outbox_event_failed", extra={"event_id": row.id, "attempts": row.attempts + 1})
                self._publisher.dead_letter(result)
            else:
                retried += 1

        return RelayStats(published=published, retried=retried, failed=failed)

    def drain(self) -> RelayStats:
        """Drain until no PENDING rows are publishable in this pass."""

        total = RelayStats()
        while True:
            stats = self.drain_once()
            total = RelayStats(
                published=total.published + stats.published,
                retried=total.retried + stats.retried,
                failed=total.failed + stats.failed,
            )
            if stats.retried or stats.failed or stats.published < self.batch_size:
                # Short batch means the outbox is drained; failures wait for the next run.
                return total
