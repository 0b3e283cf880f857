"""Durable vote and aggregate storage.

Both implementations expose the same conditional, idempotent apply step: record the
event_id, compare-and-update the `(user_id, category)` row and recompute the affected
dish aggregates as one atomic unit.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from rankflow.core.postgres import PostgresConnection

from .models import EPOCH, AggregateRanking, ApplyOutcome, ApplyResult, Vote, VoteKey, tombstone_for


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class VoteStore(Protocol):
    def apply_vote(self, vote: Vote) -> ApplyResult:
        """Insert or replace the vote for `vote.key` if `vote` is newer and unseen.

        The aggregates of every affected dish are recomputed in the same atomic unit and
        returned on the result, so a failure leaves neither the vote nor the claim behind.
        """
        ...

    def apply_retraction(self, key: VoteKey, *, event_id: str, event_ts: datetime) -> ApplyResult:
        """Deactivate the vote for `key` if the retraction is newer and unseen; same atomicity as apply_vote."""
        ...

    def get_vote(self, key: VoteKey) -> Optional[Vote]:
        ...

    def active_votes(self, *, dish_id: Optional[str] = None) -> list[Vote]:
        ...

    def recompute_aggregate(self, dish_id: str) -> AggregateRanking:
        """Rebuild one dish's aggregate from the full active vote set and persist it."""
        ...

    def get_aggregate(self, dish_id: str) -> Optional[AggregateRanking]:
        ...

    def aggregated_dish_ids(self) -> list[str]:
        """Every dish that has an aggregate row or at least one active vote."""
        ...


class InMemoryVoteStore:
    """In-memory implementation for tests and dev.

    A single lock stands in for the row-level atomicity of the database. Each apply
    stages the new vote row and the affected aggregates, and only publishes them (and
    the event_id claim) once all of them are computed.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _now_utc) -> None:
        self._votes: dict[VoteKey, Vote] = {}
        self._applied: set[str] = set()
        self._aggregates: dict[str, AggregateRanking] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def apply_vote(self, vote: Vote) -> ApplyResult:
        with self._lock:
            if vote.event_id in self._applied:
                return ApplyResult(ApplyOutcome.DUPLICATE, previous=self._votes.get(vote.key))
            previous = self._votes.get(vote.key)
            if previous is not None and not previous.superseded_by(vote.event_ts, vote.event_id):
                self._applied.add(vote.event_id)
                return ApplyResult(ApplyOutcome.STALE, previous=previous, current=previous)
            current = vote
            if previous is not None:
                current = replace(vote, created_at=previous.created_at, active=True)
            return self._commit(vote.event_id, current, ApplyResult(ApplyOutcome.APPLIED, previous=previous, current=current))

    def apply_retraction(self, key: VoteKey, *, event_id: str, event_ts: datetime) -> ApplyResult:
        with self._lock:
            if event_id in self._applied:
                return ApplyResult(ApplyOutcome.DUPLICATE, previous=self._votes.get(key))
            previous = self._votes.get(key)
            if previous is None:
                # Keep a tombstone so older votes arriving later stay stale.
                tombstone = tombstone_for(key, event_id=event_id, event_ts=event_ts)
                return self._commit(event_id, tombstone, ApplyResult(ApplyOutcome.NOOP))
            if not previous.superseded_by(event_ts, event_id):
                self._applied.add(event_id)
                return ApplyResult(ApplyOutcome.STALE, previous=previous, current=previous)
            current = previous.tombstone(event_id=event_id, event_ts=event_ts)
            outcome = ApplyOutcome.APPLIED if previous.active else ApplyOutcome.NOOP
            return self._commit(event_id, current, ApplyResult(outcome, previous=previous, current=current))

    def _commit(self, event_id: str, current: Vote, result: ApplyResult) -> ApplyResult:
        # Caller holds the lock. Nothing is visible until every aggregate is computed.
        staged = dict(self._votes)
        staged[current.key] = current
        aggregates: tuple[AggregateRanking, ...] = ()
        if result.affected_dish_ids:
            now = self._clock()
            aggregates = tuple(
                AggregateRanking.from_votes(d, staged.values(), updated_at=now) for d in result.affected_dish_ids
            )
        self._votes = staged
        self._aggregates.update((a.dish_id, a) for a in aggregates)
        self._applied.add(event_id)
        return replace(result, aggregates=aggregates)

    def get_vote(self, key: VoteKey) -> Optional[Vote]:
        with self._lock:
            return self._votes.get(key)

    def active_votes(self, *, dish_id: Optional[str] = None) -> list[Vote]:
        with self._lock:
            return [v for v in self._votes.values() if v.active and (dish_id is None or v.dish_id == dish_id)]

    def recompute_aggregate(self, dish_id: str) -> AggregateRanking:
        with self._lock:
            agg = AggregateRanking.from_votes(dish_id, self._votes.values(), updated_at=self._clock())
            self._aggregates[dish_id] = agg
            return agg

    def get_aggregate(self, dish_id: str) -> Optional[AggregateRanking]:
        with self._lock:
            return self._aggregates.get(dish_id)

    def aggregated_dish_ids(self) -> list[str]:
        with self._lock:
            ids = set(self._aggregates)
            ids.update(v.dish_id for v in self._votes.values() if v.active and v.dish_id)
            return sorted(ids)


class PostgresVoteStore:
    """PostgreSQL implementation for production.

    Requires the following schema:

    CREATE TABLE IF NOT EXISTS dish_votes (
        user_id VARCHAR(128) NOT NULL,
        category VARCHAR(128) NOT NULL,
        dish_id VARCHAR(64),
        restaurant_id VARCHAR(64),
        rank SMALLINT NOT NULL DEFAULT 0,
        event_id VARCHAR(64) NOT NULL,
        event_ts TIMESTAMPTZ NOT NULL,
        active BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (user_id, category)
    );
    CREATE INDEX IF NOT EXISTS idx_dish_votes_dish ON dish_votes(dish_id) WHERE active;
    CREATE TABLE IF NOT EXISTS applied_vote_events (
        event_id VARCHAR(64) PRIMARY KEY,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE TABLE IF NOT EXISTS dish_rankings (
        dish_id VARCHAR(64) PRIMARY KEY,
        vote_count INTEGER NOT NULL,
        average_rank DOUBLE PRECISION NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    );
    """

    _COLUMNS = "user_id, category, dish_id, rank, event_id, event_ts, created_at, updated_at, restaurant_id, active"

    def __init__(self, dsn: str | PostgresConnection) -> None:
        self._db = dsn if isinstance(dsn, PostgresConnection) else PostgresConnection(dsn)

    def _claim_event(self, cur, event_id: str) -> bool:
        cur.execute(
            "INSERT INTO applied_vote_events (event_id) VALUES (%s) ON CONFLICT (event_id) DO NOTHING RETURNING event_id",
            (event_id,),
        )
        return cur.fetchone() is not None

    def _lock_row(self, cur, key: VoteKey) -> Optional[Vote]:
        # Materialize the row first so FOR UPDATE always has something to lock.
        cur.execute(
            """
            INSERT INTO dish_votes (user_id, category, rank, event_id, event_ts, active, created_at, updated_at)
            VALUES (%s, %s, 0, '', %s, FALSE, %s, %s)
            ON CONFLICT (user_id, category) DO NOTHING
            """,
            (key.user_id, key.category, EPOCH, EPOCH, EPOCH),
        )
        cur.execute(
            f"SELECT {self._COLUMNS} FROM dish_votes WHERE user_id = %s AND category = %s FOR UPDATE",
            (key.user_id, key.category),
        )
        row = cur.fetchone()
        vote = self._row_to_vote(row)
        if vote.event_id == "" and vote.event_ts == EPOCH:
            return None
        return vote

    # Version comparison in byte order so the database agrees with Vote.superseded_by.
    _OLDER_THAN = '(event_ts, event_id COLLATE "C") < (%s, %s COLLATE "C")'

    def apply_vote(self, vote: Vote) -> ApplyResult:
        with self._db.transaction() as cur:
            if not self._claim_event(cur, vote.event_id):
                return ApplyResult(ApplyOutcome.DUPLICATE)
            previous = self._lock_row(cur, vote.key)
            if previous is not None and not previous.superseded_by(vote.event_ts, vote.event_id):
                return ApplyResult(ApplyOutcome.STALE, previous=previous, current=previous)
            cur.execute(
                f"""
                UPDATE dish_votes SET
                    dish_id = %s, restaurant_id = %s, rank = %s, event_id = %s, event_ts = %s,
                    active = TRUE,
                    created_at = CASE WHEN event_id = '' THEN %s ELSE created_at END,
                    updated_at = %s
                WHERE user_id = %s AND category = %s AND {self._OLDER_THAN}
                RETURNING {self._COLUMNS}
                """,
                (
                    vote.dish_id,
                    vote.restaurant_id,
                    vote.rank,
                    vote.event_id,
                    vote.event_ts,
                    vote.created_at,
                    vote.updated_at,
                    vote.user_id,
                    vote.category,
                    vote.event_ts,
                    vote.event_id,
                ),
            )
            row = cur.fetchone()
            if row is None:
                return ApplyResult(ApplyOutcome.STALE, previous=previous, current=previous)
            result = ApplyResult(ApplyOutcome.APPLIED, previous=previous, current=self._row_to_vote(row))
            return self._with_aggregates(cur, result)

    def apply_retraction(self, key: VoteKey, *, event_id: str, event_ts: datetime) -> ApplyResult:
        with self._db.transaction() as cur:
            if not self._claim_event(cur, event_id):
                return ApplyResult(ApplyOutcome.DUPLICATE)
            previous = self._lock_row(cur, key)
            if previous is not None and not previous.superseded_by(event_ts, event_id):
                return ApplyResult(ApplyOutcome.STALE, previous=previous, current=previous)
            cur.execute(
                f"""
                UPDATE dish_votes SET event_id = %s, event_ts = %s, active = FALSE, updated_at = %s,
                    created_at = CASE WHEN event_id = '' THEN %s ELSE created_at END
                WHERE user_id = %s AND category = %s AND {self._OLDER_THAN}
                RETURNING {self._COLUMNS}
                """,
                (event_id, event_ts, event_ts, event_ts, key.user_id, key.category, event_ts, event_id),
            )
            row = cur.fetchone()
            if previous is None:
                return ApplyResult(ApplyOutcome.NOOP)
            current = self._row_to_vote(row) if row is not None else previous
            outcome = ApplyOutcome.APPLIED if previous.active else ApplyOutcome.NOOP
            return self._with_aggregates(cur, ApplyResult(outcome, previous=previous, current=current))

    def _with_aggregates(self, cur, result: ApplyResult) -> ApplyResult:
        # Same transaction as the vote update: a failed recompute rolls back the claim too.
        aggregates = tuple(self._recompute(cur, d) for d in result.affected_dish_ids)
        return replace(result, aggregates=aggregates)

    def get_vote(self, key: VoteKey) -> Optional[Vote]:
        with self._db.transaction() as cur:
            cur.execute(
                f"SELECT {self._COLUMNS} FROM dish_votes WHERE user_id = %s AND category = %s AND event_id <> ''",
                (key.user_id, key.category),
            )
            row = cur.fetchone()
        return self._row_to_vote(row) if row else None

    def active_votes(self, *, dish_id: Optional[str] = None) -> list[Vote]:
        with self._db.transaction() as cur:
            if dish_id is None:
                cur.execute(f"SELECT {self._COLUMNS} FROM dish_votes WHERE active")
            else:
                cur.execute(f"SELECT {self._COLUMNS} FROM dish_votes WHERE active AND dish_id = %s", (dish_id,))
            return [self._row_to_vote(r) for r in cur.fetchall()]

    def recompute_aggregate(self, dish_id: str) -> AggregateRanking:
        with self._db.transaction() as cur:
            return self._recompute(cur, dish_id)

    def _recompute(self, cur, dish_id: str) -> AggregateRanking:
        # One statement over the full vote set, so a missed update heals on the next recompute.
        cur.execute(
            """
            INSERT INTO dish_rankings (dish_id, vote_count, average_rank, updated_at)
            SELECT %s, COUNT(*), COALESCE(ROUND(AVG(rank)::numeric, 4), 0), NOW()
            FROM dish_votes WHERE active AND dish_id = %s
            ON CONFLICT (dish_id) DO UPDATE SET
                vote_count = EXCLUDED.vote_count,
                average_rank = EXCLUDED.average_rank,
                updated_at = EXCLUDED.updated_at
            RETURNING dish_id, vote_count, average_rank, updated_at
            """,
            (dish_id, dish_id),
        )
        return self._row_to_aggregate(cur.fetchone())

    def get_aggregate(self, dish_id: str) -> Optional[AggregateRanking]:
        with self._db.transaction() as cur:
            cur.execute(
                "SELECT dish_id, vote_count, average_rank, updated_at FROM dish_rankings WHERE dish_id = %s",
                (dish_id,),
            )
            row = cur.fetchone()
        return self._row_to_aggregate(row) if row else None

    def aggregated_dish_ids(self) -> list[str]:
        with self._db.transaction() as cur:
            cur.execute(
                """
                SELECT dish_id FROM dish_rankings
                UNION
                SELECT DISTINCT dish_id FROM dish_votes WHERE active AND dish_id IS NOT NULL
                ORDER BY 1
                """
            )
            return [r[0] for r in cur.fetchall()]

    def _row_to_vote(self, row: Iterable) -> Vote:
        user_id, category, dish_id, rank, event_id, event_ts, created_at, updated_at, restaurant_id, active = row
        return Vote(
            user_id=user_id,
            category=category,
            dish_id=dish_id,
            rank=int(rank),
            event_id=event_id,
            event_ts=event_ts,
            created_at=created_at,
            updated_at=updated_at,
            restaurant_id=restaurant_id,
            active=bool(active),
        )

    def _row_to_aggregate(self, row: Iterable) -> AggregateRanking:
        dish_id, vote_count, average_rank, updated_at = row
        return AggregateRanking(
            dish_id=dish_id,
            vote_count=int(vote_count),
            average_rank=float(average_rank),
            updated_at=updated_at,
        )
