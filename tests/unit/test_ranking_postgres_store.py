from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from rankflow.core.errors import TransientStorageError
from rankflow.core.postgres import PostgresConnection
from rankflow.ranking.models import ApplyOutcome, Vote, VoteKey
from rankflow.ranking.store import PostgresVoteStore


T0 = datetime(2025, 5, 1, 12, 0, tzinfo=timezone.utc)
KEY = VoteKey("user-1", "nasi-lemak")


class _FakeCursor:
    """Interprets the handful of statements PostgresVoteStore issues against in-memory tables."""

    def __init__(self, db: "_FakeDatabase") -> None:
        self._db = db
        self._result: Optional[tuple] = None

    def execute(self, sql: str, params: tuple = ()) -> None:
        db = self._db
        text = " ".join(sql.split())
        db.statements.append(text)
        if db.fail_on is not None and text.startswith(db.fail_on):
            db.fail_on = None
            raise TransientStorageError("connection reset")

        if text.startswith("INSERT INTO applied_vote_events"):
            (event_id,) = params
            self._result = None if event_id in db.claimed else (event_id,)
            db.claimed.add(event_id)
        elif text.startswith("INSERT INTO dish_votes"):
            user_id, category, event_ts, created_at, updated_at = params
            placeholder = (user_id, category, None, 0, "", event_ts, created_at, updated_at, None, False)
            db.rows.setdefault((user_id, category), placeholder)
            self._result = None
        elif text.startswith("SELECT") and text.endswith("FOR UPDATE"):
            self._result = db.rows.get(tuple(params))
        elif text.startswith("UPDATE dish_votes SET dish_id"):
            dish_id, restaurant_id, rank, event_id, event_ts, created_at, updated_at, user_id, category, v_ts, v_id = params
            row = db.rows[(user_id, category)]
            self._result = None
            if (row[5], row[4]) < (v_ts, v_id):
                created = created_at if row[4] == "" else row[6]
                row = (user_id, category, dish_id, rank, event_id, event_ts, created, updated_at, restaurant_id, True)
                db.rows[(user_id, category)] = row
                self._result = row
        elif text.startswith("UPDATE dish_votes SET event_id"):
            event_id, event_ts, updated_at, created_at, user_id, category, v_ts, v_id = params
            row = db.rows[(user_id, category)]
            self._result = None
            if (row[5], row[4]) < (v_ts, v_id):
                created = created_at if row[4] == "" else row[6]
                row = (user_id, category, row[2], row[3], event_id, event_ts, created, updated_at, row[8], False)
                db.rows[(user_id, category)] = row
                self._result = row
        elif text.startswith("INSERT INTO dish_rankings"):
            dish_id, _ = params
            ranks = [r[3] for r in db.rows.values() if r[9] and r[2] == dish_id]
            avg = round(sum(ranks) / len(ranks), 4) if ranks else 0
            row = (dish_id, len(ranks), avg, T0)
            db.rankings[dish_id] = row
            self._result = row
        else:
            raise AssertionError(f"unexpected statement: {text}")

    def fetchone(self) -> Optional[tuple]:
        return self._result


class _FakeDatabase(PostgresConnection):
    def __init__(self) -> None:
        super().__init__("postgresql://fake")
        self.claimed: set[str] = set()
        self.rows: dict[tuple[str, str], tuple] = {}
        self.rankings: dict[str, tuple] = {}
        self.statements: list[str] = []
        self.fail_on: Optional[str] = None
        self.commits = 0
        self.rollbacks = 0

    @contextmanager
    def transaction(self):
        snapshot = (set(self.claimed), dict(self.rows), dict(self.rankings))
        try:
            yield _FakeCursor(self)
        except Exception:
            self.claimed, self.rows, self.rankings = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1


def _vote(event_id: str, dish_id: str, rank: int, *, minute: int = 0) -> Vote:
    ts = T0 + timedelta(minutes=minute)
    return Vote(
        user_id=KEY.user_id,
        category=KEY.category,
        dish_id=dish_id,
        rank=rank,
        event_id=event_id,
        event_ts=ts,
        created_at=ts,
        updated_at=ts,
    )


def _kinds(statements: list[str]) -> list[str]:
    return [" ".join(s.split()[:3]) for s in statements]


def test_vote_is_claimed_locked_updated_and_aggregated_in_one_transaction() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)

    result = store.apply_vote(_vote("e1", "dish-a", 2))

    assert result.outcome == ApplyOutcome.APPLIED
    assert [(a.dish_id, a.vote_count, a.average_rank) for a in result.aggregates] == [("dish-a", 1, 2.0)]
    assert _kinds(db.statements) == [
        "INSERT INTO applied_vote_events",
        "INSERT INTO dish_votes",
        "SELECT user_id, category,",
        "UPDATE dish_votes SET",
        "INSERT INTO dish_rankings",
    ]
    assert db.commits == 1


def test_version_guard_compares_event_ids_in_byte_order() -> None:
    db = _FakeDatabase()
    PostgresVoteStore(db).apply_vote(_vote("e1", "dish-a", 2))

    [update] = [s for s in db.statements if s.startswith("UPDATE")]
    assert '(event_ts, event_id COLLATE "C") < (%s, %s COLLATE "C")' in update


def test_claimed_event_id_is_duplicate_without_touching_the_row() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)
    store.apply_vote(_vote("e1", "dish-a", 2))
    db.statements.clear()

    result = store.apply_vote(_vote("e1", "dish-a", 2))

    assert result.outcome == ApplyOutcome.DUPLICATE
    assert _kinds(db.statements) == ["INSERT INTO applied_vote_events"]


def test_older_vote_is_stale_and_issues_no_update() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)
    store.apply_vote(_vote("e2", "dish-b", 4, minute=2))
    db.statements.clear()

    result = store.apply_vote(_vote("e1", "dish-a", 1, minute=1))

    assert result.outcome == ApplyOutcome.STALE
    assert not any(s.startswith("UPDATE") for s in db.statements)
    assert db.rows[(KEY.user_id, KEY.category)][4] == "e2"
    assert "e1" in db.claimed


def test_revote_recomputes_both_dishes() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)
    store.apply_vote(_vote("e1", "dish-a", 2, minute=1))

    result = store.apply_vote(_vote("e2", "dish-b", 5, minute=2))

    assert {a.dish_id: a.vote_count for a in result.aggregates} == {"dish-a": 0, "dish-b": 1}
    assert db.rankings["dish-a"][1] == 0


def test_failed_recompute_rolls_back_the_claim_and_the_vote() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)
    store.apply_vote(_vote("e1", "dish-a", 2, minute=1))
    retraction = dict(event_id="r1", event_ts=T0 + timedelta(minutes=2))

    db.fail_on = "INSERT INTO dish_rankings"
    with pytest.raises(TransientStorageError):
        store.apply_retraction(KEY, **retraction)

    assert db.rollbacks == 1
    assert "r1" not in db.claimed
    assert db.rows[(KEY.user_id, KEY.category)][9] is True
    assert db.rankings["dish-a"][1] == 1

    result = store.apply_retraction(KEY, **retraction)

    assert result.outcome == ApplyOutcome.APPLIED
    assert db.rankings["dish-a"][1] == 0


def test_retraction_without_prior_vote_leaves_tombstone() -> None:
    db = _FakeDatabase()
    store = PostgresVoteStore(db)

    result = store.apply_retraction(KEY, event_id="r1", event_ts=T0 + timedelta(minutes=5))
    late = store.apply_vote(_vote("e1", "dish-a", 3, minute=1))

    assert result.outcome == ApplyOutcome.NOOP
    assert result.aggregates == ()
    assert late.outcome == ApplyOutcome.STALE
    assert db.rankings == {}
