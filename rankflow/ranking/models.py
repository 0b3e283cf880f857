from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Tuple


# Placeholder version of a row that has never seen a vote; any real event is newer.
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class VoteKey:
    user_id: str
    category: str


@dataclass(frozen=True)
class Vote:
    """One user's choice within one category. Inactive rows are retraction tombstones."""

    user_id: str
    category: str
    dish_id: Optional[str]
    rank: int
    event_id: str
    event_ts: datetime
    created_at: datetime
    updated_at: datetime
    restaurant_id: Optional[str] = None
    active: bool = True

    @property
    def key(self) -> VoteKey:
        return VoteKey(self.user_id, self.category)

    @property
    def version(self) -> Tuple[datetime, str]:
        # Last-writer-wins order: timestamp first, event_id breaks ties.
        return (self.event_ts, self.event_id)

    def superseded_by(self, event_ts: datetime, event_id: str) -> bool:
        return (event_ts, event_id) > self.version

    def tombstone(self, *, event_id: str, event_ts: datetime) -> "Vote":
        return replace(self, event_id=event_id, event_ts=event_ts, updated_at=event_ts, active=False)


def tombstone_for(key: VoteKey, *, event_id: str, event_ts: datetime) -> Vote:
    return Vote(
        user_id=key.user_id,
        category=key.category,
        dish_id=None,
        rank=0,
        event_id=event_id,
        event_ts=event_ts,
        created_at=event_ts,
        updated_at=event_ts,
        active=False,
    )


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    NOOP = "noop"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one conditional apply, with the aggregates it recomputed in the same unit."""

    outcome: ApplyOutcome
    previous: Optional[Vote] = None
    current: Optional[Vote] = None
    aggregates: Tuple["AggregateRanking", ...] = ()

    @property
    def affected_dish_ids(self) -> list[str]:
        """Dishes whose active vote set changed; empty unless the outcome is APPLIED."""
        if self.outcome != ApplyOutcome.APPLIED:
            return []
        ids: list[str] = []
        for v in (self.previous, self.current):
            if v is not None and v.active and v.dish_id and v.dish_id not in ids:
                ids.append(v.dish_id)
        return ids


@dataclass(frozen=True)
class AggregateRanking:
    """Read-optimized per-dish summary derived from the active vote set."""

    dish_id: str
    vote_count: int
    average_rank: float
    updated_at: datetime

    @classmethod
    def from_votes(cls, dish_id: str, votes: Iterable[Vote], *, updated_at: datetime) -> "AggregateRanking":
        ranks = [v.rank for v in votes if v.active and v.dish_id == dish_id]
        avg = round(sum(ranks) / len(ranks), 4) if ranks else 0.0
        return cls(dish_id=dish_id, vote_count=len(ranks), average_rank=avg, updated_at=updated_at)
