"""Ranking aggregator: one active vote per (user_id, category).

Input: dish.voted / dish.retracted events (already structurally validated)
Output: vote rows + per-dish aggregates in the VoteStore, and a notification naming the
dishes whose aggregate changed (published as ranking.aggregate_updated by the service).

Conflict rule: last writer wins by event timestamp, ties broken by event_id. A repeated
event_id is a no-op; an older event is dropped silently and counted. The store recomputes
the affected aggregates in the same atomic unit as the vote, so a failure is retried whole.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from rankflow.core.errors import BusinessRuleError, ValidationError
from rankflow.core.models import Acknowledgement, DishRetracted, DishVoted, EventEnvelope
from rankflow.search.catalog import DishCatalog

from .models import AggregateRanking, ApplyOutcome, ApplyResult, Vote, VoteKey
from .store import VoteStore


logger = logging.getLogger(__name__)

AggregateListener = Callable[[list[str], EventEnvelope], None]


class AggregatorStats:
    """Outcome counters, including stale drops that are otherwise silent."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def incr(self, name: str) -> None:
        with self._lock:
            self._counts[name] += 1

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


class RankingAggregator:
    def __init__(
        self,
        store: VoteStore,
        catalog: DishCatalog,
        *,
        notify: Optional[AggregateListener] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._notify = notify
        self.stats = AggregatorStats()

    def handle(self, ctx) -> Acknowledgement:
        """Handler entrypoint for the validation middleware."""
        event = ctx.event
        if isinstance(event, DishVoted):
            return self.apply_vote(event)
        if isinstance(event, DishRetracted):
            return self.apply_retraction(event)
        raise ValidationError([f"event_type is not a vote event: {ctx.envelope.event_type}"])

    def apply_vote(self, event: DishVoted) -> Acknowledgement:
        env = event.envelope
        dish = self._catalog.get_dish(event.dish_id)
        if dish is None:
            self.stats.incr("rejected")
            raise BusinessRuleError(f"dish does not exist: {event.dish_id}", rule="dish_exists")
        if event.restaurant_id and dish.restaurant_id and event.restaurant_id != dish.restaurant_id:
            self.stats.incr("rejected")
            raise BusinessRuleError(
                f"dish {event.dish_id} does not belong to restaurant {event.restaurant_id}",
                rule="dish_restaurant_match",
            )

        ts = _utc(env.timestamp)
        vote = Vote(
            user_id=env.user_id,
            category=event.category,
            dish_id=event.dish_id,
            rank=event.rank,
            event_id=env.event_id,
            event_ts=ts,
            created_at=ts,
            updated_at=ts,
            restaurant_id=event.restaurant_id or dish.restaurant_id or None,
        )
        result = self._store.apply_vote(vote)
        return self._finish(env, result)

    def apply_retraction(self, event: DishRetracted) -> Acknowledgement:
        env = event.envelope
        key = VoteKey(env.user_id, event.category)
        result = self._store.apply_retraction(key, event_id=env.event_id, event_ts=_utc(env.timestamp))
        return self._finish(env, result)

    def reconcile(self, dish_ids: Optional[Iterable[str]] = None) -> list[AggregateRanking]:
        """Recompute aggregates from the full vote set (all known dishes by default)."""

        ids = list(dish_ids) if dish_ids is not None else self._store.aggregated_dish_ids()
        aggregates = [self._store.recompute_aggregate(d) for d in ids]
        logger.info("aggregates_reconciled", extra={"count": len(aggregates)})
        return aggregates

    def _finish(self, env: EventEnvelope, result: ApplyResult) -> Acknowledgement:
        self.stats.incr(result.outcome.value)
        dish_ids = result.affected_dish_ids

        if result.outcome == ApplyOutcome.STALE:
            logger.debug(
                "stale_vote_dropped",
                extra={"event_id": env.event_id, "trace_id": env.trace_id, "user_id": env.user_id},
            )
        elif result.outcome == ApplyOutcome.DUPLICATE:
            logger.debug("duplicate_vote_skipped", extra={"event_id": env.event_id, "trace_id": env.trace_id})

        if dish_ids:
            self._emit(dish_ids, env)

        logger.info(
            "vote_event_processed",
            extra={
                "event_id": env.event_id,
                "trace_id": env.trace_id,
                "event_type": env.event_type,
                "outcome": result.outcome.value,
                "dish_ids": dish_ids,
            },
        )
        return Acknowledgement(
            event_id=env.event_id,
            event_type=env.event_type,
            outcome=result.outcome.value,
            detail={
                "dish_ids": dish_ids,
                "aggregates": {
                    a.dish_id: {"vote_count": a.vote_count, "average_rank": a.average_rank} for a in result.aggregates
                },
            },
        )

    def _emit(self, dish_ids: list[str], env: EventEnvelope) -> None:
        if self._notify is None:
            return
        try:
            self._notify(dish_ids, env)
        except Exception as e:
            # The vote is committed; the index catches up on the next resync.
            self.stats.incr("notify_failures")
            logger.error(
                "aggregate_notify_failed",
                extra={"event_id": env.event_id, "trace_id": env.trace_id, "dish_ids": dish_ids, "error": str(e)},
            )


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
