"""Pipeline process: builds every dependency once and runs one worker per stream.

Streams consumed:
- votes: dish.voted / dish.retracted -> RankingAggregator
- users: user.registered -> UserRegistry
- search-sync: ranking.aggregate_updated and dish-table change notices -> SearchSynchronizer

Aggregate changes are published onto the search-sync stream instead of calling the
synchronizer inline, so a slow or failing index never holds up the vote path.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import redis

from rankflow.consumer.middleware import ValidationMiddleware
from rankflow.contracts import event_types
from rankflow.core.errors import PublishError
from rankflow.core.idempotency import IdempotencyStore, InMemoryIdempotencyStore, RedisIdempotencyStore
from rankflow.core.ids import derived_event_id
from rankflow.core.message_bus import MessageBus, RedisStreamBus
from rankflow.core.models import AggregateUpdated, DishRetracted, DishVoted, EventEnvelope, UserRegistered
from rankflow.core.postgres import PostgresConnection
from rankflow.core.settings import Settings, load_settings
from rankflow.deadletter.coordinator import (
    DeadLetterCoordinator,
    DeadLetterSink,
    RedisDeadLetterSink,
    RetryPolicy,
)
from rankflow.publisher.outbox import OutboxRelay, PostgresOutboxStore
from rankflow.publisher.publisher import EventPublisher
from rankflow.ranking.aggregator import RankingAggregator
from rankflow.ranking.store import InMemoryVoteStore, PostgresVoteStore, VoteStore
from rankflow.search.catalog import DishCatalog, InMemoryDishCatalog, PostgresDishCatalog
from rankflow.search.index import RedisSearchIndex, SearchIndex
from rankflow.search.synchronizer import SearchSynchronizer
from rankflow.users.registry import InMemoryUserStore, PostgresUserStore, UserRegistry, UserStore

from .router import EventRouter


logger = logging.getLogger(__name__)

OUTBOX_POLL_SECONDS = 1.0


@dataclass
class Pipeline:
    settings: Settings
    bus: MessageBus
    publisher: EventPublisher
    dead_letters: DeadLetterCoordinator
    votes: VoteStore
    catalog: DishCatalog
    index: SearchIndex
    aggregator: RankingAggregator
    synchronizer: SearchSynchronizer
    users: UserRegistry
    middlewares: dict[str, ValidationMiddleware] = field(default_factory=dict)
    outbox: Optional[OutboxRelay] = None


def build_pipeline(
    settings: Settings,
    *,
    bus: MessageBus,
    dead_letter_sink: DeadLetterSink,
    votes: VoteStore,
    catalog: DishCatalog,
    index: SearchIndex,
    user_store: UserStore,
    idempotency: Optional[Callable[[str], IdempotencyStore]] = None,
    outbox: Optional[Callable[[EventPublisher], OutboxRelay]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Pipeline:
    """Wire handlers, middleware and publisher around the given adapters.

    `idempotency` is a factory keyed by stream name so each consumer keeps its own
    processed-event set.
    """

    policy = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        backoff_base_seconds=settings.retry.backoff_base_seconds,
        backoff_max_seconds=settings.retry.backoff_max_seconds,
    )
    dead_letters = DeadLetterCoordinator(dead_letter_sink, policy=policy, sleep=sleep)
    publisher = EventPublisher(
        bus,
        source=settings.source,
        stream_for=settings.stream_for,
        dead_letters=dead_letters,
    )

    def notify_aggregate_changed(dish_ids: list[str], cause: EventEnvelope) -> None:
        result = publisher.publish(
            event_types.RANKING_AGGREGATE_UPDATED,
            user_id=cause.user_id,
            payload={"dish_ids": list(dish_ids)},
            trace_id=cause.trace_id,
            metadata={"cause_event_id": cause.event_id},
            event_id=derived_event_id(cause.event_id, event_types.RANKING_AGGREGATE_UPDATED),
        )
        if not result.ok:
            raise PublishError(result.error or "aggregate notification not published")

    aggregator = RankingAggregator(votes, catalog, notify=notify_aggregate_changed)
    synchronizer = SearchSynchronizer(catalog, votes, index, collection=settings.search_collection)
    users = UserRegistry(user_store)

    dedupe = idempotency or (lambda _stream: InMemoryIdempotencyStore())
    s = settings.streams
    routes = {
        s.votes: (
            EventRouter().register(DishVoted, aggregator.handle).register(DishRetracted, aggregator.handle),
            None,
        ),
        s.users: (EventRouter().register(UserRegistered, users.handle), None),
        s.search_sync: (
            EventRouter().register(AggregateUpdated, synchronizer.handle),
            synchronizer.handle_change,
        ),
    }
    middlewares = {
        stream: ValidationMiddleware(
            router,
            dead_letters,
            stream=stream,
            change_handler=change_handler,
            idempotency=dedupe(stream),
            dedupe_ttl_seconds=settings.dedupe_ttl_seconds,
        )
        for stream, (router, change_handler) in routes.items()
    }

    return Pipeline(
        settings=settings,
        bus=bus,
        publisher=publisher,
        dead_letters=dead_letters,
        votes=votes,
        catalog=catalog,
        index=index,
        aggregator=aggregator,
        synchronizer=synchronizer,
        users=users,
        middlewares=middlewares,
        outbox=outbox(publisher) if outbox is not None else None,
    )


def pipeline_from_settings(settings: Settings) -> Pipeline:
    """Production adapters: Redis for the bus, dead letters, dedupe and index; Postgres
    for relational state when a DSN is configured, in-memory stores otherwise."""

    client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    s = settings.streams
    bus = RedisStreamBus(settings.redis_url, client=client, block_ms=s.block_ms, read_count=s.read_count)

    outbox: Optional[Callable[[EventPublisher], OutboxRelay]] = None
    if settings.postgres_dsn:
        db = PostgresConnection(settings.postgres_dsn)
        votes: VoteStore = PostgresVoteStore(db)
        catalog: DishCatalog = PostgresDishCatalog(db)
        user_store: UserStore = PostgresUserStore(db)
        outbox_store = PostgresOutboxStore(db)

        def make_relay(publisher: EventPublisher) -> OutboxRelay:
            return OutboxRelay(outbox_store, publisher, max_attempts=settings.retry.max_attempts)

        outbox = make_relay
    else:
        logger.warning("postgres_not_configured_using_memory_stores", extra={"env": settings.env})
        votes = InMemoryVoteStore()
        catalog = InMemoryDishCatalog()
        user_store = InMemoryUserStore()

    return build_pipeline(
        settings,
        bus=bus,
        dead_letter_sink=RedisDeadLetterSink(client, streams=[s.users, s.votes, s.search_sync]),
        votes=votes,
        catalog=catalog,
        index=RedisSearchIndex(client),
        user_store=user_store,
        idempotency=lambda stream: RedisIdempotencyStore(client, key_prefix=f"rankflow:processed:{stream}"),
        outbox=outbox,
    )


def _run_outbox(relay: OutboxRelay, stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        try:
            stats = relay.drain()
        except Exception as e:
            logger.error("outbox_drain_failed", extra={"error": str(e)})
        else:
            if stats.published or stats.failed:
                logger.info(
                    "outbox_drained",
                    extra={"published": stats.published, "retried": stats.retried, "failed": stats.failed},
                )
        stop_event.wait(OUTBOX_POLL_SECONDS)


def main() -> None:
    s = load_settings()
    logging.basicConfig(level=s.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    pipeline = pipeline_from_settings(s)
    pipeline.synchronizer.ensure_collection()

    group = s.streams.consumer_group
    base_consumer = os.getenv("HOSTNAME", "rankflow-1")
    stop_event = threading.Event()

    threads: list[threading.Thread] = []
    for name, stream in (("votes", s.streams.votes), ("users", s.streams.users), ("search", s.streams.search_sync)):
        # One Redis client per worker; the shared one stays with the publisher.
        worker_bus = RedisStreamBus(s.redis_url, block_ms=s.streams.block_ms, read_count=s.streams.read_count)
        middleware = pipeline.middlewares[stream]
        threads.append(
            threading.Thread(
                target=lambda b=worker_bus, st=stream, n=name, m=middleware: b.run_worker(
                    stream=st,
                    group=group,
                    consumer=f"{base_consumer}-{n}",
                    middleware=m,
                    stop_event=stop_event,
                ),
                daemon=True,
                name=f"rankflow-{name}-worker",
            )
        )
    if pipeline.outbox is not None:
        threads.append(
            threading.Thread(
                target=_run_outbox,
                args=(pipeline.outbox, stop_event),
                daemon=True,
                name="rankflow-outbox-relay",
            )
        )

    logger.info("pipeline_started", extra={"env": s.env, "workers": [t.name for t in threads]})
    for t in threads:
        t.start()
    try:
        for t in threads:
            t.join()
    except KeyboardInterrupt:
        stop_event.set()
        logger.info("pipeline_stopping")


if __name__ == "__main__":
    main()
