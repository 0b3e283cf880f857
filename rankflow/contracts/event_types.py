from __future__ import annotations

# Recognized event types (payload schemas live in validation.py).

USER_REGISTERED = "user.registered"

DISH_VOTED = "dish.voted"
DISH_RETRACTED = "dish.retracted"

# Internal: emitted by the aggregator, consumed by the search synchronizer.
RANKING_AGGREGATE_UPDATED = "ranking.aggregate_updated"

RECOGNIZED_EVENT_TYPES = frozenset(
    {
        USER_REGISTERED,
        DISH_VOTED,
        DISH_RETRACTED,
        RANKING_AGGREGATE_UPDATED,
    }
)

VOTE_EVENT_TYPES = frozenset({DISH_VOTED, DISH_RETRACTED})

# Payload major versions each event type understands.
SUPPORTED_MAJOR_VERSIONS: dict[str, frozenset[int]] = {
    USER_REGISTERED: frozenset({1}),
    DISH_VOTED: frozenset({1}),
    DISH_RETRACTED: frozenset({1}),
    RANKING_AGGREGATE_UPDATED: frozenset({1}),
}

EVENT_STATUSES = frozenset({"confirmed", "pending", "failed"})

# v1 stream names.

USERS_STREAM_V1 = "rankflow.users.v1"
RANKING_VOTES_STREAM_V1 = "rankflow.ranking.votes.v1"
SEARCH_SYNC_STREAM_V1 = "rankflow.search.sync.v1"

DEFAULT_STREAMS: dict[str, str] = {
    USER_REGISTERED: USERS_STREAM_V1,
    DISH_VOTED: RANKING_VOTES_STREAM_V1,
    DISH_RETRACTED: RANKING_VOTES_STREAM_V1,
    RANKING_AGGREGATE_UPDATED: SEARCH_SYNC_STREAM_V1,
}


def stream_for(event_type: str) -> str:
    try:
        return DEFAULT_STREAMS[event_type]
    except KeyError:
        raise ValueError(f"no stream for event_type: {event_type}") from None


def dlq_stream(base_stream: str) -> str:
    return f"dlq.{base_stream}.v1"
