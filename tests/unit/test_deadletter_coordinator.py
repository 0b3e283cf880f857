from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import redis

from rankflow.core.errors import BusinessRuleError, FailureClass, TransientStorageError, ValidationError
from rankflow.deadletter.coordinator import (
    DeadLetter,
    DeadLetterCoordinator,
    DeadLetteredError,
    InMemoryDeadLetterSink,
    RedisDeadLetterSink,
    RetryPolicy,
)


class _FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.streams: dict[str, list[tuple[str, dict]]] = {}

    def xadd(self, name: str, fields: dict) -> str:
        if self.fail:
            raise redis.ConnectionError("connection refused")
        items = self.streams.setdefault(name, [])
        msg_id = f"{len(items) + 1}-0"
        items.append((msg_id, dict(fields)))
        return msg_id

    def xrevrange(self, name: str, count: int = 100) -> list[tuple[str, dict]]:
        return list(reversed(self.streams.get(name, [])))[:count]


def _coordinator(max_attempts: int = 3):
    sink = InMemoryDeadLetterSink()
    sleeps: list[float] = []
    coord = DeadLetterCoordinator(
        sink,
        policy=RetryPolicy(max_attempts=max_attempts, backoff_base_seconds=0.5, backoff_max_seconds=1.5),
        sleep=sleeps.append,
    )
    return coord, sink, sleeps


def test_backoff_is_exponential_and_bounded() -> None:
    p = RetryPolicy(max_attempts=6, backoff_base_seconds=0.5, backoff_max_seconds=3.0)
    assert [p.delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_success_returns_value_without_dead_letter() -> None:
    coord, sink, sleeps = _coordinator()
    assert coord.run(lambda: 42, body="{}", stream="s") == 42
    assert sink.list() == []
    assert sleeps == []


def test_transient_failure_is_retried_then_succeeds() -> None:
    coord, sink, sleeps = _coordinator()
    calls = {"n": 0}

    def fn() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientStorageError("db busy")
        return "ok"

    assert coord.run(fn, body="{}", stream="s") == "ok"
    assert calls["n"] == 3
    assert sleeps == [0.5, 1.0]
    assert sink.list() == []


def test_retry_exhaustion_dead_letters_with_attempt_count() -> None:
    coord, sink, sleeps = _coordinator(max_attempts=3)

    def fn() -> None:
        raise TransientStorageError("db down")

    with pytest.raises(DeadLetteredError) as ei:
        coord.run(fn, body='{"event_id":"e1"}', stream="rankflow.ranking.votes.v1", delivery_id="1-0", event_id="e1")

    letter = ei.value.letter
    assert letter.failure_class == FailureClass.RETRY_EXHAUSTED
    assert letter.attempts == 3
    assert letter.error.startswith("handler_failed_after_3")
    assert letter.event_id == "e1"
    assert sleeps == [0.5, 1.0]
    assert sink.list() == [letter]


@pytest.mark.parametrize(
    "exc, failure_class",
    [
        (ValidationError(["payload.rank must be int"]), FailureClass.VALIDATION),
        (BusinessRuleError("dish does not exist: x", rule="dish_exists"), FailureClass.BUSINESS_RULE),
    ],
)
def test_terminal_failures_are_not_retried(exc: Exception, failure_class: FailureClass) -> None:
    coord, sink, sleeps = _coordinator()

    def fn() -> None:
        raise exc

    with pytest.raises(DeadLetteredError):
        coord.run(fn, body="{}", stream="s")
    assert sleeps == []
    assert [d.failure_class for d in sink.list()] == [failure_class]


def test_unknown_exceptions_count_as_transient() -> None:
    coord, sink, sleeps = _coordinator(max_attempts=2)

    def fn() -> None:
        raise KeyError("boom")

    with pytest.raises(DeadLetteredError):
        coord.run(fn, body="{}")
    assert len(sleeps) == 1
    assert sink.list()[0].failure_class == FailureClass.RETRY_EXHAUSTED


def test_capture_serializes_dict_body() -> None:
    coord, sink, _ = _coordinator()
    letter = coord.capture(FailureClass.VALIDATION, body={"a": 1}, error="bad")
    assert letter.body == '{"a": 1}'


def test_redis_sink_writes_per_stream_dlq_and_lists_newest_first() -> None:
    client = _FakeRedis()
    sink = RedisDeadLetterSink(client, streams=["rankflow.users.v1"])
    t0 = datetime(2025, 5, 1, tzinfo=timezone.utc)

    sink.put(DeadLetter(FailureClass.VALIDATION, "first", "{}", stream="rankflow.users.v1", failed_at=t0))
    sink.put(DeadLetter(FailureClass.PUBLISH, "second", "{}", failed_at=t0 + timedelta(seconds=1)))

    assert "dlq.rankflow.users.v1.v1" in client.streams
    assert "dlq.rankflow.unrouted.v1" in client.streams
    letters = sink.list()
    assert [d.error for d in letters] == ["second", "first"]
    assert letters[0].failure_class == FailureClass.PUBLISH


def test_redis_sink_failure_surfaces_as_transient() -> None:
    sink = RedisDeadLetterSink(_FakeRedis(fail=True), streams=[])
    coord = DeadLetterCoordinator(sink)
    with pytest.raises(TransientStorageError):
        coord.capture(FailureClass.VALIDATION, body="{}", error="bad", stream="s")


def test_dead_letter_fields_round_trip() -> None:
    letter = DeadLetter(failure_class=FailureClass.BUSINESS_RULE, error="x", body="{}", stream="s", event_id="e")
    assert DeadLetter.from_fields(letter.to_fields()) == letter
