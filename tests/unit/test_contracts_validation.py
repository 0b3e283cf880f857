from __future__ import annotations

from datetime import timezone

import pytest

from rankflow.contracts import event_types
from rankflow.contracts.validation import (
    validate_database_change,
    validate_envelope_dict,
    validate_payload,
)
from rankflow.core.errors import FailureClass, ValidationError
from rankflow.core.models import DishRetracted, DishVoted, UserRegistered, parse_event


def _vote(**overrides) -> dict:
    ev = {
        "event_id": "evt-1",
        "timestamp": "2025-05-01T12:00:00Z",
        "event_type": "dish.voted",
        "source": "ranking-api",
        "version": "1.0",
        "trace_id": "trace-1",
        "user_id": "user-1",
        "status": "confirmed",
        "payload": {"category": "nasi-lemak", "dish_id": "dish-a", "rank": 2},
        "metadata": {},
    }
    ev.update(overrides)
    return ev


def test_valid_vote_envelope_parses_to_typed_variant() -> None:
    env = validate_envelope_dict(_vote())
    assert env.timestamp.tzinfo is not None
    assert env.timestamp.utcoffset() == timezone.utc.utcoffset(None)
    assert env.major_version == 1

    ev = parse_event(env)
    assert isinstance(ev, DishVoted)
    assert (ev.category, ev.dish_id, ev.rank) == ("nasi-lemak", "dish-a", 2)


def test_metadata_is_optional() -> None:
    ev = _vote()
    del ev["metadata"]
    assert validate_envelope_dict(ev).metadata == {}


def test_all_errors_are_reported_at_once() -> None:
    ev = _vote(event_id="", status="done", timestamp="yesterday")
    del ev["trace_id"]
    with pytest.raises(ValidationError) as ei:
        validate_envelope_dict(ev)

    errors = ei.value.errors
    assert "trace_id is required" in errors
    assert "event_id must be non-empty string" in errors
    assert any(e.startswith("timestamp") for e in errors)
    assert any(e.startswith("status") for e in errors)
    assert ei.value.failure_class == FailureClass.VALIDATION


def test_missing_event_type_is_rejected() -> None:
    ev = _vote()
    del ev["event_type"]
    with pytest.raises(ValidationError, match="event_type is required"):
        validate_envelope_dict(ev)


def test_unknown_event_type_is_rejected() -> None:
    with pytest.raises(ValidationError, match="not recognized"):
        validate_envelope_dict(_vote(event_type="dish.reviewed"))


def test_null_required_field_is_rejected() -> None:
    with pytest.raises(ValidationError, match="user_id must be non-empty string"):
        validate_envelope_dict(_vote(user_id=None))


def test_extra_envelope_key_is_rejected() -> None:
    with pytest.raises(ValidationError, match="schema is not allowed"):
        validate_envelope_dict(_vote(schema="x"))


def test_extra_payload_key_is_tolerated() -> None:
    payload = {"category": "nasi-lemak", "dish_id": "dish-a", "rank": 2, "note": "crispy"}
    validate_envelope_dict(_vote(payload=payload))


def test_timestamp_requires_timezone() -> None:
    with pytest.raises(ValidationError, match="timezone"):
        validate_envelope_dict(_vote(timestamp="2025-05-01T12:00:00"))


@pytest.mark.parametrize("version", ["1", "1.2", "1.2.3"])
def test_version_forms_accepted(version: str) -> None:
    validate_envelope_dict(_vote(version=version))


@pytest.mark.parametrize("version", ["v1", "1.2.3.4", "", "one"])
def test_malformed_version_rejected(version: str) -> None:
    with pytest.raises(ValidationError, match="version"):
        validate_envelope_dict(_vote(version=version))


def test_unsupported_major_version_rejected() -> None:
    with pytest.raises(ValidationError, match="major 2 is not supported"):
        validate_envelope_dict(_vote(version="2.0"))


@pytest.mark.parametrize("rank", [0, 6, "3", True, 2.5])
def test_rank_must_be_int_within_range(rank) -> None:
    with pytest.raises(ValidationError, match="payload.rank"):
        validate_payload(event_types.DISH_VOTED, {"category": "c", "dish_id": "d", "rank": rank})


def test_payload_must_be_object() -> None:
    with pytest.raises(ValidationError, match="payload must be object"):
        validate_envelope_dict(_vote(payload=["dish-a"]))


def test_non_object_envelope_rejected() -> None:
    with pytest.raises(ValidationError):
        validate_envelope_dict("not an envelope")


def test_retraction_dish_id_optional() -> None:
    env = validate_envelope_dict(_vote(event_type="dish.retracted", payload={"category": "nasi-lemak"}))
    ev = parse_event(env)
    assert isinstance(ev, DishRetracted)
    assert ev.dish_id is None


def test_user_registered_payload() -> None:
    env = validate_envelope_dict(
        _vote(
            event_type="user.registered",
            payload={"email": "ana@example.com", "username": "ana", "email_verified": "true"},
        )
    )
    ev = parse_event(env)
    assert isinstance(ev, UserRegistered)
    assert ev.email_verified is True

    with pytest.raises(ValidationError, match="payload.email"):
        validate_payload(event_types.USER_REGISTERED, {"email": "not-an-email", "username": "ana"})


def test_aggregate_updated_requires_dish_ids() -> None:
    with pytest.raises(ValidationError, match="payload.dish_ids"):
        validate_payload(event_types.RANKING_AGGREGATE_UPDATED, {"dish_ids": []})
    validate_payload(event_types.RANKING_AGGREGATE_UPDATED, {"dish_ids": ["dish-a"]})


def test_database_change_notice() -> None:
    change = validate_database_change("m-1", {"data": {"table": "dishes", "operation": "update", "id": 7}})
    assert change.operation == "UPDATE"
    assert change.record_id == "7"

    with pytest.raises(ValidationError) as ei:
        validate_database_change("m-2", {"data": {"operation": "TRUNCATE"}})
    assert "data.table is required" in ei.value.errors
    assert any(e.startswith("data.operation must be one of") for e in ei.value.errors)


def test_stream_routing() -> None:
    assert event_types.stream_for("dish.voted") == event_types.RANKING_VOTES_STREAM_V1
    assert event_types.stream_for("dish.retracted") == event_types.RANKING_VOTES_STREAM_V1
    assert event_types.stream_for("user.registered") == event_types.USERS_STREAM_V1
    assert event_types.stream_for("ranking.aggregate_updated") == event_types.SEARCH_SYNC_STREAM_V1
    assert event_types.dlq_stream("rankflow.users.v1") == "dlq.rankflow.users.v1.v1"
    with pytest.raises(ValueError):
        event_types.stream_for("dish.reviewed")
