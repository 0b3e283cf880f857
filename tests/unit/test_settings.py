from __future__ import annotations

from pathlib import Path

import pytest

from rankflow.contracts import event_types
from rankflow.core.settings import load_settings, settings_from_dict


CONFIG = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"


def test_repo_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    for k in ("RANKFLOW_ENV", "RANKFLOW_REDIS_URL", "RANKFLOW_POSTGRES_DSN", "RANKFLOW_LOG_LEVEL", "RANKFLOW_SEARCH_COLLECTION"):
        monkeypatch.delenv(k, raising=False)
    s = load_settings(CONFIG)
    assert s.env == "dev"
    assert s.postgres_dsn is None
    assert s.streams.votes == event_types.RANKING_VOTES_STREAM_V1
    assert s.retry.max_attempts == 5
    assert s.search_collection == "dishes"


def test_env_overrides() -> None:
    s = settings_from_dict(
        {"env": "dev", "logging": {"level": "info"}},
        environ={
            "RANKFLOW_ENV": "prod",
            "RANKFLOW_REDIS_URL": "redis://cache:6379/1",
            "RANKFLOW_POSTGRES_DSN": "postgresql://rank@db/rank",
            "RANKFLOW_LOG_LEVEL": "debug",
            "RANKFLOW_SEARCH_COLLECTION": "dishes_v2",
        },
    )
    assert s.env == "prod"
    assert s.redis_url == "redis://cache:6379/1"
    assert s.postgres_dsn == "postgresql://rank@db/rank"
    assert s.log_level == "DEBUG"
    assert s.search_collection == "dishes_v2"


def test_stream_overrides_route_events() -> None:
    s = settings_from_dict({"redis": {"stream": {"votes": "votes.custom"}}})
    assert s.stream_for("dish.voted") == "votes.custom"
    assert s.stream_for("dish.retracted") == "votes.custom"
    assert s.stream_for("user.registered") == event_types.USERS_STREAM_V1


def test_unknown_env_rejected() -> None:
    with pytest.raises(ValueError):
        settings_from_dict({"env": "qa"})


def test_retry_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        settings_from_dict({"retry": {"max_attempts": 0}})
