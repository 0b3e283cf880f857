from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from rankflow.contracts import event_types


ENVIRONMENTS = ("dev", "staging", "prod")


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0


@dataclass(frozen=True)
class StreamSettings:
    users: str = event_types.USERS_STREAM_V1
    votes: str = event_types.RANKING_VOTES_STREAM_V1
    search_sync: str = event_types.SEARCH_SYNC_STREAM_V1
    consumer_group: str = "rankflow"
    block_ms: int = 5000
    read_count: int = 10


@dataclass(frozen=True)
class Settings:
    env: str
    redis_url: str
    postgres_dsn: Optional[str]
    search_collection: str = "dishes"
    log_level: str = "INFO"
    source: str = "rankflow"
    dedupe_ttl_seconds: int = 7 * 24 * 3600
    streams: StreamSettings = field(default_factory=StreamSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)

    def stream_for(self, event_type: str) -> str:
        if event_type == event_types.USER_REGISTERED:
            return self.streams.users
        if event_type in event_types.VOTE_EVENT_TYPES:
            return self.streams.votes
        if event_type == event_types.RANKING_AGGREGATE_UPDATED:
            return self.streams.search_sync
        return event_types.stream_for(event_type)


def load_settings(path: str | Path = "config/settings.yaml") -> Settings:
    p = Path(path)
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    return settings_from_dict(data, environ=os.environ)


def settings_from_dict(data: Dict[str, Any], *, environ: Optional[Dict[str, str]] = None) -> Settings:
    environ = environ if environ is not None else {}

    redis_section = data.get("redis", {}) or {}
    stream_section = redis_section.get("stream", {}) or {}
    postgres_section = data.get("postgres", {}) or {}
    search_section = data.get("search", {}) or {}
    retry_section = data.get("retry", {}) or {}
    logging_section = data.get("logging", {}) or {}

    # Env overrides (used per deployment stage).
    env = environ.get("RANKFLOW_ENV") or data.get("env", "dev")
    if env not in ENVIRONMENTS:
        raise ValueError(f"env must be one of {ENVIRONMENTS}, got {env!r}")

    redis_url = environ.get("RANKFLOW_REDIS_URL") or redis_section.get("url") or "redis://localhost:6379/0"
    postgres_dsn = environ.get("RANKFLOW_POSTGRES_DSN") or postgres_section.get("dsn") or None

    defaults = StreamSettings()
    streams = StreamSettings(
        users=stream_section.get("users", defaults.users),
        votes=stream_section.get("votes", defaults.votes),
        search_sync=stream_section.get("search_sync", defaults.search_sync),
        consumer_group=stream_section.get("consumer_group", defaults.consumer_group),
        block_ms=int(stream_section.get("block_ms", defaults.block_ms)),
        read_count=int(stream_section.get("read_count", defaults.read_count)),
    )
    retry_defaults = RetrySettings()
    retry = RetrySettings(
        max_attempts=int(retry_section.get("max_attempts", retry_defaults.max_attempts)),
        backoff_base_seconds=float(retry_section.get("backoff_base_seconds", retry_defaults.backoff_base_seconds)),
        backoff_max_seconds=float(retry_section.get("backoff_max_seconds", retry_defaults.backoff_max_seconds)),
    )
    if retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be >= 1")

    return Settings(
        env=env,
        redis_url=redis_url,
        postgres_dsn=postgres_dsn,
        search_collection=environ.get("RANKFLOW_SEARCH_COLLECTION") or search_section.get("collection", "dishes"),
        log_level=(environ.get("RANKFLOW_LOG_LEVEL") or logging_section.get("level", "INFO")).upper(),
        source=data.get("source", "rankflow"),
        dedupe_ttl_seconds=int(redis_section.get("dedupe_ttl_seconds", 7 * 24 * 3600)),
        streams=streams,
        retry=retry,
    )
