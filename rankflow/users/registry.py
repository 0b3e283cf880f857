"""user.registered handler.

Stores the confirmed user in the relational store. Processing is idempotent: a user
that already exists (by id or identity-provider subject) is left untouched.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Union

from rankflow.core.errors import ValidationError
from rankflow.core.models import Acknowledgement, UserRegistered
from rankflow.core.postgres import PostgresConnection


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    identity_id: str
    email: str
    name: str
    nickname: str
    phone: str
    email_verified: bool
    profile_image_url: str
    created_at: datetime


class UserStore(Protocol):
    def exists(self, user_id: str, identity_id: str) -> bool:
        ...

    def create(self, user: UserRecord) -> bool:
        """Insert the user; False when a row with the same id already existed."""
        ...


class InMemoryUserStore:
    def __init__(self) -> None:
        self._users: dict[str, UserRecord] = {}
        self._lock = threading.Lock()

    def exists(self, user_id: str, identity_id: str) -> bool:
        with self._lock:
            return user_id in self._users or any(u.identity_id == identity_id for u in self._users.values())

    def create(self, user: UserRecord) -> bool:
        with self._lock:
            if user.user_id in self._users:
                return False
            self._users[user.user_id] = user
            return True

    def get(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)


class PostgresUserStore:
    """PostgreSQL implementation.

    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(128) PRIMARY KEY,
        identity_id VARCHAR(128) NOT NULL UNIQUE,
        email VARCHAR(320) NOT NULL,
        name VARCHAR(256) NOT NULL DEFAULT '',
        nickname VARCHAR(128) NOT NULL DEFAULT '',
        phone VARCHAR(64) NOT NULL DEFAULT '',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        profile_image_url TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    );
    """

    def __init__(self, dsn: Union[str, PostgresConnection]) -> None:
        self._db = dsn if isinstance(dsn, PostgresConnection) else PostgresConnection(dsn)

    def exists(self, user_id: str, identity_id: str) -> bool:
        with self._db.transaction() as cur:
            cur.execute("SELECT 1 FROM users WHERE id = %s OR identity_id = %s LIMIT 1", (user_id, identity_id))
            return cur.fetchone() is not None

    def create(self, user: UserRecord) -> bool:
        with self._db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO users (id, identity_id, email, name, nickname, phone, email_verified,
                                   profile_image_url, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING id
                """,
                (
                    user.user_id,
                    user.identity_id,
                    user.email,
                    user.name,
                    user.nickname,
                    user.phone,
                    user.email_verified,
                    user.profile_image_url,
                    user.created_at,
                    user.created_at,
                ),
            )
            return cur.fetchone() is not None


def display_name(event: UserRegistered) -> str:
    if event.name:
        return event.name
    if event.given_name and event.family_name:
        return f"{event.given_name} {event.family_name}"
    return event.username


class UserRegistry:
    def __init__(self, store: UserStore) -> None:
        self._store = store

    def handle(self, ctx) -> Acknowledgement:
        event = ctx.event
        if not isinstance(event, UserRegistered):
            raise ValidationError([f"event_type is not handled by user registry: {ctx.envelope.event_type}"])
        return self.register(event)

    def register(self, event: UserRegistered) -> Acknowledgement:
        env = event.envelope
        identity_id = event.sub or env.user_id

        if self._store.exists(env.user_id, identity_id):
            logger.info("user_already_registered", extra={"user_id": env.user_id, "event_id": env.event_id})
            return Acknowledgement(event_id=env.event_id, event_type=env.event_type, outcome="duplicate")

        created = self._store.create(
            UserRecord(
                user_id=env.user_id,
                identity_id=identity_id,
                email=event.email,
                name=display_name(event),
                nickname=event.nickname or event.username,
                phone=event.phone_number or "",
                email_verified=event.email_verified,
                profile_image_url=event.picture or "",
                created_at=env.timestamp,
            )
        )
        outcome = "applied" if created else "duplicate"
        logger.info(
            "user_registered",
            extra={"user_id": env.user_id, "event_id": env.event_id, "trace_id": env.trace_id, "outcome": outcome},
        )
        return Acknowledgement(event_id=env.event_id, event_type=env.event_type, outcome=outcome)
