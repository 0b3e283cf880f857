from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from rankflow.contracts import event_types


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    timestamp: datetime
    event_type: str
    source: str
    version: str
    trace_id: str
    user_id: str
    status: str
    payload: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_wire_dict(self) -> dict[str, Any]:
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return {
            "event_id": self.event_id,
            "timestamp": ts.isoformat(),
            "event_type": self.event_type,
            "source": self.source,
            "version": self.version,
            "trace_id": self.trace_id,
            "user_id": self.user_id,
            "status": self.status,
            "payload": dict(self.payload),
            "metadata": dict(self.metadata),
        }

    @property
    def major_version(self) -> int:
        return int(self.version.split(".", 1)[0])


# Typed payload variants. One per recognized event_type, plus UnknownEvent,
# which is never accepted by the validator.


@dataclass(frozen=True)
class UserRegistered:
    envelope: EventEnvelope
    email: str
    username: str
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    sub: Optional[str] = None
    phone_number: Optional[str] = None
    email_verified: bool = False
    picture: Optional[str] = None


@dataclass(frozen=True)
class DishVoted:
    envelope: EventEnvelope
    category: str
    dish_id: str
    rank: int
    restaurant_id: Optional[str] = None


@dataclass(frozen=True)
class DishRetracted:
    envelope: EventEnvelope
    category: str
    dish_id: Optional[str] = None


@dataclass(frozen=True)
class AggregateUpdated:
    envelope: EventEnvelope
    dish_ids: Tuple[str, ...]


@dataclass(frozen=True)
class UnknownEvent:
    envelope: EventEnvelope


PipelineEvent = Union[UserRegistered, DishVoted, DishRetracted, AggregateUpdated, UnknownEvent]


def _opt_str(p: dict[str, Any], k: str) -> Optional[str]:
    v = p.get(k)
    return str(v) if v is not None else None


def parse_event(env: EventEnvelope) -> PipelineEvent:
    """Map a validated envelope to its typed variant.

    Expects `env` to have passed `validate_envelope_dict`; only shapes, not rules, are
    re-checked here.
    """

    p = env.payload
    if env.event_type == event_types.USER_REGISTERED:
        verified = p.get("email_verified", False)
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return UserRegistered(
            envelope=env,
            email=str(p["email"]),
            username=str(p["username"]),
            name=_opt_str(p, "name"),
            given_name=_opt_str(p, "given_name"),
            family_name=_opt_str(p, "family_name"),
            nickname=_opt_str(p, "nickname"),
            sub=_opt_str(p, "sub"),
            phone_number=_opt_str(p, "phone_number"),
            email_verified=bool(verified),
            picture=_opt_str(p, "picture"),
        )
    if env.event_type == event_types.DISH_VOTED:
        return DishVoted(
            envelope=env,
            category=str(p["category"]),
            dish_id=str(p["dish_id"]),
            rank=int(p["rank"]),
            restaurant_id=_opt_str(p, "restaurant_id"),
        )
    if env.event_type == event_types.DISH_RETRACTED:
        return DishRetracted(envelope=env, category=str(p["category"]), dish_id=_opt_str(p, "dish_id"))
    if env.event_type == event_types.RANKING_AGGREGATE_UPDATED:
        return AggregateUpdated(envelope=env, dish_ids=tuple(str(d) for d in p["dish_ids"]))
    return UnknownEvent(envelope=env)


@dataclass(frozen=True)
class Acknowledgement:
    """What a handler returns for a delivery it accepted (applied or safely ignored)."""

    event_id: str
    event_type: str
    outcome: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DatabaseChange:
    """A database-mutation notice delivered through the queue (`data.table`/`data.operation`)."""

    message_id: str
    table: str
    operation: str
    record_id: Optional[str]
    data: Dict[str, Any]
