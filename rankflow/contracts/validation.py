from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

from rankflow.core.errors import ValidationError
from rankflow.core.models import DatabaseChange, EventEnvelope

from . import event_types


ENVELOPE_REQUIRED_KEYS = {
    "event_id",
    "timestamp",
    "event_type",
    "source",
    "version",
    "trace_id",
    "user_id",
    "status",
    "payload",
}
ENVELOPE_OPTIONAL_KEYS = {"metadata"}

DB_OPERATIONS = {"INSERT", "UPDATE", "DELETE"}

_VERSION_RE = re.compile(r"^\d+(\.\d+){0,2}$")

MIN_RANK = 1
MAX_RANK = 5


class _Errors:
    """Accumulates every problem in one pass; `prefix` scopes nested objects."""

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix
        self.items: list[str] = []

    def add(self, key: str, msg: str) -> None:
        self.items.append(f"{self.prefix}{key} {msg}")

    def extend(self, other: "_Errors") -> None:
        self.items.extend(other.items)


def _check_keys(
    obj: dict[str, Any],
    errs: _Errors,
    *,
    required: set[str],
    optional: Optional[set[str]] = None,
    allow_extra: bool = False,
) -> None:
    optional = optional or set()
    keys = set(obj.keys())
    for k in sorted(required - keys):
        errs.add(k, "is required")
    if not allow_extra:
        for k in sorted(keys - required - optional):
            errs.add(k, "is not allowed")


def _check_str(d: dict[str, Any], k: str, errs: _Errors) -> Optional[str]:
    if k not in d:
        # Missing keys are reported by _check_keys.
        return None
    v = d[k]
    if not isinstance(v, str) or not v.strip():
        errs.add(k, "must be non-empty string")
        return None
    return v


def _check_optional_str(d: dict[str, Any], k: str, errs: _Errors) -> None:
    v = d.get(k)
    if v is not None and not isinstance(v, str):
        errs.add(k, "must be string")


def parse_iso8601(s: str) -> datetime:
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"invalid ISO8601 timestamp: {s}") from e
    if dt.tzinfo is None:
        raise ValueError("timestamp must include timezone")
    return dt


def validate_envelope_dict(event: Any) -> EventEnvelope:
    """Structural validation of the wire envelope.

    Returns the typed envelope, or raises ValidationError listing every missing or
    malformed field. Business rules are not checked here.
    """

    if not isinstance(event, dict):
        raise ValidationError(["envelope must be object"])

    errs = _Errors()
    _check_keys(event, errs, required=ENVELOPE_REQUIRED_KEYS, optional=ENVELOPE_OPTIONAL_KEYS)

    for k in ("event_id", "source", "trace_id", "user_id"):
        _check_str(event, k, errs)

    ts: Optional[datetime] = None
    raw_ts = _check_str(event, "timestamp", errs)
    if raw_ts is not None:
        try:
            ts = parse_iso8601(raw_ts)
        except ValueError as e:
            errs.add("timestamp", str(e))

    status = _check_str(event, "status", errs)
    if status is not None and status not in event_types.EVENT_STATUSES:
        errs.add("status", f"must be one of {sorted(event_types.EVENT_STATUSES)}")

    version = event.get("version")
    if "version" in event:
        if isinstance(version, (int, float)) and not isinstance(version, bool):
            version = str(version)
        if not isinstance(version, str) or not _VERSION_RE.match(version):
            errs.add("version", "must be MAJOR[.MINOR[.PATCH]] string")
            version = None

    event_type = _check_str(event, "event_type", errs)
    if event_type is not None and event_type not in event_types.RECOGNIZED_EVENT_TYPES:
        errs.add("event_type", f"is not recognized: {event_type}")
        event_type = None

    payload = event.get("payload")
    if "payload" in event and not isinstance(payload, dict):
        errs.add("payload", "must be object")
        payload = None

    metadata = event.get("metadata", {})
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        errs.add("metadata", "must be object")
        metadata = {}

    if event_type is not None and isinstance(version, str):
        major = int(version.split(".", 1)[0])
        if major not in event_types.SUPPORTED_MAJOR_VERSIONS[event_type]:
            errs.add("version", f"major {major} is not supported for {event_type}")
        elif isinstance(payload, dict):
            errs.extend(payload_errors(event_type, payload))

    if errs.items:
        raise ValidationError(errs.items)

    return EventEnvelope(
        event_id=event["event_id"],
        timestamp=ts,  # type: ignore[arg-type]
        event_type=event_type,  # type: ignore[arg-type]
        source=event["source"],
        version=version,  # type: ignore[arg-type]
        trace_id=event["trace_id"],
        user_id=event["user_id"],
        status=event["status"],
        payload=payload,  # type: ignore[arg-type]
        metadata=metadata,
    )


def validate_payload(event_type: str, payload: dict[str, Any]) -> None:
    errs = payload_errors(event_type, payload)
    if errs.items:
        raise ValidationError(errs.items)


def payload_errors(event_type: str, payload: dict[str, Any]) -> _Errors:
    # Minor versions may add fields, so unknown payload keys are tolerated.
    errs = _Errors(prefix="payload.")

    if event_type == event_types.USER_REGISTERED:
        _check_keys(payload, errs, required={"email", "username"}, allow_extra=True)
        email = _check_str(payload, "email", errs)
        if email is not None and "@" not in email:
            errs.add("email", "must be an email address")
        _check_str(payload, "username", errs)
        for k in ("name", "given_name", "family_name", "nickname", "sub", "phone_number", "picture"):
            _check_optional_str(payload, k, errs)
        verified = payload.get("email_verified")
        if verified is not None and not isinstance(verified, (bool, str)):
            errs.add("email_verified", "must be bool or 'true'/'false'")
        return errs

    if event_type == event_types.DISH_VOTED:
        _check_keys(payload, errs, required={"category", "dish_id", "rank"}, allow_extra=True)
        _check_str(payload, "category", errs)
        _check_str(payload, "dish_id", errs)
        _check_optional_str(payload, "restaurant_id", errs)
        if "rank" in payload:
            rank = payload["rank"]
            if not isinstance(rank, int) or isinstance(rank, bool):
                errs.add("rank", "must be int")
            elif not (MIN_RANK <= rank <= MAX_RANK):
                errs.add("rank", f"must be {MIN_RANK}..{MAX_RANK}")
        return errs

    if event_type == event_types.DISH_RETRACTED:
        _check_keys(payload, errs, required={"category"}, allow_extra=True)
        _check_str(payload, "category", errs)
        _check_optional_str(payload, "dish_id", errs)
        return errs

    if event_type == event_types.RANKING_AGGREGATE_UPDATED:
        _check_keys(payload, errs, required={"dish_ids"}, allow_extra=True)
        if "dish_ids" in payload:
            ids = payload["dish_ids"]
            if not isinstance(ids, list) or not ids:
                errs.add("dish_ids", "must be non-empty list")
            elif not all(isinstance(i, str) and i.strip() for i in ids):
                errs.add("dish_ids", "must contain non-empty strings")
        return errs

    # For new event types: register the type in event_types, then add its schema here.
    errs.add("event_type", f"has no payload schema: {event_type}")
    return errs


def validate_database_change(message_id: str, body: Any) -> DatabaseChange:
    """Validate a queue record carrying a database-mutation notice."""

    if not isinstance(body, dict):
        raise ValidationError(["body must be object"])
    data = body.get("data")
    if not isinstance(data, dict):
        raise ValidationError(["data is required and must be object"])

    errs = _Errors(prefix="data.")
    _check_keys(data, errs, required={"table", "operation"}, allow_extra=True)
    table = _check_str(data, "table", errs)
    operation = _check_str(data, "operation", errs)
    if operation is not None:
        operation = operation.upper()
        if operation not in DB_OPERATIONS:
            errs.add("operation", f"must be one of {sorted(DB_OPERATIONS)}")
    record_id = data.get("id")
    if record_id is not None and not isinstance(record_id, (str, int)):
        errs.add("id", "must be string or int")
    if errs.items:
        raise ValidationError(errs.items)

    return DatabaseChange(
        message_id=message_id,
        table=table,  # type: ignore[arg-type]
        operation=operation,  # type: ignore[arg-type]
        record_id=str(record_id) if record_id is not None else None,
        data=data,
    )
