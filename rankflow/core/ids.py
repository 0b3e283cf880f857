from __future__ import annotations

import uuid


def new_event_id() -> str:
    return str(uuid.uuid4())


def new_trace_id() -> str:
    return str(uuid.uuid4())


def derived_event_id(cause_event_id: str, event_type: str) -> str:
    """Stable id for an event emitted in reaction to `cause_event_id`.

    Reprocessing the cause re-emits the same id, so consumers drop the copy.
    """
    name = "|".join(["rankflow", event_type, cause_event_id])
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))
