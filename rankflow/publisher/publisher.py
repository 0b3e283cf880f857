"""Event publisher.

Wraps a domain occurrence in the standard envelope and sends it to the bus.

Policy: publishing never fails the domain action that triggered it. The state change
has already committed by the time we publish, so a failed publish is logged with the
full envelope and handed to the dead-letter coordinator for manual replay, and the
caller gets its result back as usual.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from rankflow.contracts import event_types
from rankflow.contracts.validation import validate_envelope_dict
from rankflow.core.errors import FailureClass
from rankflow.core.ids import new_event_id, new_trace_id
from rankflow.core.message_bus import MessageBus, envelope_to_body
from rankflow.core.models import EventEnvelope
from rankflow.deadletter.coordinator import DeadLetterCoordinator


logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYLOAD_VERSION = "1.0"


@dataclass(frozen=True)
class PublishResult:
    envelope: EventEnvelope
    ok: bool
    stream: str = ""
    message_id: Optional[str] = None
    error: Optional[str] = None


class EventPublisher:
    def __init__(
        self,
        bus: MessageBus,
        *,
        source: str,
        stream_for: Callable[[str], str] = event_types.stream_for,
        dead_letters: Optional[DeadLetterCoordinator] = None,
        version: str = PAYLOAD_VERSION,
    ) -> None:
        self._bus = bus
        self.source = source
        self._stream_for = stream_for
        self._dead_letters = dead_letters
        self.version = version

    def build(
        self,
        event_type: str,
        *,
        user_id: str,
        payload: Dict[str, Any],
        trace_id: Optional[str] = None,
        status: str = "confirmed",
        metadata: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> EventEnvelope:
        """Fresh event_id and timestamp unless replaying a stored event (e.g. the outbox)."""

        return EventEnvelope(
            event_id=event_id or new_event_id(),
            timestamp=timestamp or datetime.now(timezone.utc),
            event_type=event_type,
            source=self.source,
            version=self.version,
            trace_id=trace_id or new_trace_id(),
            user_id=user_id,
            status=status,
            payload=dict(payload),
            metadata=dict(metadata or {}),
        )

    def publish(
        self,
        event_type: str,
        *,
        user_id: str,
        payload: Dict[str, Any],
        trace_id: Optional[str] = None,
        status: str = "confirmed",
        metadata: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        dead_letter: bool = True,
    ) -> PublishResult:
        env = self.build(
            event_type,
            user_id=user_id,
            payload=payload,
            trace_id=trace_id,
            status=status,
            metadata=metadata,
            event_id=event_id,
            timestamp=timestamp,
        )
        return self.publish_envelope(env, dead_letter=dead_letter)

    def publish_envelope(self, env: EventEnvelope, *, dead_letter: bool = True) -> PublishResult:
        """Send one envelope. With `dead_letter=False` a failure is only logged; the caller keeps the event."""

        stream = ""
        try:
            # Validate *before* publish so nothing malformed reaches the bus.
            validate_envelope_dict(env.to_wire_dict())
            stream = self._stream_for(env.event_type)
            message_id = self._bus.publish(stream, env)
        except Exception as e:
            self._log_failure(env, e)
            failed = PublishResult(envelope=env, ok=False, stream=stream, error=str(e))
            if dead_letter:
                self.dead_letter(failed)
            return failed

        logger.info(
            "event_published",
            extra={"event_id": env.event_id, "trace_id": env.trace_id, "event_type": env.event_type, "stream": stream},
        )
        return PublishResult(envelope=env, ok=True, stream=stream, message_id=message_id)

    def publish_after(
        self,
        action: Callable[[], T],
        event_type: str,
        *,
        user_id: Union[str, Callable[[T], str]],
        payload: Union[Dict[str, Any], Callable[[T], Dict[str, Any]]],
        trace_id: Optional[str] = None,
        status: str = "confirmed",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run `action`, then publish the event derived from its result.

        Returns the action's result whether or not the publish succeeded. If the action
        raises, nothing is published and the exception propagates.
        """

        result = action()
        try:
            uid = user_id(result) if callable(user_id) else user_id
            body = payload(result) if callable(payload) else payload
        except Exception as e:
            logger.error(
                "event_build_failed",
                extra={"event_type": event_type, "trace_id": trace_id, "error": str(e)},
            )
            return result
        self.publish(event_type, user_id=uid, payload=body, trace_id=trace_id, status=status, metadata=metadata)
        return result

    def dead_letter(self, result: PublishResult) -> None:
        """Hand a failed publish to the dead-letter coordinator for manual replay."""

        if self._dead_letters is None:
            return
        env = result.envelope
        try:
            self._dead_letters.capture(
                FailureClass.PUBLISH,
                body=envelope_to_body(env),
                error=result.error or "publish failed",
                stream=result.stream,
                event_id=env.event_id,
            )
        except Exception as e:
            # The event_publish_failed log line still carries the full envelope for replay.
            logger.error("publish_dead_letter_failed", extra={"event_id": env.event_id, "error": str(e)})

    def _log_failure(self, env: EventEnvelope, err: Exception) -> None:
        logger.error(
            "event_publish_failed",
            extra={
                "event_id": env.event_id,
                "trace_id": env.trace_id,
                "event_type": env.event_type,
                "error": str(err),
                "event": envelope_to_body(env),
            },
        )
