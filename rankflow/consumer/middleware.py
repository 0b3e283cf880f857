"""Input-validation middleware for bus and queue deliveries.

Runs ahead of business handlers: deserialize, validate the envelope, attach the typed
event to a ProcessingContext, then call the handler through the dead-letter
coordinator. Invalid deliveries are dead-lettered at once; retrying the same bytes
cannot make them valid.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from rankflow.contracts.validation import validate_database_change, validate_envelope_dict
from rankflow.core.errors import FailureClass, TransientStorageError, ValidationError
from rankflow.core.idempotency import IdempotencyStore
from rankflow.core.models import (
    Acknowledgement,
    DatabaseChange,
    EventEnvelope,
    PipelineEvent,
    UnknownEvent,
    parse_event,
)
from rankflow.deadletter.coordinator import DeadLetterCoordinator, DeadLetteredError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingContext:
    envelope: EventEnvelope
    event: PipelineEvent
    stream: str = ""
    delivery_id: str = ""
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[ProcessingContext], Acknowledgement]
ChangeHandler = Callable[[DatabaseChange], Acknowledgement]


@dataclass(frozen=True)
class QueueRecord:
    message_id: str
    body: Union[str, bytes, dict]

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QueueRecord":
        return cls(message_id=str(raw.get("messageId") or raw.get("message_id") or ""), body=raw.get("body", ""))


@dataclass(frozen=True)
class DeliveryResult:
    delivery_id: str
    ok: bool
    index: int = 0
    ack: Optional[Acknowledgement] = None
    failure_class: Optional[FailureClass] = None
    error: Optional[str] = None
    # True only when the failure could not even be dead-lettered; the substrate must redeliver.
    redeliver: bool = False


@dataclass
class BatchResult:
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[DeliveryResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[DeliveryResult]:
        return [r for r in self.results if not r.ok]

    @property
    def batch_item_failures(self) -> list[dict[str, str]]:
        """Partial-batch response: only the records the queue should deliver again."""
        return [{"itemIdentifier": r.delivery_id} for r in self.results if r.redeliver]

    def errors_by_index(self) -> dict[int, str]:
        return {r.index: r.error or "" for r in self.results if not r.ok}


def _load_json(body: Union[str, bytes, dict]) -> Any:
    if isinstance(body, dict):
        return body
    try:
        return json.loads(body)
    except (TypeError, ValueError) as e:
        raise ValidationError([f"body is not valid JSON: {e}"]) from e


def decode_delivery(body: Union[str, bytes, dict]) -> EventEnvelope:
    """Deserialize and structurally validate one delivery carrying an event envelope."""
    return validate_envelope_dict(_load_json(body))


def decode_record(record: QueueRecord) -> Union[EventEnvelope, DatabaseChange]:
    """Queue bodies carry either a full envelope or a `data.table`/`data.operation` notice."""

    raw = _load_json(record.body)
    if isinstance(raw, dict) and "event_type" not in raw and "data" in raw:
        return validate_database_change(record.message_id, raw)
    return validate_envelope_dict(raw)


class ValidationMiddleware:
    def __init__(
        self,
        handler: EventHandler,
        dead_letters: DeadLetterCoordinator,
        *,
        stream: str = "",
        change_handler: Optional[ChangeHandler] = None,
        idempotency: Optional[IdempotencyStore] = None,
        dedupe_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.handler = handler
        self.dead_letters = dead_letters
        self.stream = stream
        self.change_handler = change_handler
        self.idempotency = idempotency
        self.dedupe_ttl_seconds = dedupe_ttl_seconds

    def process(self, body: Union[str, bytes, dict], *, delivery_id: str = "", index: int = 0) -> DeliveryResult:
        return self.process_record(QueueRecord(message_id=delivery_id, body=body), index=index)

    def process_record(self, record: QueueRecord, *, index: int = 0) -> DeliveryResult:
        try:
            decoded = decode_record(record)
            if isinstance(decoded, DatabaseChange) and self.change_handler is None:
                raise ValidationError([f"unsupported delivery: database change on {decoded.table}"])
            if isinstance(decoded, EventEnvelope) and isinstance(parse_event(decoded), UnknownEvent):
                raise ValidationError([f"event_type is not recognized: {decoded.event_type}"])
        except ValidationError as e:
            return self._reject(record, index, e)

        if isinstance(decoded, DatabaseChange):
            return self._run(record, index, event_id=None, fn=lambda: self.change_handler(decoded))  # type: ignore[misc]

        env = decoded
        prior = self.idempotency.first_outcome(env.event_id) if self.idempotency is not None else None
        if prior is not None:
            logger.debug("duplicate_delivery_skipped", extra={"event_id": env.event_id, "first_outcome": prior})
            ack = Acknowledgement(
                event_id=env.event_id,
                event_type=env.event_type,
                outcome="duplicate",
                detail={"first_outcome": prior},
            )
            return DeliveryResult(delivery_id=record.message_id, ok=True, index=index, ack=ack)

        ctx = ProcessingContext(envelope=env, event=parse_event(env), stream=self.stream, delivery_id=record.message_id)
        result = self._run(record, index, event_id=env.event_id, fn=lambda: self.handler(ctx))
        if result.ok and self.idempotency is not None:
            outcome = result.ack.outcome if result.ack is not None else "processed"
            if not self.idempotency.mark(env.event_id, ttl_seconds=self.dedupe_ttl_seconds, outcome=outcome):
                logger.info("concurrent_duplicate_handled", extra={"event_id": env.event_id, "stream": self.stream})
        return result

    def process_batch(self, records: Iterable[Union[QueueRecord, dict]]) -> BatchResult:
        """Each record succeeds or fails on its own; one bad record never fails the batch."""

        batch = BatchResult()
        for i, rec in enumerate(records):
            record = rec if isinstance(rec, QueueRecord) else QueueRecord.from_dict(rec)
            batch.results.append(self.process_record(record, index=i))
        failed = batch.failed
        if failed:
            logger.warning(
                "batch_partial_failure",
                extra={"failed": len(failed), "total": len(batch.results), "errors": batch.errors_by_index()},
            )
        return batch

    def _reject(self, record: QueueRecord, index: int, err: ValidationError) -> DeliveryResult:
        try:
            self.dead_letters.capture(
                FailureClass.VALIDATION,
                body=record.body,
                error=str(err),
                stream=self.stream,
                delivery_id=record.message_id,
            )
        except TransientStorageError as e:
            return DeliveryResult(
                delivery_id=record.message_id,
                ok=False,
                index=index,
                failure_class=FailureClass.VALIDATION,
                error=f"{err}; dead-letter unavailable: {e}",
                redeliver=True,
            )
        return DeliveryResult(
            delivery_id=record.message_id,
            ok=False,
            index=index,
            failure_class=FailureClass.VALIDATION,
            error=str(err),
        )

    def _run(
        self,
        record: QueueRecord,
        index: int,
        *,
        event_id: Optional[str],
        fn: Callable[[], Acknowledgement],
    ) -> DeliveryResult:
        try:
            ack = self.dead_letters.run(
                fn,
                body=record.body,
                stream=self.stream,
                delivery_id=record.message_id,
                event_id=event_id,
            )
        except DeadLetteredError as e:
            return DeliveryResult(
                delivery_id=record.message_id,
                ok=False,
                index=index,
                failure_class=e.letter.failure_class,
                error=e.letter.error,
            )
        except TransientStorageError as e:
            # The dead-letter sink itself failed.
            return DeliveryResult(
                delivery_id=record.message_id,
                ok=False,
                index=index,
                failure_class=FailureClass.TRANSIENT_STORAGE,
                error=str(e),
                redeliver=True,
            )
        return DeliveryResult(delivery_id=record.message_id, ok=True, index=index, ack=ack)
