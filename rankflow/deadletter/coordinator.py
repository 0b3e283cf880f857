"""Dead-letter / retry coordinator.

Failed deliveries are classified by `rankflow.core.errors.FailureClass`:

- transient-storage: retried in-process with bounded exponential backoff; when the
  attempts run out the delivery is dead-lettered as retry-exhausted.
- validation / business-rule: terminal, dead-lettered on first failure.
- publish: producer-side failures, kept so the event can be replayed by hand.

Dead letters are never put back on a processing stream by this module.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, TypeVar

from rankflow.contracts.event_types import dlq_stream
from rankflow.core.errors import FailureClass, PipelineError, TransientStorageError, classify


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DeadLetter:
    failure_class: FailureClass
    error: str
    body: str
    stream: str = ""
    delivery_id: str = ""
    event_id: Optional[str] = None
    attempts: int = 1
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_fields(self) -> dict[str, str]:
        return {
            "failure_class": self.failure_class.value,
            "error": self.error,
            "event": self.body,
            "original_stream": self.stream,
            "original_message_id": self.delivery_id,
            "event_id": self.event_id or "",
            "attempts": str(self.attempts),
            "failed_at": self.failed_at.isoformat(),
        }

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "DeadLetter":
        return cls(
            failure_class=FailureClass(fields["failure_class"]),
            error=fields.get("error", ""),
            body=fields.get("event", ""),
            stream=fields.get("original_stream", ""),
            delivery_id=fields.get("original_message_id", ""),
            event_id=fields.get("event_id") or None,
            attempts=int(fields.get("attempts", "1")),
            failed_at=datetime.fromisoformat(fields["failed_at"]),
        )


class DeadLetterSink(Protocol):
    """Durable holding area for deliveries that cannot be processed automatically."""

    def put(self, letter: DeadLetter) -> None:
        ...

    def list(self, *, limit: int = 100) -> list[DeadLetter]:
        ...


class InMemoryDeadLetterSink:
    def __init__(self) -> None:
        self._letters: list[DeadLetter] = []
        self._lock = threading.Lock()

    def put(self, letter: DeadLetter) -> None:
        with self._lock:
            self._letters.append(letter)

    def list(self, *, limit: int = 100) -> list[DeadLetter]:
        with self._lock:
            return list(reversed(self._letters))[:limit]

    def by_class(self, failure_class: FailureClass) -> list[DeadLetter]:
        with self._lock:
            return [d for d in self._letters if d.failure_class == failure_class]


class RedisDeadLetterSink:
    """One `dlq.<stream>.v1` Redis stream per origin stream."""

    def __init__(self, redis_client, *, streams: list[str], fallback_stream: str = "rankflow.unrouted"):
        self._client = redis_client
        self._streams = list(streams)
        self._fallback = fallback_stream

    def put(self, letter: DeadLetter) -> None:
        base = letter.stream or self._fallback
        try:
            self._client.xadd(dlq_stream(base), letter.to_fields())
        except Exception as e:
            # Nothing else can hold the letter; keep it in the log for manual recovery.
            logger.error(
                "dead_letter_write_failed",
                extra={"error": str(e), "event": letter.body, "failure_class": letter.failure_class.value},
            )
            raise TransientStorageError(f"dead-letter write failed: {e}") from e

    def list(self, *, limit: int = 100) -> list[DeadLetter]:
        out: list[DeadLetter] = []
        for base in self._streams + [self._fallback]:
            for _msg_id, fields in self._client.xrevrange(dlq_stream(base), count=limit):
                out.append(DeadLetter.from_fields(dict(fields)))
        out.sort(key=lambda d: d.failed_at, reverse=True)
        return out[:limit]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1` (attempts are 1-based)."""
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


class DeadLetteredError(PipelineError):
    """Raised by `DeadLetterCoordinator.run` once a delivery has been dead-lettered."""

    def __init__(self, letter: DeadLetter, cause: BaseException) -> None:
        super().__init__(f"{letter.failure_class.value}: {letter.error}")
        self.letter = letter
        self.cause = cause
        self.failure_class = letter.failure_class


def _body_text(body: Any) -> str:
    if isinstance(body, str):
        return body
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return json.dumps(body, ensure_ascii=False, default=str)


class DeadLetterCoordinator:
    def __init__(
        self,
        sink: DeadLetterSink,
        *,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sink = sink
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def capture(
        self,
        failure_class: FailureClass,
        *,
        body: Any,
        error: str,
        stream: str = "",
        delivery_id: str = "",
        event_id: Optional[str] = None,
        attempts: int = 1,
    ) -> DeadLetter:
        letter = DeadLetter(
            failure_class=failure_class,
            error=error,
            body=_body_text(body),
            stream=stream,
            delivery_id=delivery_id,
            event_id=event_id,
            attempts=attempts,
        )
        self.sink.put(letter)
        logger.warning(
            "dead_lettered",
            extra={
                "failure_class": failure_class.value,
                "error": error,
                "stream": stream,
                "delivery_id": delivery_id,
                "event_id": event_id,
                "attempts": attempts,
            },
        )
        return letter

    def run(
        self,
        fn: Callable[[], T],
        *,
        body: Any,
        stream: str = "",
        delivery_id: str = "",
        event_id: Optional[str] = None,
    ) -> T:
        """Call `fn`, retrying transient failures; dead-letter anything that does not succeed."""

        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                failure_class = classify(e)
                if failure_class != FailureClass.TRANSIENT_STORAGE:
                    letter = self.capture(
                        failure_class,
                        body=body,
                        error=str(e),
                        stream=stream,
                        delivery_id=delivery_id,
                        event_id=event_id,
                        attempts=attempt,
                    )
                    raise DeadLetteredError(letter, e) from e

                if attempt >= self.policy.max_attempts:
                    letter = self.capture(
                        FailureClass.RETRY_EXHAUSTED,
                        body=body,
                        error=f"handler_failed_after_{attempt}: {e}",
                        stream=stream,
                        delivery_id=delivery_id,
                        event_id=event_id,
                        attempts=attempt,
                    )
                    raise DeadLetteredError(letter, e) from e

                delay = self.policy.delay(attempt)
                logger.info(
                    "transient_failure_retry",
                    extra={"event_id": event_id, "attempt": attempt, "delay_seconds": delay, "error": str(e)},
                )
                self._sleep(delay)
                attempt += 1
