"""Pipeline error taxonomy.

- ValidationError: malformed envelope / payload / unknown event_type. Terminal.
- BusinessRuleError: structurally valid event that breaks a domain rule. Terminal.
- TransientStorageError: storage or downstream unavailability. Retried with backoff.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable


class FailureClass(str, Enum):
    VALIDATION = "validation"
    BUSINESS_RULE = "business-rule"
    TRANSIENT_STORAGE = "transient-storage"
    RETRY_EXHAUSTED = "retry-exhausted"
    PUBLISH = "publish"


class PipelineError(Exception):
    failure_class: FailureClass = FailureClass.TRANSIENT_STORAGE
    retryable: bool = False


class ValidationError(PipelineError, ValueError):
    """Raised with every problem found, not only the first one."""

    failure_class = FailureClass.VALIDATION

    def __init__(self, errors: Iterable[str]):
        self.errors: list[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid event")


class BusinessRuleError(PipelineError):
    failure_class = FailureClass.BUSINESS_RULE

    def __init__(self, message: str, *, rule: str = "") -> None:
        super().__init__(message)
        self.rule = rule


class TransientStorageError(PipelineError):
    failure_class = FailureClass.TRANSIENT_STORAGE
    retryable = True


class PublishError(PipelineError):
    failure_class = FailureClass.PUBLISH
    retryable = True


def classify(exc: BaseException) -> FailureClass:
    """Unknown exceptions are treated as transient: retry is bounded anyway."""
    if isinstance(exc, PipelineError):
        return exc.failure_class
    return FailureClass.TRANSIENT_STORAGE
