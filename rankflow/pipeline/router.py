from __future__ import annotations

import logging
from typing import Dict, Type

from rankflow.consumer.middleware import EventHandler, ProcessingContext
from rankflow.core.errors import ValidationError
from rankflow.core.models import Acknowledgement


logger = logging.getLogger(__name__)


class EventRouter:
    """Dispatch a validated event to the handler registered for its variant.

    An event whose variant has no route is a validation failure: the stream carried
    something this consumer does not own.
    """

    def __init__(self) -> None:
        self._routes: Dict[type, EventHandler] = {}

    def register(self, variant: Type, handler: EventHandler) -> "EventRouter":
        self._routes[variant] = handler
        return self

    def __call__(self, ctx: ProcessingContext) -> Acknowledgement:
        return self.dispatch(ctx)

    def dispatch(self, ctx: ProcessingContext) -> Acknowledgement:
        handler = self._routes.get(type(ctx.event))
        if handler is None:
            raise ValidationError([f"no handler for event_type: {ctx.envelope.event_type}"])
        ack = handler(ctx)
        logger.debug(
            "event_routed",
            extra={"event_id": ctx.envelope.event_id, "event_type": ctx.envelope.event_type, "outcome": ack.outcome},
        )
        return ack
