"""Record change events and their non-blocking delivery to subscribers."""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
MANUAL = "MANUAL"


@dataclass(frozen=True)
class RecordChangeEvent:
    """A committed mutation of one record in a custom table."""

    table_id: int | None
    table_name: str
    operation: str
    record_id: str | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    actor: str | None = None
    depth: int = 0
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def current(self) -> dict[str, Any]:
        """Current field values of the record, the before-image for deletes."""

        if self.after is not None:
            return self.after
        return self.before or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "tableId": self.table_id,
            "tableName": self.table_name,
            "operation": self.operation,
            "recordId": self.record_id,
            "actor": self.actor,
            "depth": self.depth,
            "occurredAt": self.occurred_at.isoformat(),
        }


EventHandler = Callable[[RecordChangeEvent], Any]
DeadLetterHook = Callable[[RecordChangeEvent, EventHandler, BaseException], None]


class EventDispatcher:
    """Deliver record change events to subscribers without blocking writers.

    Delivery is at-least-once best effort: a failing subscriber never affects
    the write that produced the event and is reported to the dead-letter hook.
    """

    def __init__(
        self,
        executor: Executor | None = None,
        dead_letter: DeadLetterHook | None = None,
    ) -> None:
        self._executor = executor
        self._dead_letter = dead_letter
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> EventHandler:
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: RecordChangeEvent) -> None:
        for handler in list(self._handlers):
            if self._executor is None:
                self._deliver(handler, event)
                continue
            try:
                self._executor.submit(self._deliver, handler, event)
            except RuntimeError as exc:
                logger.error("Could not schedule delivery of event %s: %s", event.event_id, exc)
                self._report(handler, event, exc)

    def _deliver(self, handler: EventHandler, event: RecordChangeEvent) -> None:
        try:
            handler(event)
        except Exception as exc:
            logger.exception(
                "Subscriber failed for %s on %s (event %s)",
                event.operation,
                event.table_name,
                event.event_id,
            )
            self._report(handler, event, exc)

    def _report(self, handler: EventHandler, event: RecordChangeEvent, exc: BaseException) -> None:
        if self._dead_letter is None:
            return
        try:
            self._dead_letter(event, handler, exc)
        except Exception:
            logger.exception("Dead-letter hook failed for event %s", event.event_id)
