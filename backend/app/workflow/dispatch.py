"""Background dispatch of record change events to workflow runs."""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from flask import Flask

from ..utils.run_log import persist_run_log_in_app
from .events import EventDispatcher, EventHandler, RecordChangeEvent
from .runner import WorkflowEvaluator, WorkflowSnapshot

logger = logging.getLogger(__name__)

EXTENSION_KEY = "workflow_runtime"

EvaluatorFactory = Callable[[Flask], WorkflowEvaluator]


def log_broadcast(channel: str, payload: dict[str, Any]) -> None:
    """Publish a BROADCAST action to the application log."""

    logger.info("Broadcast on %s: %s", channel, json.dumps(payload, default=str))


def app_context_wrapper(app: Flask) -> Callable[[Callable[[], Any]], Callable[[], Any]]:
    def _wrap(call: Callable[[], Any]) -> Callable[[], Any]:
        def _run() -> Any:
            with app.app_context():
                return call()

        return _run

    return _wrap


class WorkflowRuntime:
    """Subscribes to record changes and runs matching workflows per event.

    Each matching workflow is snapshotted when the event arrives and executed
    as an independent run, either on the worker pool or inline.
    """

    def __init__(
        self,
        app: Flask,
        evaluator_factory: EvaluatorFactory,
        *,
        executor: ThreadPoolExecutor | None = None,
        broadcaster: Callable[[str, dict[str, Any]], None] | None = None,
    ) -> None:
        self.app = app
        self.executor = executor
        self.broadcaster = broadcaster or log_broadcast
        self._evaluator_factory = evaluator_factory
        self.dispatcher = EventDispatcher(executor=executor, dead_letter=self._dead_letter)
        self.dispatcher.subscribe(self.handle_event)

    def handle_event(self, event: RecordChangeEvent) -> None:
        with self.app.app_context():
            snapshots = self._evaluator_factory(self.app).matching_workflows(event)
        for snapshot in snapshots:
            if self.executor is None:
                self._run(snapshot, event)
            else:
                self.executor.submit(self._run, snapshot, event)

    def _run(self, snapshot: WorkflowSnapshot, event: RecordChangeEvent) -> None:
        try:
            with self.app.app_context():
                self._evaluator_factory(self.app).run(snapshot, event)
        except Exception as exc:
            logger.exception("Workflow %s failed for event %s", snapshot.name, event.event_id)
            persist_run_log_in_app(
                self.app,
                "workflow",
                f"workflow {snapshot.name} execution for event {event.event_id} failed: {exc}",
            )

    def _dead_letter(
        self, event: RecordChangeEvent, handler: EventHandler, exc: BaseException
    ) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        persist_run_log_in_app(
            self.app,
            "workflow",
            f"event {event.event_id} ({event.operation} on {event.table_name}) "
            f"could not be delivered to {name}: {exc}",
        )

    def shutdown(self, wait: bool = False) -> None:
        """Stop reacting to record changes and release the worker pool."""

        self.dispatcher.unsubscribe(self.handle_event)
        if self.executor is not None:
            self.executor.shutdown(wait=wait)


def init_workflow_runtime(app: Flask, evaluator_factory: EvaluatorFactory) -> WorkflowRuntime:
    """Create the runtime for ``app`` according to ``WORKFLOW_DISPATCH_MODE``."""

    mode = (app.config.get("WORKFLOW_DISPATCH_MODE") or "thread").lower()
    if mode not in ("thread", "inline"):
        raise ValueError(f"unsupported WORKFLOW_DISPATCH_MODE {mode!r}")

    executor = None
    if mode == "thread":
        executor = ThreadPoolExecutor(
            max_workers=int(app.config.get("WORKFLOW_MAX_WORKERS", 4)),
            thread_name_prefix="workflow",
        )
    runtime = WorkflowRuntime(app, evaluator_factory, executor=executor)
    app.extensions[EXTENSION_KEY] = runtime
    return runtime


def get_runtime(app: Flask) -> WorkflowRuntime | None:
    return app.extensions.get(EXTENSION_KEY)
