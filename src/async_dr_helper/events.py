from __future__ import annotations

from typing import Callable

import structlog

from .models import WorkflowEvent

logger = structlog.get_logger(__name__)

EventSink = Callable[[WorkflowEvent], None]


class EventReporter:
    """Log workflow progress and forward it to the UI event channel."""

    def __init__(self, workflow: str, sink: EventSink | None = None) -> None:
        self.workflow = workflow
        self.sink = sink

    def info(self, message: str, *, cluster: str | None = None) -> None:
        self._emit("info", message, cluster)

    def warning(self, message: str, *, cluster: str | None = None) -> None:
        self._emit("warning", message, cluster)

    def error(self, message: str, *, cluster: str | None = None) -> None:
        self._emit("error", message, cluster)

    def _emit(self, level: str, message: str, cluster: str | None) -> None:
        getattr(logger, level)(message, workflow=self.workflow, cluster=cluster)
        if self.sink is not None:
            self.sink(WorkflowEvent(workflow=self.workflow, level=level, message=message, cluster=cluster))
