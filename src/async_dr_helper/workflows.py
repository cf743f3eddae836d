"""Workflow entry points and the runner that executes them off the UI thread.

A workflow receives an immutable :class:`AppContext` snapshot taken when it
starts, so configuration edits never change the clusters an in-flight
workflow talks to. Progress is posted to a queue that the UI drains.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import queue
import threading
from typing import Any, Callable, Iterable

import structlog

from .config import AppConfig, ReplicationSettings
from .events import EventReporter
from .executor import CommandExecutor
from .failover import FailoverOrchestrator, FailoverState
from .k8s import ClusterHandle
from .mirror import MirrorStatusTracker
from .models import CheckResult, MirrorStatusRow, WorkflowEvent
from .reconciler import ResourceReconciler, pool_and_storage_class
from .verify import run_verification

logger = structlog.get_logger(__name__)

CLUSTER_NAMES = ("primary", "secondary")


class ConfigurationLockedError(RuntimeError):
    """Raised when configuration is edited while a workflow is running."""


class WorkflowBusyError(RuntimeError):
    """Raised when a workflow is started while another one is still running."""


class ClusterNotConfiguredError(RuntimeError):
    """Raised when a workflow needs a cluster that has not been connected."""


@dataclass(frozen=True)
class AppContext:
    config: AppConfig
    settings: ReplicationSettings
    primary: ClusterHandle | None = None
    secondary: ClusterHandle | None = None

    def with_cluster(self, handle: ClusterHandle) -> AppContext:
        if handle.name == "primary":
            return replace(self, primary=handle)
        if handle.name == "secondary":
            return replace(self, secondary=handle)
        raise ValueError(f"unknown cluster name '{handle.name}'; expected one of {', '.join(CLUSTER_NAMES)}")

    def with_settings(self, settings: ReplicationSettings) -> AppContext:
        return replace(self, settings=settings)

    def cluster(self, name: str) -> ClusterHandle:
        if name not in CLUSTER_NAMES:
            raise ValueError(f"unknown cluster name '{name}'; expected one of {', '.join(CLUSTER_NAMES)}")
        handle = self.primary if name == "primary" else self.secondary
        if handle is None:
            raise ClusterNotConfiguredError(f"The {name} cluster is not connected. Configure its kubeconfig first.")
        return handle

    def require_clusters(self) -> tuple[ClusterHandle, ClusterHandle]:
        return self.cluster("primary"), self.cluster("secondary")


Workflow = Callable[[AppContext, EventReporter, threading.Event], Any]


class WorkflowRunner:
    """Run at most one workflow thread at a time and collect its events and result."""

    def __init__(self, context: AppContext) -> None:
        self._context = context
        self._events: queue.Queue[WorkflowEvent] = queue.Queue()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._cancel_event = threading.Event()
        self._results: dict[str, Any] = {}
        self._errors: dict[str, Exception] = {}

    @property
    def context(self) -> AppContext:
        return self._context

    def is_busy(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def update_context(self, update: Callable[[AppContext], AppContext]) -> AppContext:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise ConfigurationLockedError(
                    "Configuration cannot change while a workflow is running. Wait for it to finish or cancel it."
                )
            self._context = update(self._context)
            return self._context

    def start(self, name: str, workflow: Workflow) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise WorkflowBusyError(f"Workflow '{self._thread.name}' is still running.")
            self._cancel_event = threading.Event()
            self._results.pop(name, None)
            self._errors.pop(name, None)
            reporter = EventReporter(name, sink=self._events.put)
            self._thread = threading.Thread(
                target=self._run,
                name=name,
                args=(name, workflow, self._context, reporter, self._cancel_event),
                daemon=True,
            )
            self._thread.start()
        logger.info("workflow started", workflow=name)

    def cancel(self) -> None:
        self._cancel_event.set()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the running workflow; returns False while it is still alive."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def drain_events(self) -> list[WorkflowEvent]:
        events: list[WorkflowEvent] = []
        while True:
            try:
                events.append(self._events.get_nowait())
            except queue.Empty:
                return events

    def take_result(self, name: str) -> Any:
        with self._lock:
            return self._results.pop(name, None)

    def error_for(self, name: str) -> Exception | None:
        with self._lock:
            return self._errors.get(name)

    def _run(
        self,
        name: str,
        workflow: Workflow,
        context: AppContext,
        reporter: EventReporter,
        cancel_event: threading.Event,
    ) -> None:
        try:
            result = workflow(context, reporter, cancel_event)
        except Exception as error:  # pylint: disable=broad-except
            logger.exception("workflow failed", workflow=name)
            reporter.error(f"{name} failed: {error}")
            with self._lock:
                self._errors[name] = error
            return
        with self._lock:
            self._results[name] = result
        logger.info("workflow finished", workflow=name)


def _executor(context: AppContext) -> CommandExecutor:
    return CommandExecutor(timeout_seconds=context.config.exec_timeout_seconds)


def install_workflow(context: AppContext, reporter: EventReporter, cancel_event: threading.Event) -> None:
    primary, secondary = context.require_clusters()
    reconciler = ResourceReconciler(
        reporter=reporter,
        interval_seconds=context.config.poll_interval_seconds,
        max_attempts=context.config.poll_max_attempts,
        cancel_event=cancel_event,
    )
    reconciler.run_install(primary, secondary, context.settings)


def verify_workflow(
    context: AppContext,
    reporter: EventReporter,
    cancel_event: threading.Event,
) -> list[CheckResult]:
    primary, secondary = context.require_clusters()
    pool_name, _ = pool_and_storage_class(context.settings)
    return run_verification(
        primary,
        secondary,
        executor=_executor(context),
        pool_name=pool_name,
        reporter=reporter,
    )


def failover_workflow(source_name: str, target_name: str, namespaces: Iterable[str]) -> Workflow:
    scope = tuple(namespaces)

    def run(context: AppContext, reporter: EventReporter, cancel_event: threading.Event) -> FailoverState:
        source = context.cluster(source_name)
        target = context.cluster(target_name)
        orchestrator = FailoverOrchestrator(
            tracker=MirrorStatusTracker(_executor(context)),
            reporter=reporter,
            restore_interval_seconds=context.config.poll_interval_seconds,
            restore_timeout_seconds=context.config.restore_timeout_seconds,
            cancel_event=cancel_event,
        )
        return orchestrator.run(source, target, scope)

    return run


def mirror_table_workflow(cluster_name: str) -> Workflow:
    def run(context: AppContext, reporter: EventReporter, cancel_event: threading.Event) -> list[MirrorStatusRow]:
        cluster = context.cluster(cluster_name)
        reporter.info("Fetching mirror status of PersistentVolumes", cluster=cluster.name)
        rows = MirrorStatusTracker(_executor(context)).list_rows(cluster)
        reporter.info(f"Found {len(rows)} bound PersistentVolume(s)", cluster=cluster.name)
        return rows

    return run


def mirror_toggle_workflow(
    cluster_name: str,
    rows: list[MirrorStatusRow],
    selected: Iterable[str],
    *,
    enable: bool,
) -> Workflow:
    selected_names = tuple(selected)

    def run(context: AppContext, reporter: EventReporter, cancel_event: threading.Event) -> list[MirrorStatusRow]:
        cluster = context.cluster(cluster_name)
        action = "Enabling" if enable else "Disabling"
        reporter.info(f"{action} mirroring on {len(selected_names)} PersistentVolume(s)", cluster=cluster.name)
        updated = MirrorStatusTracker(_executor(context)).apply_selection(
            cluster,
            rows,
            selected_names,
            enable=enable,
        )
        changed = sum(1 for before, after in zip(rows, updated) if before.state != after.state)
        reporter.info(f"Mirror status changed for {changed} PersistentVolume(s)", cluster=cluster.name)
        return updated

    return run


def mirror_info_workflow(cluster_name: str, row: MirrorStatusRow) -> Workflow:
    def run(context: AppContext, reporter: EventReporter, cancel_event: threading.Event) -> str:
        cluster = context.cluster(cluster_name)
        return MirrorStatusTracker(_executor(context)).mirror_info(cluster, row.ref)

    return run
