from __future__ import annotations

from enum import Enum
import threading
from typing import Callable, Iterable

import structlog

from . import oadp
from .events import EventReporter
from .executor import CommandTransportError, ToolboxUnavailableError
from .k8s import (
    ClusterHandle,
    KubernetesApiError,
    VolumeReferenceError,
    is_rbd_volume,
    list_persistent_volumes,
    volume_ref_from_pv,
)
from .mirror import MirrorStatusTracker
from .models import CommandOutcome, PersistentVolumeRef

logger = structlog.get_logger(__name__)


class FailoverState(str, Enum):
    IDLE = "idle"
    DEMOTING_SOURCE = "demoting_source"
    PROMOTING_TARGET = "promoting_target"
    RESTORING_NAMESPACES = "restoring_namespaces"
    AWAITING_RESTORE_COMPLETE = "awaiting_restore_complete"
    DONE = "done"
    FAILED = "failed"


_ORDER = (
    FailoverState.IDLE,
    FailoverState.DEMOTING_SOURCE,
    FailoverState.PROMOTING_TARGET,
    FailoverState.RESTORING_NAMESPACES,
    FailoverState.AWAITING_RESTORE_COMPLETE,
    FailoverState.DONE,
)


class FailoverError(RuntimeError):
    """Raised when a failover cannot proceed; nothing after the failing phase was touched."""


def normalize_scope(namespaces: Iterable[str]) -> tuple[str, ...]:
    return tuple(sorted({namespace.strip() for namespace in namespaces if namespace and namespace.strip()}))


def scoped_volumes(cluster: ClusterHandle, namespaces: Iterable[str]) -> list[PersistentVolumeRef]:
    scope = set(normalize_scope(namespaces))
    refs: list[PersistentVolumeRef] = []
    for pv in list_persistent_volumes(cluster):
        if not is_rbd_volume(pv) or pv.spec.claim_ref is None:
            continue
        if pv.spec.claim_ref.namespace not in scope:
            continue
        try:
            refs.append(volume_ref_from_pv(pv))
        except VolumeReferenceError as error:
            logger.warning("skipping volume without RBD attributes", cluster=cluster.name, error=str(error))
    refs.sort(key=lambda ref: (ref.claim_namespace, ref.claim_name, ref.name))
    return refs


def list_restorable_namespaces(cluster: ClusterHandle) -> list[str]:
    """Namespaces owning RBD volumes with a claim reference; those are assumed to be mirrored."""
    namespaces = {
        pv.spec.claim_ref.namespace
        for pv in list_persistent_volumes(cluster)
        if is_rbd_volume(pv) and pv.spec.claim_ref is not None and pv.spec.claim_ref.namespace
    }
    return sorted(namespaces)


class FailoverOrchestrator:
    def __init__(
        self,
        *,
        tracker: MirrorStatusTracker,
        reporter: EventReporter,
        restore_interval_seconds: float = 5,
        restore_timeout_seconds: float = 3600,
        cancel_event: threading.Event | None = None,
        oadp_present: Callable[[ClusterHandle], bool] = oadp.is_oadp_installed,
    ) -> None:
        self.tracker = tracker
        self.reporter = reporter
        self.restore_interval_seconds = restore_interval_seconds
        self.restore_timeout_seconds = restore_timeout_seconds
        self.cancel_event = cancel_event
        self.oadp_present = oadp_present
        self.state = FailoverState.IDLE
        self.history: list[FailoverState] = [FailoverState.IDLE]

    def run(self, source: ClusterHandle, target: ClusterHandle, namespaces: Iterable[str]) -> FailoverState:
        scope = normalize_scope(namespaces)
        if not scope:
            raise FailoverError("Select at least one namespace before starting a failover")
        if self.state != FailoverState.IDLE:
            raise FailoverError(f"Failover already ran on this orchestrator (state={self.state.value})")

        try:
            self._advance(FailoverState.DEMOTING_SOURCE)
            self.reporter.info(f"Trying to demote PVs in the {source.name} cluster now (this is OK to fail)")
            self._demote_source(source, scope)
            self.reporter.info(f"Finished demoting PVs in the {source.name} cluster")

            self._advance(FailoverState.PROMOTING_TARGET)
            self.reporter.info(f"Promoting PVs in the {target.name} cluster now")
            self._promote_target(target, scope)
            self.reporter.info(f"Finished promoting PVs in the {target.name} cluster")

            if not self.oadp_present(target):
                self.reporter.info(f"OADP is not installed in the {target.name} cluster - we are done now")
                self._advance(FailoverState.DONE)
                return self.state

            self._advance(FailoverState.RESTORING_NAMESPACES)
            self.reporter.info(f"Starting namespace recovery in the {target.name} cluster")
            backup_name = oadp.latest_backup_name(target)
            oadp.apply_restore(
                target,
                scope,
                backup_name=backup_name,
                interval_seconds=self.restore_interval_seconds,
                cancel_event=self.cancel_event,
            )
            self.reporter.info(f"Restore is created from backup {backup_name}, waiting for it to finish")

            self._advance(FailoverState.AWAITING_RESTORE_COMPLETE)
            oadp.wait_for_restore(
                target,
                interval_seconds=self.restore_interval_seconds,
                timeout_seconds=self.restore_timeout_seconds,
                backup_name=backup_name,
                cancel_event=self.cancel_event,
                on_progress=lambda message: self.reporter.info(f"  {message}", cluster=target.name),
            )
            self.reporter.info("Recovery is finished")
            self._advance(FailoverState.DONE)
            self.reporter.info(f"Failover from the {source.name} to the {target.name} cluster is done")
            return self.state
        except Exception:
            self.state = FailoverState.FAILED
            self.history.append(FailoverState.FAILED)
            raise

    def _demote_source(self, source: ClusterHandle, scope: tuple[str, ...]) -> None:
        try:
            refs = scoped_volumes(source, scope)
        except Exception as error:  # pylint: disable=broad-except
            self.reporter.warning(f"Issues when listing PVs in the {source.name} cluster: {error}")
            return

        for ref in refs:
            try:
                result = self.tracker.demote(source, ref)
            except Exception as error:  # pylint: disable=broad-except
                self.reporter.warning(f"  failed to demote PV {ref.name}: {error}", cluster=source.name)
                continue
            if result.succeeded:
                self.reporter.info(f"  mirror status changed for PV {ref.name}", cluster=source.name)
            else:
                self.reporter.warning(
                    f"  failed to demote PV {ref.name}: {result.stderr.strip() or result.outcome.value}",
                    cluster=source.name,
                )

    def _promote_target(self, target: ClusterHandle, scope: tuple[str, ...]) -> None:
        for ref in scoped_volumes(target, scope):
            try:
                result = self.tracker.promote(target, ref)
            except (CommandTransportError, KubernetesApiError, ToolboxUnavailableError) as error:
                raise self._failure(f"Issues when promoting PV {ref.name} in the {target.name} cluster: {error}")
            if result.outcome == CommandOutcome.MIRRORING_DISABLED:
                self.reporter.warning(f"  mirroring is not enabled on PV {ref.name}, skipping", cluster=target.name)
                continue
            if not result.succeeded:
                raise self._failure(
                    f"Issues when promoting PV {ref.name} in the {target.name} cluster: "
                    f"{result.stderr.strip() or result.outcome.value}"
                )
            self.reporter.info(f"  mirror status changed for PV {ref.name}", cluster=target.name)

    def _failure(self, message: str) -> FailoverError:
        self.reporter.error(message)
        self.reporter.error("Bailing out - please consult the log and try again later")
        return FailoverError(message)

    def _advance(self, state: FailoverState) -> None:
        if _ORDER.index(state) <= _ORDER.index(self.state):
            raise FailoverError(f"Invalid failover transition {self.state.value} -> {state.value}")
        logger.info("failover state changed", previous=self.state.value, state=state.value)
        self.state = state
        self.history.append(state)
