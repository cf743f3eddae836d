from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Protocol

import structlog

from . import oadp
from .executor import CommandTransportError
from .k8s import ClusterHandle, VolumeReferenceError, list_persistent_volumes, volume_ref_from_pv
from .models import CommandOutcome, CommandResult, MirrorState, MirrorStatusRow, PersistentVolumeRef

logger = structlog.get_logger(__name__)


class ToolboxExecutor(Protocol):
    def execute_in_toolbox(self, cluster: ClusterHandle, command: str) -> CommandResult: ...


class MirrorCommandError(RuntimeError):
    """Raised when an rbd mirror command fails for a reason other than mirroring being disabled."""

    def __init__(self, message: str, *, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result


def _image_command(ref: PersistentVolumeRef, action: str) -> str:
    return f"rbd -p {ref.pool_name} mirror image {action}"


class MirrorStatusTracker:
    def __init__(self, executor: ToolboxExecutor) -> None:
        self.executor = executor

    def check_status(self, cluster: ClusterHandle, ref: PersistentVolumeRef) -> MirrorState:
        result = self.executor.execute_in_toolbox(cluster, _image_command(ref, f"status {ref.image_name}"))
        if result.outcome == CommandOutcome.MIRRORING_DISABLED:
            return MirrorState.INACTIVE
        if result.outcome != CommandOutcome.OK:
            raise MirrorCommandError(
                f"Could not get RBD mirror info for PersistentVolume '{ref.name}': {result.stderr.strip()}",
                result=result,
            )
        return MirrorState.ACTIVE

    def mirror_info(self, cluster: ClusterHandle, ref: PersistentVolumeRef) -> str:
        result = self.executor.execute_in_toolbox(cluster, _image_command(ref, f"status {ref.image_name}"))
        if result.outcome == CommandOutcome.MIRRORING_DISABLED:
            raise MirrorCommandError(f"Mirroring is not enabled on PersistentVolume '{ref.name}'", result=result)
        if result.outcome != CommandOutcome.OK:
            raise MirrorCommandError(
                f"Could not get RBD mirror info for PersistentVolume '{ref.name}': {result.stderr.strip()}",
                result=result,
            )
        return result.stdout

    def set_status(self, cluster: ClusterHandle, ref: PersistentVolumeRef, enable: bool) -> None:
        action = f"enable {ref.image_name} snapshot" if enable else f"disable {ref.image_name}"
        command = _image_command(ref, action)
        result = self.executor.execute_in_toolbox(cluster, command)
        if not result.succeeded:
            raise MirrorCommandError(
                f"Could not change RBD mirror status of PersistentVolume '{ref.name}'. "
                f"Command: {command}. Stderr: {result.stderr.strip()}",
                result=result,
            )
        logger.info("mirror status changed", cluster=cluster.name, volume=ref.name, enabled=enable)

    def demote(self, cluster: ClusterHandle, ref: PersistentVolumeRef) -> CommandResult:
        return self.executor.execute_in_toolbox(cluster, _image_command(ref, f"demote {ref.image_name}"))

    def promote(self, cluster: ClusterHandle, ref: PersistentVolumeRef) -> CommandResult:
        return self.executor.execute_in_toolbox(cluster, _image_command(ref, f"promote {ref.image_name}"))

    def list_rows(self, cluster: ClusterHandle) -> list[MirrorStatusRow]:
        """Re-scan every bound volume; one toolbox exec per volume."""
        rows: list[MirrorStatusRow] = []
        for pv in list_persistent_volumes(cluster):
            if pv.spec is None or pv.spec.claim_ref is None:
                continue
            try:
                ref = volume_ref_from_pv(pv)
                state = self.check_status(cluster, ref)
            except (VolumeReferenceError, MirrorCommandError, CommandTransportError) as error:
                logger.warning("issues when fetching mirror status", cluster=cluster.name, error=str(error))
                continue
            rows.append(
                MirrorStatusRow(
                    namespace=ref.claim_namespace,
                    claim_name=ref.claim_name,
                    volume_name=ref.name,
                    state=state,
                    ref=ref,
                )
            )
        rows.sort(key=lambda row: (row.namespace, row.claim_name))
        return rows

    def apply_selection(
        self,
        cluster: ClusterHandle,
        rows: list[MirrorStatusRow],
        selected: Iterable[str],
        *,
        enable: bool,
    ) -> list[MirrorStatusRow]:
        """Toggle the selected volumes and refresh the backup schedule for active namespaces."""
        wanted = MirrorState.ACTIVE if enable else MirrorState.INACTIVE
        selected_names = set(selected)
        updated: list[MirrorStatusRow] = []
        for row in rows:
            if row.volume_name not in selected_names or row.state == wanted:
                updated.append(row)
                continue
            try:
                self.set_status(cluster, row.ref, enable)
            except (MirrorCommandError, CommandTransportError) as error:
                logger.warning("could not change PV mirror status", cluster=cluster.name, error=str(error))
                updated.append(row)
                continue
            updated.append(replace(row, state=wanted))

        ensure_active_namespaces_backed_up(cluster, updated)
        return updated


def active_namespaces(rows: Iterable[MirrorStatusRow]) -> list[str]:
    return sorted({row.namespace for row in rows if row.state == MirrorState.ACTIVE})


def ensure_active_namespaces_backed_up(cluster: ClusterHandle, rows: Iterable[MirrorStatusRow]) -> bool:
    if not oadp.is_oadp_installed(cluster):
        return False
    oadp.apply_backup_schedule(cluster, active_namespaces(rows))
    return True
