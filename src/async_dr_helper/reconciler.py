"""Bring a pair of clusters into a mirrored RBD replication configuration.

Every step reads the current object, merges the desired fields and
applies them with the ``asyncDRhelper`` field manager, so re-running the
whole install after a failure is safe. Steps that depend on operator
reconciliation poll a status field with a bounded number of attempts.
"""

from __future__ import annotations

import base64
import threading
from typing import Any, Callable, Iterable, TypeVar

import structlog
from kubernetes import client
from kubernetes.client import ApiException

from . import oadp
from .config import ReplicationSettings, S3Settings
from .events import EventReporter
from .executor import TOOLBOX_LABEL_SELECTOR
from .k8s import (
    APPLY_PATCH,
    CEPH_BLOCK_POOL,
    CEPH_RBD_MIRROR,
    FIELD_MANAGER,
    OCS_INITIALIZATION,
    OCS_NAMESPACE,
    STORAGE_CLUSTER,
    ClusterHandle,
    create_custom_object,
    get_custom_object,
    patch_custom_object,
    safe_api_call,
)
from .models import BootstrapToken
from .polling import PollResult, WorkflowCancelledError, poll_until

logger = structlog.get_logger(__name__)

OPERATOR_CONFIG_MAP = "rook-ceph-operator-config"
OMAP_GENERATOR_FLAG = "CSI_ENABLE_OMAP_GENERATOR"
OMAP_GENERATOR_CONTAINER = "csi-omap-generator"
STORAGE_CLUSTER_NAME = "ocs-storagecluster"
OCS_INITIALIZATION_NAME = "ocsinit"
DEFAULT_POOL_NAME = "ocs-storagecluster-cephblockpool"
DEFAULT_STORAGE_CLASS = "ocs-storagecluster-ceph-rbd"
DEDICATED_POOL_NAME = "regional-dr-cephblockpool"
DEDICATED_STORAGE_CLASS = "regional-dr-ceph-rbd"
RBD_MIRROR_NAME = "rbd-mirror"
BOOTSTRAP_SECRET_INFO_KEY = "rbdMirrorBootstrapPeerSecretName"

MIRRORING_SPEC: dict[str, Any] = {
    "enabled": True,
    "mode": "image",
    "snapshotSchedules": [{"interval": "1h"}],
}

T = TypeVar("T")


class ReconcileError(RuntimeError):
    def __init__(self, *, step: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{step} step failed: {normalized_reason}")
        self.step = step


def pool_and_storage_class(settings: ReplicationSettings) -> tuple[str, str]:
    if settings.dedicated_pool:
        return DEDICATED_POOL_NAME, DEDICATED_STORAGE_CLASS
    return DEFAULT_POOL_NAME, DEFAULT_STORAGE_CLASS


class ResourceReconciler:
    def __init__(
        self,
        *,
        reporter: EventReporter,
        interval_seconds: float = 5,
        max_attempts: int = 60,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.reporter = reporter
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.cancel_event = cancel_event

    def run_install(
        self,
        primary: ClusterHandle,
        secondary: ClusterHandle,
        settings: ReplicationSettings,
    ) -> None:
        clusters = (primary, secondary)
        pool_name, storage_class = pool_and_storage_class(settings)
        self.reporter.info("Starting install")

        for cluster in clusters:
            self._run_step("omap-generator", lambda cluster=cluster: self.enable_omap_generator(cluster))
        for cluster in clusters:
            self._run_step("pool-reconcile", lambda cluster=cluster: self.ignore_block_pool_reconcile(cluster))
        if settings.dedicated_pool:
            for cluster in clusters:
                self._run_step("dedicated-pool", lambda cluster=cluster: self.ensure_dedicated_pool(cluster))
        for cluster in clusters:
            self._run_step(
                "pool-mirroring",
                lambda cluster=cluster: self.ensure_pool_mirroring(cluster, pool_name),
            )

        for source, peer in ((secondary, primary), (primary, secondary)):
            token = self._run_step(
                "bootstrap-token",
                lambda source=source: self.read_bootstrap_token(source, pool_name),
            )
            secret_name = self._run_step(
                "bootstrap-secret",
                lambda peer=peer, token=token: self.write_peer_bootstrap_secret(peer, token),
            )
            self._run_step(
                "rbd-mirror",
                lambda peer=peer, secret_name=secret_name: self.ensure_rbd_mirror(peer, [secret_name]),
            )

        for cluster in clusters:
            self._run_step("toolbox", lambda cluster=cluster: self.enable_toolbox(cluster))
        for cluster in clusters:
            self._run_step(
                "storage-class-retain",
                lambda cluster=cluster: self.retain_storage_class(cluster, storage_class),
            )

        if settings.s3.configured:
            for cluster in clusters:
                self._run_step(
                    "backup-operator",
                    lambda cluster=cluster: self.install_backup_operator(cluster, settings.s3),
                )
        else:
            self.reporter.warning("S3 target is not configured - skipping backup operator install")

        self.reporter.info("Install steps done!")

    def enable_omap_generator(self, cluster: ClusterHandle) -> None:
        safe_api_call(
            operation=f"patch configmap '{OPERATOR_CONFIG_MAP}' in the {cluster.name} cluster",
            hint="Verify OCS is installed and RBAC allows patch on configmaps.",
            func=lambda: cluster.core_api.patch_namespaced_config_map(
                name=OPERATOR_CONFIG_MAP,
                namespace=OCS_NAMESPACE,
                body={"data": {OMAP_GENERATOR_FLAG: "true"}},
                field_manager=FIELD_MANAGER,
            ),
        )
        self.reporter.info("Patched operator config for OMAP generator", cluster=cluster.name)
        self.reporter.info("Waiting for OMAP generator container to appear", cluster=cluster.name)

        def check() -> PollResult[bool]:
            pods = cluster.core_api.list_namespaced_pod(namespace=OCS_NAMESPACE).items
            for pod in pods:
                containers = pod.spec.containers if pod.spec else []
                if any(container.name == OMAP_GENERATOR_CONTAINER for container in containers or []):
                    return PollResult(done=True, value=True)
            return PollResult(done=False, detail=f"no pod with a {OMAP_GENERATOR_CONTAINER} container")

        self._poll(check, f"the {OMAP_GENERATOR_CONTAINER} container in the {cluster.name} cluster")
        self.reporter.info("OMAP generator container appeared", cluster=cluster.name)

    def ignore_block_pool_reconcile(self, cluster: ClusterHandle) -> None:
        patch_custom_object(
            cluster,
            STORAGE_CLUSTER,
            namespace=OCS_NAMESPACE,
            name=STORAGE_CLUSTER_NAME,
            body={"spec": {"managedResources": {"cephBlockPools": {"reconcileStrategy": "ignore"}}}},
        )
        self.reporter.info("Block pool reconcile strategy set to ignore", cluster=cluster.name)

    def ensure_dedicated_pool(self, cluster: ClusterHandle) -> None:
        if get_custom_object(cluster, CEPH_BLOCK_POOL, namespace=OCS_NAMESPACE, name=DEDICATED_POOL_NAME) is None:
            create_custom_object(
                cluster,
                CEPH_BLOCK_POOL,
                namespace=OCS_NAMESPACE,
                body={
                    "apiVersion": CEPH_BLOCK_POOL.api_version,
                    "kind": CEPH_BLOCK_POOL.kind,
                    "metadata": {"name": DEDICATED_POOL_NAME, "namespace": OCS_NAMESPACE},
                    "spec": {
                        "failureDomain": "host",
                        "replicated": {"size": 3},
                        "mirroring": MIRRORING_SPEC,
                    },
                },
            )
            self.reporter.info(f"Created block pool {DEDICATED_POOL_NAME}", cluster=cluster.name)

        if self._read_storage_class(cluster, DEDICATED_STORAGE_CLASS) is not None:
            return
        base = self._read_storage_class(cluster, DEFAULT_STORAGE_CLASS)
        if base is None:
            raise RuntimeError(f"storage class {DEFAULT_STORAGE_CLASS} not found in the {cluster.name} cluster")
        dedicated = client.V1StorageClass(
            api_version="storage.k8s.io/v1",
            kind="StorageClass",
            metadata=client.V1ObjectMeta(name=DEDICATED_STORAGE_CLASS),
            provisioner=base.provisioner,
            parameters={**(base.parameters or {}), "pool": DEDICATED_POOL_NAME},
            reclaim_policy="Retain",
            allow_volume_expansion=base.allow_volume_expansion,
            volume_binding_mode=base.volume_binding_mode,
            mount_options=base.mount_options,
        )
        safe_api_call(
            operation=f"create storage class '{DEDICATED_STORAGE_CLASS}' in the {cluster.name} cluster",
            hint="Verify RBAC allows create on storageclasses.",
            func=lambda: cluster.storage_api.create_storage_class(body=dedicated, field_manager=FIELD_MANAGER),
        )
        self.reporter.info(f"Created storage class {DEDICATED_STORAGE_CLASS}", cluster=cluster.name)

    def ensure_pool_mirroring(self, cluster: ClusterHandle, pool_name: str) -> None:
        pool = get_custom_object(cluster, CEPH_BLOCK_POOL, namespace=OCS_NAMESPACE, name=pool_name)
        if pool is None:
            raise RuntimeError(f"CephBlockPool {pool_name} not found in the {cluster.name} cluster")
        current = (pool.get("spec") or {}).get("mirroring") or {}
        if current == MIRRORING_SPEC:
            self.reporter.info(f"Block pool {pool_name} mirroring already enabled", cluster=cluster.name)
            return
        patch_custom_object(
            cluster,
            CEPH_BLOCK_POOL,
            namespace=OCS_NAMESPACE,
            name=pool_name,
            body={"spec": {"mirroring": MIRRORING_SPEC}},
        )
        self.reporter.info(f"Block pool {pool_name} mirroring enabled", cluster=cluster.name)

    def wait_for_bootstrap_secret_name(self, cluster: ClusterHandle, pool_name: str) -> str:
        def check() -> PollResult[str]:
            status = self._pool_status(cluster, pool_name)
            secret_name = (status.get("info") or {}).get(BOOTSTRAP_SECRET_INFO_KEY)
            if secret_name:
                return PollResult(done=True, value=str(secret_name))
            return PollResult(done=False, detail=f"'{BOOTSTRAP_SECRET_INFO_KEY}' not in pool status")

        return self._poll(check, f"the bootstrap secret name of {pool_name} in the {cluster.name} cluster")

    def read_bootstrap_token(self, cluster: ClusterHandle, pool_name: str) -> BootstrapToken:
        secret_name = self.wait_for_bootstrap_secret_name(cluster, pool_name)
        secret = safe_api_call(
            operation=f"read bootstrap secret '{secret_name}' in the {cluster.name} cluster",
            hint="Verify RBAC allows get on secrets.",
            func=lambda: cluster.core_api.read_namespaced_secret(name=secret_name, namespace=OCS_NAMESPACE),
        )
        encoded_token = (secret.data or {}).get("token")
        if not encoded_token:
            raise RuntimeError(f"bootstrap secret {secret_name} in the {cluster.name} cluster has no token")
        self.reporter.info(f"Got pool mirror token from secret {secret_name}", cluster=cluster.name)

        def check() -> PollResult[str]:
            status = self._pool_status(cluster, pool_name)
            summary = ((status.get("mirroringInfo") or {}).get("summary") or {}).get("summary") or {}
            site_name = summary.get("site_name") if isinstance(summary, dict) else None
            if site_name:
                return PollResult(done=True, value=str(site_name))
            return PollResult(done=False, detail="site_name not set yet")

        site_name = self._poll(check, f"the mirroring site name of {pool_name} in the {cluster.name} cluster")
        self.reporter.info(f"Got site name {site_name}", cluster=cluster.name)
        return BootstrapToken(
            site_name=site_name,
            token=base64.b64decode(encoded_token),
            pool_name=pool_name,
        )

    def write_peer_bootstrap_secret(self, peer: ClusterHandle, token: BootstrapToken) -> str:
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": token.site_name, "namespace": OCS_NAMESPACE},
            "data": {
                "token": base64.b64encode(token.token).decode("ascii"),
                "pool": base64.b64encode(token.pool_name.encode("utf-8")).decode("ascii"),
            },
        }
        safe_api_call(
            operation=f"apply bootstrap secret '{token.site_name}' in the {peer.name} cluster",
            hint="Verify RBAC allows patch on secrets.",
            func=lambda: peer.core_api.patch_namespaced_secret(
                name=token.site_name,
                namespace=OCS_NAMESPACE,
                body=body,
                field_manager=FIELD_MANAGER,
                force=True,
                _content_type=APPLY_PATCH,
            ),
        )
        self.reporter.info("Created bootstrap secret", cluster=peer.name)
        return token.site_name

    def ensure_rbd_mirror(self, peer: ClusterHandle, secret_names: Iterable[str]) -> list[str]:
        existing = get_custom_object(peer, CEPH_RBD_MIRROR, namespace=OCS_NAMESPACE, name=RBD_MIRROR_NAME)
        if existing is None:
            names = sorted(set(secret_names))
            create_custom_object(
                peer,
                CEPH_RBD_MIRROR,
                namespace=OCS_NAMESPACE,
                body={
                    "apiVersion": CEPH_RBD_MIRROR.api_version,
                    "kind": CEPH_RBD_MIRROR.kind,
                    "metadata": {"name": RBD_MIRROR_NAME, "namespace": OCS_NAMESPACE},
                    "spec": {"count": 1, "peers": {"secretNames": names}},
                },
            )
            self.reporter.info("Created RBD mirror daemon", cluster=peer.name)
            return names

        current = ((existing.get("spec") or {}).get("peers") or {}).get("secretNames") or []
        names = sorted(set(current) | set(secret_names))
        if names == sorted(current):
            self.reporter.info("RBD mirror daemon already references all peers", cluster=peer.name)
            return names
        patch_custom_object(
            peer,
            CEPH_RBD_MIRROR,
            namespace=OCS_NAMESPACE,
            name=RBD_MIRROR_NAME,
            body={"spec": {"peers": {"secretNames": names}}},
        )
        self.reporter.info("Updated RBD mirror daemon peers", cluster=peer.name)
        return names

    def enable_toolbox(self, cluster: ClusterHandle) -> None:
        patch_custom_object(
            cluster,
            OCS_INITIALIZATION,
            namespace=OCS_NAMESPACE,
            name=OCS_INITIALIZATION_NAME,
            body={"spec": {"enableCephTools": True}},
        )
        self.reporter.info("Toolbox enabled, waiting for the pod", cluster=cluster.name)

        def check() -> PollResult[str]:
            pods = cluster.core_api.list_namespaced_pod(
                namespace=OCS_NAMESPACE,
                label_selector=TOOLBOX_LABEL_SELECTOR,
            ).items
            for pod in pods:
                if pod.status and pod.status.phase == "Running":
                    return PollResult(done=True, value=pod.metadata.name)
            return PollResult(done=False, detail=f"{len(pods)} toolbox pod(s), none running")

        self._poll(check, f"the toolbox pod in the {cluster.name} cluster")
        self.reporter.info("Toolbox pod is running", cluster=cluster.name)

    def retain_storage_class(self, cluster: ClusterHandle, name: str) -> None:
        current = self._read_storage_class(cluster, name)
        if current is None:
            raise RuntimeError(f"storage class {name} not found in the {cluster.name} cluster")
        if current.reclaim_policy == "Retain":
            self.reporter.info(f"Storage class {name} already retains volumes", cluster=cluster.name)
            return

        # reclaimPolicy is immutable, so the class is recreated.
        metadata = current.metadata
        replacement = client.V1StorageClass(
            api_version="storage.k8s.io/v1",
            kind="StorageClass",
            metadata=client.V1ObjectMeta(
                name=name,
                labels=metadata.labels if metadata else None,
                annotations=metadata.annotations if metadata else None,
            ),
            provisioner=current.provisioner,
            parameters=current.parameters,
            reclaim_policy="Retain",
            allow_volume_expansion=current.allow_volume_expansion,
            volume_binding_mode=current.volume_binding_mode,
            mount_options=current.mount_options,
            allowed_topologies=current.allowed_topologies,
        )
        safe_api_call(
            operation=f"delete storage class '{name}' in the {cluster.name} cluster",
            hint="Verify RBAC allows delete on storageclasses.",
            func=lambda: cluster.storage_api.delete_storage_class(name=name),
        )
        safe_api_call(
            operation=f"recreate storage class '{name}' in the {cluster.name} cluster",
            hint="The class was deleted; recreate it manually if this keeps failing.",
            func=lambda: cluster.storage_api.create_storage_class(body=replacement, field_manager=FIELD_MANAGER),
        )
        self.reporter.info(f"Storage class {name} reclaim policy changed to Retain", cluster=cluster.name)

    def install_backup_operator(self, cluster: ClusterHandle, s3: S3Settings) -> None:
        oadp.ensure_operator_namespace(cluster)
        oadp.apply_operator_subscription(cluster)
        oadp.apply_cloud_credentials(cluster, s3)
        self.reporter.info("Backup operator subscription created, waiting for install", cluster=cluster.name)
        csv_name = self._poll(
            lambda: oadp.operator_install_phase(cluster),
            f"the backup operator install in the {cluster.name} cluster",
        )
        self.reporter.info(f"Backup operator {csv_name} installed", cluster=cluster.name)

        oadp.apply_velero(cluster, s3)
        self._poll(
            lambda: oadp.velero_available(cluster),
            f"the Velero instance to become Available in the {cluster.name} cluster",
        )
        self.reporter.info("Backup operator is Available", cluster=cluster.name)

    def _pool_status(self, cluster: ClusterHandle, pool_name: str) -> dict[str, Any]:
        pool = get_custom_object(cluster, CEPH_BLOCK_POOL, namespace=OCS_NAMESPACE, name=pool_name)
        if pool is None:
            raise RuntimeError(f"CephBlockPool {pool_name} not found in the {cluster.name} cluster")
        return pool.get("status") or {}

    def _read_storage_class(self, cluster: ClusterHandle, name: str) -> client.V1StorageClass | None:
        try:
            return cluster.storage_api.read_storage_class(name=name)
        except ApiException as error:
            if error.status == 404:
                return None
            raise

    def _poll(self, check: Callable[[], PollResult[T]], description: str) -> T:
        return poll_until(
            check,
            description=description,
            interval_seconds=self.interval_seconds,
            max_attempts=self.max_attempts,
            cancel_event=self.cancel_event,
        )

    def _run_step(self, step: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except (ReconcileError, WorkflowCancelledError):
            raise
        except Exception as error:  # pylint: disable=broad-except
            message = str(error).strip() or error.__class__.__name__
            self.reporter.error(f"{step} step failed: {message}")
            raise ReconcileError(step=step, reason=message) from error
