from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import urlparse

import structlog
import yaml
from kubernetes import client, config
from kubernetes.client import ApiException

from .models import PersistentVolumeRef

logger = structlog.get_logger(__name__)

OCS_NAMESPACE = "openshift-storage"
RBD_CSI_DRIVER = "openshift-storage.rbd.csi.ceph.com"
FIELD_MANAGER = "asyncDRhelper"

JSON_PATCH = "application/json-patch+json"
MERGE_PATCH = "application/merge-patch+json"
APPLY_PATCH = "application/apply-patch+yaml"

T = TypeVar("T")


@dataclass(frozen=True)
class CustomResource:
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


STORAGE_CLUSTER = CustomResource("ocs.openshift.io", "v1", "storageclusters", "StorageCluster")
OCS_INITIALIZATION = CustomResource("ocs.openshift.io", "v1", "ocsinitializations", "OCSInitialization")
CEPH_BLOCK_POOL = CustomResource("ceph.rook.io", "v1", "cephblockpools", "CephBlockPool")
CEPH_RBD_MIRROR = CustomResource("ceph.rook.io", "v1", "cephrbdmirrors", "CephRBDMirror")
SUBSCRIPTION = CustomResource("operators.coreos.com", "v1alpha1", "subscriptions", "Subscription")
OPERATOR_GROUP = CustomResource("operators.coreos.com", "v1", "operatorgroups", "OperatorGroup")
CLUSTER_SERVICE_VERSION = CustomResource(
    "operators.coreos.com", "v1alpha1", "clusterserviceversions", "ClusterServiceVersion"
)
VELERO = CustomResource("konveyor.openshift.io", "v1alpha1", "veleros", "Velero")
VELERO_BACKUP = CustomResource("velero.io", "v1", "backups", "Backup")
VELERO_RESTORE = CustomResource("velero.io", "v1", "restores", "Restore")
VELERO_SCHEDULE = CustomResource("velero.io", "v1", "schedules", "Schedule")


@dataclass(frozen=True)
class ClusterHandle:
    name: str
    kubeconfig_path: str
    location: str
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    storage_api: client.StorageV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesApiError(RuntimeError):
    """Raised when a cluster API call fails for a reason other than a missing object."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class VolumeReferenceError(ValueError):
    """Raised when a PersistentVolume lacks the RBD image attributes."""


def load_cluster_handle(name: str, kubeconfig_path: str, *, context: str | None = None) -> ClusterHandle:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    if expanded is None:
        raise KubernetesAuthenticationError(f"A kubeconfig path is required for the {name} cluster.")
    try:
        api_client = config.new_client_from_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                cluster_name=name,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    location = cluster_location(expanded, context=context)
    logger.info("cluster handle loaded", cluster=name, kubeconfig=expanded, location=location)
    return ClusterHandle(
        name=name,
        kubeconfig_path=expanded,
        location=location,
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        storage_api=client.StorageV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def cluster_location(kubeconfig_path: str, *, context: str | None = None) -> str:
    """Return the API server host of the selected context without its ``api.`` prefix."""
    try:
        parsed = yaml.safe_load(Path(kubeconfig_path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        return "unknown"
    if not isinstance(parsed, dict):
        return "unknown"

    context_name = context or parsed.get("current-context")
    cluster_name = None
    for entry in parsed.get("contexts") or []:
        if isinstance(entry, dict) and entry.get("name") == context_name:
            cluster_name = (entry.get("context") or {}).get("cluster")
            break

    for entry in parsed.get("clusters") or []:
        if isinstance(entry, dict) and entry.get("name") == cluster_name:
            server = (entry.get("cluster") or {}).get("server") or ""
            hostname = urlparse(server).hostname or ""
            return hostname.removeprefix("api.") or "unknown"
    return "unknown"


def list_persistent_volumes(cluster: ClusterHandle) -> list[client.V1PersistentVolume]:
    return safe_api_call(
        operation=f"list PersistentVolumes in the {cluster.name} cluster",
        hint="Verify RBAC allows list on persistentvolumes.",
        func=lambda: cluster.core_api.list_persistent_volume().items,
    )


def is_rbd_volume(pv: Any) -> bool:
    csi = pv.spec.csi if pv.spec else None
    return csi is not None and csi.driver == RBD_CSI_DRIVER


def volume_ref_from_pv(pv: Any) -> PersistentVolumeRef:
    name = pv.metadata.name if pv.metadata else ""
    csi = pv.spec.csi if pv.spec else None
    attributes = csi.volume_attributes if csi is not None else None
    if not attributes:
        raise VolumeReferenceError(f"PersistentVolume '{name}' does not carry CSI volume attributes")

    image_name = attributes.get("imageName") or ""
    pool_name = attributes.get("pool") or ""
    if not image_name or not pool_name:
        raise VolumeReferenceError(f"Could not get RBD image or pool name from PersistentVolume '{name}'")

    claim = pv.spec.claim_ref
    return PersistentVolumeRef(
        name=name,
        claim_namespace=(claim.namespace or "") if claim else "",
        claim_name=(claim.name or "") if claim else "",
        image_name=image_name,
        pool_name=pool_name,
    )


def get_custom_object(
    cluster: ClusterHandle,
    resource: CustomResource,
    *,
    namespace: str,
    name: str,
) -> dict[str, Any] | None:
    try:
        return cluster.custom_api.get_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
        )
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesApiError(
            _format_api_exception_message(
                operation=f"get {resource.kind} '{namespace}/{name}' in the {cluster.name} cluster",
                hint=f"Verify the {resource.kind} CRD is installed and RBAC allows get.",
                error=error,
            ),
            status=error.status,
        ) from error


def list_custom_objects(
    cluster: ClusterHandle,
    resource: CustomResource,
    *,
    namespace: str,
) -> list[dict[str, Any]]:
    response = safe_api_call(
        operation=f"list {resource.kind} objects in '{namespace}' in the {cluster.name} cluster",
        hint=f"Verify the {resource.kind} CRD is installed and RBAC allows list.",
        func=lambda: cluster.custom_api.list_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
        ),
    )
    return list(response.get("items") or [])


def patch_custom_object(
    cluster: ClusterHandle,
    resource: CustomResource,
    *,
    namespace: str,
    name: str,
    body: Any,
    content_type: str = MERGE_PATCH,
) -> dict[str, Any]:
    extra: dict[str, Any] = {"field_manager": FIELD_MANAGER, "_content_type": content_type}
    if content_type == APPLY_PATCH:
        extra["force"] = True
    return safe_api_call(
        operation=f"patch {resource.kind} '{namespace}/{name}' in the {cluster.name} cluster",
        hint=f"Verify the {resource.kind} exists and RBAC allows patch.",
        func=lambda: cluster.custom_api.patch_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
            body=body,
            **extra,
        ),
    )


def create_custom_object(
    cluster: ClusterHandle,
    resource: CustomResource,
    *,
    namespace: str,
    body: dict[str, Any],
) -> dict[str, Any]:
    return safe_api_call(
        operation=f"create {resource.kind} in '{namespace}' in the {cluster.name} cluster",
        hint=f"Verify the {resource.kind} CRD is installed and RBAC allows create.",
        func=lambda: cluster.custom_api.create_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            body=body,
            field_manager=FIELD_MANAGER,
        ),
    )


def delete_custom_object(cluster: ClusterHandle, resource: CustomResource, *, namespace: str, name: str) -> bool:
    """Delete a namespaced custom object; returns False when it did not exist."""
    try:
        cluster.custom_api.delete_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
        )
    except ApiException as error:
        if error.status == 404:
            return False
        raise KubernetesApiError(
            _format_api_exception_message(
                operation=f"delete {resource.kind} '{namespace}/{name}' in the {cluster.name} cluster",
                hint=f"Verify RBAC allows delete on {resource.plural}.",
                error=error,
            ),
            status=error.status,
        ) from error
    return True


def apply_custom_object(cluster: ClusterHandle, resource: CustomResource, body: dict[str, Any]) -> dict[str, Any]:
    metadata = body["metadata"]
    return patch_custom_object(
        cluster,
        resource,
        namespace=metadata["namespace"],
        name=metadata["name"],
        body=body,
        content_type=APPLY_PATCH,
    )


def safe_api_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesApiError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            ),
            status=error.status,
        ) from error
    except KubernetesApiError:
        raise
    except Exception as error:
        raise KubernetesApiError(f"Kubernetes call failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    cluster_name: str,
    kubeconfig_path: str,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    context_message = f" with context '{context}'" if context else ""
    return (
        f"Kubernetes authentication setup failed for the {cluster_name} cluster while loading kubeconfig "
        f"from '{kubeconfig_path}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
