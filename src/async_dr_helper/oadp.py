"""OADP (Velero) operator install, backup schedule and restore helpers."""

from __future__ import annotations

import base64
import threading
from typing import Any, Callable, Iterable

import structlog

from .config import S3Settings
from .k8s import (
    APPLY_PATCH,
    CLUSTER_SERVICE_VERSION,
    FIELD_MANAGER,
    OPERATOR_GROUP,
    SUBSCRIPTION,
    VELERO,
    VELERO_BACKUP,
    VELERO_RESTORE,
    VELERO_SCHEDULE,
    ClusterHandle,
    KubernetesApiError,
    apply_custom_object,
    create_custom_object,
    delete_custom_object,
    get_custom_object,
    list_custom_objects,
    safe_api_call,
)
from .polling import PollResult, poll_until

logger = structlog.get_logger(__name__)

OADP_NAMESPACE = "oadp-operator"
VELERO_LABEL_SELECTOR = "component=velero"
BACKUP_NAME = "regional-dr-backup"
RESTORE_NAME = "regional-dr-restore"
VELERO_NAME = "regional-dr-velero"
OPERATOR_GROUP_NAME = "oadp-operator-group"
SUBSCRIPTION_NAME = "oadp-operator"
CLOUD_CREDENTIALS_SECRET = "cloud-credentials"
BACKUP_SCHEDULE = "0 * * * *"
EXCLUDED_RESOURCES = ("imagetags.image.openshift.io",)

RESTORE_PHASE_COMPLETED = "Completed"
RESTORE_FAILURE_PHASES = frozenset({"PartiallyFailed", "Failed", "FailedValidation"})


class OadpError(RuntimeError):
    """Raised when a backup operator resource is missing or reports failure."""


def is_oadp_installed(cluster: ClusterHandle) -> bool:
    try:
        pods = cluster.core_api.list_namespaced_pod(
            namespace=OADP_NAMESPACE,
            label_selector=VELERO_LABEL_SELECTOR,
        ).items
    except Exception as error:  # pylint: disable=broad-except
        logger.info("backup operator lookup failed, treating as absent", cluster=cluster.name, error=str(error))
        return False
    return bool(pods)


def apply_backup_schedule(cluster: ClusterHandle, namespaces: Iterable[str]) -> dict[str, Any]:
    included = sorted(set(namespaces))
    body = {
        "apiVersion": VELERO_SCHEDULE.api_version,
        "kind": VELERO_SCHEDULE.kind,
        "metadata": {"name": BACKUP_NAME, "namespace": OADP_NAMESPACE},
        "spec": {
            "schedule": BACKUP_SCHEDULE,
            "template": {
                "includedNamespaces": included,
                "excludedResources": list(EXCLUDED_RESOURCES),
                "snapshotVolumes": False,
            },
        },
    }
    result = apply_custom_object(cluster, VELERO_SCHEDULE, body)
    logger.info("backup schedule applied", cluster=cluster.name, namespaces=included)
    return result


def latest_backup_name(cluster: ClusterHandle) -> str:
    backups = list_custom_objects(cluster, VELERO_BACKUP, namespace=OADP_NAMESPACE)
    if not backups:
        raise OadpError(f"No Backup objects found in '{OADP_NAMESPACE}' in the {cluster.name} cluster")
    # RFC 3339 timestamps in UTC sort lexicographically.
    newest = max(backups, key=lambda item: item.get("metadata", {}).get("creationTimestamp") or "")
    return newest["metadata"]["name"]


def apply_restore(
    cluster: ClusterHandle,
    namespaces: Iterable[str],
    *,
    backup_name: str,
    interval_seconds: float = 5,
    timeout_seconds: float = 300,
    cancel_event: threading.Event | None = None,
) -> dict[str, Any]:
    # Velero never re-runs a finished Restore, so an earlier one is removed first.
    if delete_custom_object(cluster, VELERO_RESTORE, namespace=OADP_NAMESPACE, name=RESTORE_NAME):
        logger.info("previous restore deleted", cluster=cluster.name, restore=RESTORE_NAME)
        poll_until(
            lambda: _restore_gone(cluster),
            description=f"previous Restore {RESTORE_NAME} to be deleted in the {cluster.name} cluster",
            interval_seconds=interval_seconds,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
        )
    body = {
        "apiVersion": VELERO_RESTORE.api_version,
        "kind": VELERO_RESTORE.kind,
        "metadata": {"name": RESTORE_NAME, "namespace": OADP_NAMESPACE},
        "spec": {
            "backupName": backup_name,
            "includedNamespaces": sorted(set(namespaces)),
        },
    }
    result = create_custom_object(cluster, VELERO_RESTORE, namespace=OADP_NAMESPACE, body=body)
    logger.info("restore created", cluster=cluster.name, backup=backup_name)
    return result


def _restore_gone(cluster: ClusterHandle) -> PollResult[bool]:
    restore = get_custom_object(cluster, VELERO_RESTORE, namespace=OADP_NAMESPACE, name=RESTORE_NAME)
    if restore is None:
        return PollResult(done=True, value=True)
    return PollResult(done=False, detail=f"phase={(restore.get('status') or {}).get('phase') or 'unknown'}")


def restore_phase(cluster: ClusterHandle, *, backup_name: str | None = None) -> str:
    restore = get_custom_object(cluster, VELERO_RESTORE, namespace=OADP_NAMESPACE, name=RESTORE_NAME)
    if restore is None:
        return ""
    if backup_name is not None:
        applied = (restore.get("spec") or {}).get("backupName")
        if applied != backup_name:
            raise OadpError(
                f"Restore {RESTORE_NAME} in the {cluster.name} cluster refers to backup {applied!r}, "
                f"expected {backup_name!r}"
            )
    return str((restore.get("status") or {}).get("phase") or "")


def wait_for_restore(
    cluster: ClusterHandle,
    *,
    interval_seconds: float,
    timeout_seconds: float,
    backup_name: str | None = None,
    cancel_event: threading.Event | None = None,
    on_progress: Callable[[str], None] | None = None,
) -> None:
    def check() -> PollResult[str]:
        try:
            phase = restore_phase(cluster, backup_name=backup_name)
        except KubernetesApiError as error:
            if on_progress:
                on_progress(f"Error while fetching Restore: {error}")
            return PollResult(done=False, detail=str(error))
        if phase in RESTORE_FAILURE_PHASES:
            raise OadpError(f"Restore {RESTORE_NAME} in the {cluster.name} cluster ended in phase {phase}")
        if phase == RESTORE_PHASE_COMPLETED:
            return PollResult(done=True, value=phase)
        if on_progress:
            on_progress(f"The restore status is {phase or 'unknown'}")
        return PollResult(done=False, detail=f"phase={phase or 'unknown'}")

    poll_until(
        check,
        description=f"Restore {RESTORE_NAME} to complete in the {cluster.name} cluster",
        interval_seconds=interval_seconds,
        timeout_seconds=timeout_seconds,
        cancel_event=cancel_event,
    )


def ensure_operator_namespace(cluster: ClusterHandle) -> None:
    body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": OADP_NAMESPACE}}
    safe_api_call(
        operation=f"apply namespace '{OADP_NAMESPACE}' in the {cluster.name} cluster",
        hint="Verify RBAC allows patch on namespaces.",
        func=lambda: cluster.core_api.patch_namespace(
            name=OADP_NAMESPACE,
            body=body,
            field_manager=FIELD_MANAGER,
            force=True,
            _content_type=APPLY_PATCH,
        ),
    )


def apply_operator_subscription(cluster: ClusterHandle) -> None:
    apply_custom_object(
        cluster,
        OPERATOR_GROUP,
        {
            "apiVersion": OPERATOR_GROUP.api_version,
            "kind": OPERATOR_GROUP.kind,
            "metadata": {"name": OPERATOR_GROUP_NAME, "namespace": OADP_NAMESPACE},
            "spec": {"targetNamespaces": [OADP_NAMESPACE]},
        },
    )
    apply_custom_object(
        cluster,
        SUBSCRIPTION,
        {
            "apiVersion": SUBSCRIPTION.api_version,
            "kind": SUBSCRIPTION.kind,
            "metadata": {"name": SUBSCRIPTION_NAME, "namespace": OADP_NAMESPACE},
            "spec": {
                "channel": "alpha",
                "installPlanApproval": "Automatic",
                "name": "oadp-operator",
                "source": "community-operators",
                "sourceNamespace": "openshift-marketplace",
            },
        },
    )


def cloud_credentials_content(s3: S3Settings) -> str:
    return (
        "[default]\n"
        f"aws_access_key_id={s3.access_key_id}\n"
        f"aws_secret_access_key={s3.secret_access_key}\n"
    )


def apply_cloud_credentials(cluster: ClusterHandle, s3: S3Settings) -> None:
    encoded = base64.b64encode(cloud_credentials_content(s3).encode("utf-8")).decode("ascii")
    body = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": CLOUD_CREDENTIALS_SECRET, "namespace": OADP_NAMESPACE},
        "type": "Opaque",
        "data": {"cloud": encoded},
    }
    safe_api_call(
        operation=f"apply secret '{CLOUD_CREDENTIALS_SECRET}' in the {cluster.name} cluster",
        hint="Verify RBAC allows patch on secrets in the backup operator namespace.",
        func=lambda: cluster.core_api.patch_namespaced_secret(
            name=CLOUD_CREDENTIALS_SECRET,
            namespace=OADP_NAMESPACE,
            body=body,
            field_manager=FIELD_MANAGER,
            force=True,
            _content_type=APPLY_PATCH,
        ),
    )


def operator_install_phase(cluster: ClusterHandle) -> PollResult[str]:
    subscription = get_custom_object(cluster, SUBSCRIPTION, namespace=OADP_NAMESPACE, name=SUBSCRIPTION_NAME)
    installed_csv = ((subscription or {}).get("status") or {}).get("installedCSV")
    if not installed_csv:
        return PollResult(done=False, detail="subscription has no installed CSV yet")
    csv = get_custom_object(cluster, CLUSTER_SERVICE_VERSION, namespace=OADP_NAMESPACE, name=installed_csv)
    phase = ((csv or {}).get("status") or {}).get("phase") or ""
    if phase == "Succeeded":
        return PollResult(done=True, value=installed_csv)
    return PollResult(done=False, detail=f"{installed_csv} phase={phase or 'unknown'}")


def velero_body(s3: S3Settings) -> dict[str, Any]:
    location_config = {
        "profile": "default",
        "region": s3.region,
        "s3ForcePathStyle": "true" if s3.path_style else "false",
        "insecureSkipTLSVerify": "true" if s3.insecure else "false",
    }
    if s3.endpoint_url:
        location_config["s3Url"] = s3.endpoint_url

    object_storage = {"bucket": s3.bucket}
    if s3.prefix:
        object_storage["prefix"] = s3.prefix

    return {
        "apiVersion": VELERO.api_version,
        "kind": VELERO.kind,
        "metadata": {"name": VELERO_NAME, "namespace": OADP_NAMESPACE},
        "spec": {
            "olm_managed": True,
            "default_velero_plugins": ["aws", "csi", "openshift"],
            "enable_restic": False,
            "backup_storage_locations": [
                {
                    "name": "default",
                    "provider": "aws",
                    "object_storage": object_storage,
                    "config": location_config,
                    "credentials_secret_ref": {
                        "name": CLOUD_CREDENTIALS_SECRET,
                        "namespace": OADP_NAMESPACE,
                    },
                }
            ],
        },
    }


def apply_velero(cluster: ClusterHandle, s3: S3Settings) -> dict[str, Any]:
    return apply_custom_object(cluster, VELERO, velero_body(s3))


def velero_available(cluster: ClusterHandle) -> PollResult[bool]:
    velero = get_custom_object(cluster, VELERO, namespace=OADP_NAMESPACE, name=VELERO_NAME)
    conditions = ((velero or {}).get("status") or {}).get("conditions") or []
    for condition in conditions:
        if condition.get("type") == "Available" and str(condition.get("status")) == "True":
            return PollResult(done=True, value=True)
    observed = ", ".join(f"{item.get('type')}={item.get('status')}" for item in conditions) or "no conditions"
    return PollResult(done=False, detail=observed)
