from __future__ import annotations

import base64
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from async_dr_helper import oadp
from async_dr_helper.config import S3Settings
from async_dr_helper.k8s import ClusterHandle, KubernetesApiError
from async_dr_helper.oadp import OadpError


def _cluster(*, core_api: Mock | None = None, custom_api: Mock | None = None) -> ClusterHandle:
    return ClusterHandle(
        name="secondary",
        kubeconfig_path="/kube/secondary",
        location="cluster-b.example.invalid",
        api_client=Mock(),
        core_api=core_api or Mock(),
        storage_api=Mock(),
        custom_api=custom_api or Mock(),
    )


def _s3(**overrides: object) -> S3Settings:
    values: dict[str, object] = {
        "bucket": "dr-backups",
        "region": "eu-west-1",
        "access_key_id": "AKIA",
        "secret_access_key": "secret",
    }
    values.update(overrides)
    return S3Settings(**values)  # type: ignore[arg-type]


def test_is_oadp_installed_with_velero_pod_is_true() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[object()])

    assert oadp.is_oadp_installed(_cluster(core_api=core_api)) is True
    core_api.list_namespaced_pod.assert_called_once_with(namespace="oadp-operator", label_selector="component=velero")


def test_is_oadp_installed_with_lookup_error_is_false() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.side_effect = RuntimeError("connection refused")

    assert oadp.is_oadp_installed(_cluster(core_api=core_api)) is False


def test_apply_backup_schedule_includes_sorted_unique_namespaces() -> None:
    custom_api = Mock()

    oadp.apply_backup_schedule(_cluster(custom_api=custom_api), ["app2", "app1", "app2"])

    kwargs = custom_api.patch_namespaced_custom_object.call_args.kwargs
    assert kwargs["plural"] == "schedules"
    assert kwargs["name"] == "regional-dr-backup"
    template = kwargs["body"]["spec"]["template"]
    assert template["includedNamespaces"] == ["app1", "app2"]
    assert template["snapshotVolumes"] is False
    assert kwargs["body"]["spec"]["schedule"] == "0 * * * *"


def test_latest_backup_name_picks_newest_creation_timestamp() -> None:
    custom_api = Mock()
    custom_api.list_namespaced_custom_object.return_value = {
        "items": [
            {"metadata": {"name": "regional-dr-backup-20260101000000", "creationTimestamp": "2026-01-01T00:00:00Z"}},
            {"metadata": {"name": "regional-dr-backup-20260301000000", "creationTimestamp": "2026-03-01T00:00:00Z"}},
            {"metadata": {"name": "regional-dr-backup-20260201000000", "creationTimestamp": "2026-02-01T00:00:00Z"}},
        ]
    }

    assert oadp.latest_backup_name(_cluster(custom_api=custom_api)) == "regional-dr-backup-20260301000000"


def test_latest_backup_name_without_backups_raises() -> None:
    custom_api = Mock()
    custom_api.list_namespaced_custom_object.return_value = {"items": []}

    with pytest.raises(OadpError, match="No Backup objects"):
        oadp.latest_backup_name(_cluster(custom_api=custom_api))


def test_apply_restore_without_previous_restore_creates_fixed_name() -> None:
    custom_api = Mock()
    custom_api.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    oadp.apply_restore(_cluster(custom_api=custom_api), ["app1"], backup_name="regional-dr-backup-1")

    custom_api.get_namespaced_custom_object.assert_not_called()
    kwargs = custom_api.create_namespaced_custom_object.call_args.kwargs
    assert kwargs["plural"] == "restores"
    assert kwargs["body"]["metadata"]["name"] == "regional-dr-restore"
    assert kwargs["body"]["spec"] == {"backupName": "regional-dr-backup-1", "includedNamespaces": ["app1"]}


def test_rerun_restore_replaces_finished_restore_before_waiting() -> None:
    stale = {"spec": {"backupName": "regional-dr-backup-old"}, "status": {"phase": "Completed"}}
    fresh = {"spec": {"backupName": "regional-dr-backup-new"}}
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = [
        stale,
        ApiException(status=404, reason="Not Found"),
        {**fresh, "status": {"phase": "InProgress"}},
        {**fresh, "status": {"phase": "Completed"}},
    ]
    cluster = _cluster(custom_api=custom_api)
    progress: list[str] = []

    oadp.apply_restore(cluster, ["app1"], backup_name="regional-dr-backup-new", interval_seconds=0)
    oadp.wait_for_restore(
        cluster,
        interval_seconds=0,
        timeout_seconds=60,
        backup_name="regional-dr-backup-new",
        on_progress=progress.append,
    )

    assert custom_api.delete_namespaced_custom_object.call_args.kwargs["name"] == "regional-dr-restore"
    custom_api.create_namespaced_custom_object.assert_called_once()
    assert progress == ["The restore status is InProgress"]
    assert custom_api.get_namespaced_custom_object.call_count == 4


def test_wait_for_restore_rejects_restore_of_another_backup() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = {
        "spec": {"backupName": "regional-dr-backup-old"},
        "status": {"phase": "Completed"},
    }

    with pytest.raises(OadpError, match="refers to backup 'regional-dr-backup-old'"):
        oadp.wait_for_restore(
            _cluster(custom_api=custom_api),
            interval_seconds=0,
            timeout_seconds=60,
            backup_name="regional-dr-backup-new",
        )


def test_wait_for_restore_polls_until_completed() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = [
        {"status": {}},
        {"status": {"phase": "InProgress"}},
        {"status": {"phase": "Completed"}},
    ]
    progress: list[str] = []

    oadp.wait_for_restore(
        _cluster(custom_api=custom_api),
        interval_seconds=0,
        timeout_seconds=60,
        on_progress=progress.append,
    )

    assert progress == ["The restore status is unknown", "The restore status is InProgress"]
    assert custom_api.get_namespaced_custom_object.call_count == 3


def test_wait_for_restore_with_partial_failure_raises() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = {"status": {"phase": "PartiallyFailed"}}

    with pytest.raises(OadpError, match="ended in phase PartiallyFailed"):
        oadp.wait_for_restore(_cluster(custom_api=custom_api), interval_seconds=0, timeout_seconds=60)


def test_wait_for_restore_keeps_polling_through_api_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    phases = iter([KubernetesApiError("boom", status=500), "Completed"])

    def fake_phase(cluster: ClusterHandle, *, backup_name: str | None = None) -> str:
        value = next(phases)
        if isinstance(value, Exception):
            raise value
        return value

    monkeypatch.setattr(oadp, "restore_phase", fake_phase)
    progress: list[str] = []

    oadp.wait_for_restore(_cluster(), interval_seconds=0, timeout_seconds=60, on_progress=progress.append)

    assert progress == ["Error while fetching Restore: boom"]


def test_cloud_credentials_secret_holds_aws_profile() -> None:
    core_api = Mock()

    oadp.apply_cloud_credentials(_cluster(core_api=core_api), _s3())

    body = core_api.patch_namespaced_secret.call_args.kwargs["body"]
    decoded = base64.b64decode(body["data"]["cloud"]).decode("utf-8")
    assert decoded == "[default]\naws_access_key_id=AKIA\naws_secret_access_key=secret\n"


def test_velero_body_maps_s3_settings() -> None:
    body = oadp.velero_body(_s3(endpoint_url="https://minio.example.invalid", prefix="velero", insecure=True))

    location = body["spec"]["backup_storage_locations"][0]
    assert location["object_storage"] == {"bucket": "dr-backups", "prefix": "velero"}
    assert location["config"]["s3Url"] == "https://minio.example.invalid"
    assert location["config"]["s3ForcePathStyle"] == "true"
    assert location["config"]["insecureSkipTLSVerify"] == "true"
    assert location["credentials_secret_ref"]["name"] == "cloud-credentials"


def test_velero_body_without_endpoint_omits_s3_url() -> None:
    body = oadp.velero_body(_s3())

    assert "s3Url" not in body["spec"]["backup_storage_locations"][0]["config"]


def test_operator_install_phase_waits_for_succeeded_csv() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = [
        {"status": {"installedCSV": "oadp-operator.v0.5.0"}},
        {"status": {"phase": "Installing"}},
        {"status": {"installedCSV": "oadp-operator.v0.5.0"}},
        {"status": {"phase": "Succeeded"}},
    ]
    cluster = _cluster(custom_api=custom_api)

    first = oadp.operator_install_phase(cluster)
    second = oadp.operator_install_phase(cluster)

    assert first.done is False
    assert first.detail == "oadp-operator.v0.5.0 phase=Installing"
    assert second.done is True
    assert second.value == "oadp-operator.v0.5.0"


def test_velero_available_reads_available_condition() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = {
        "status": {"conditions": [{"type": "Available", "status": "True"}]}
    }

    assert oadp.velero_available(_cluster(custom_api=custom_api)).done is True
