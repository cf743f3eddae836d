from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import Mock

from kubernetes.client import ApiException

from async_dr_helper.events import EventReporter
from async_dr_helper.k8s import ClusterHandle
from async_dr_helper.models import CheckStatus, CommandOutcome, CommandResult, WorkflowEvent
from async_dr_helper.verify import (
    check_backup_operator,
    check_network,
    check_omap_flag,
    check_pool_mirroring,
    check_provisioner_pods,
    check_rbd_mirror_pod,
    run_verification,
)

POOL = "ocs-storagecluster-cephblockpool"


def _cluster(name: str = "primary", *, core_api: Mock | None = None, custom_api: Mock | None = None) -> ClusterHandle:
    return ClusterHandle(
        name=name,
        kubeconfig_path=f"/kube/{name}",
        location=f"{name}.example.invalid",
        api_client=Mock(),
        core_api=core_api or Mock(),
        storage_api=Mock(),
        custom_api=custom_api or Mock(),
    )


def _pod(
    name: str,
    *,
    containers: tuple[str, ...] = ("csi-provisioner", "csi-omap-generator"),
    ready: bool = True,
    pod_ip: str | None = None,
    namespace: str = "openshift-storage",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace),
        spec=SimpleNamespace(containers=[SimpleNamespace(name=container) for container in containers]),
        status=SimpleNamespace(
            pod_ip=pod_ip,
            container_statuses=[SimpleNamespace(name=container, ready=ready) for container in containers],
        ),
    )


def _core_with_pods(pods: list[Any]) -> Mock:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=pods)
    return core_api


def _pool_custom_api(summary: dict[str, Any] | None) -> Mock:
    custom_api = Mock()
    status = {"mirroringStatus": {"summary": {"summary": summary}}} if summary is not None else {}
    custom_api.get_namespaced_custom_object.return_value = {"status": status}
    return custom_api


def _command_result(*, stderr: str = "", exit_code: int = 0) -> CommandResult:
    return CommandResult(
        command=("curl",),
        exit_code=exit_code,
        stdout="",
        stderr=stderr,
        outcome=CommandOutcome.FAILED if stderr or exit_code else CommandOutcome.OK,
    )


def test_check_omap_flag_ok_when_true() -> None:
    core_api = Mock()
    core_api.read_namespaced_config_map.return_value = SimpleNamespace(data={"CSI_ENABLE_OMAP_GENERATOR": "true"})

    result = check_omap_flag(_cluster(core_api=core_api))

    assert result.status == CheckStatus.OK
    core_api.read_namespaced_config_map.assert_called_once_with(
        name="rook-ceph-operator-config",
        namespace="openshift-storage",
    )


def test_check_omap_flag_fails_when_unset() -> None:
    core_api = Mock()
    core_api.read_namespaced_config_map.return_value = SimpleNamespace(data=None)

    result = check_omap_flag(_cluster(core_api=core_api))

    assert result.status == CheckStatus.FAILED
    assert "'unset'" in result.message


def test_check_provisioner_pods_requires_exactly_two_pods() -> None:
    result = check_provisioner_pods(_cluster(core_api=_core_with_pods([_pod("a")])))

    assert result.status == CheckStatus.FAILED
    assert "found 1" in result.message


def test_check_provisioner_pods_requires_omap_container() -> None:
    pods = [_pod("a"), _pod("b", containers=("csi-provisioner",))]

    result = check_provisioner_pods(_cluster(core_api=_core_with_pods(pods)))

    assert result.status == CheckStatus.FAILED
    assert "Pod b has no csi-omap-generator container" == result.message


def test_check_provisioner_pods_requires_ready_containers() -> None:
    pods = [_pod("a"), _pod("b", ready=False)]

    result = check_provisioner_pods(_cluster(core_api=_core_with_pods(pods)))

    assert result.status == CheckStatus.FAILED
    assert "not ready" in result.message


def test_check_provisioner_pods_ok() -> None:
    core_api = _core_with_pods([_pod("a"), _pod("b")])

    assert check_provisioner_pods(_cluster(core_api=core_api)).status == CheckStatus.OK
    core_api.list_namespaced_pod.assert_called_once_with(
        namespace="openshift-storage",
        label_selector="app=csi-rbdplugin-provisioner",
    )


def test_check_rbd_mirror_pod_missing_fails() -> None:
    assert check_rbd_mirror_pod(_cluster(core_api=_core_with_pods([]))).status == CheckStatus.FAILED


def test_check_rbd_mirror_pod_ready_is_ok() -> None:
    pods = [_pod("rook-ceph-rbd-mirror-a", containers=("rbd-mirror",))]

    assert check_rbd_mirror_pod(_cluster(core_api=_core_with_pods(pods))).status == CheckStatus.OK


def test_check_pool_mirroring_ignores_states_key() -> None:
    custom_api = _pool_custom_api(
        {"daemon_health": "OK", "health": "OK", "image_health": "OK", "states": {"replaying": 3}}
    )

    assert check_pool_mirroring(_cluster(custom_api=custom_api), POOL).status == CheckStatus.OK


def test_check_pool_mirroring_fails_on_any_non_ok_value() -> None:
    custom_api = _pool_custom_api({"daemon_health": "OK", "health": "WARNING", "states": {}})

    result = check_pool_mirroring(_cluster(custom_api=custom_api), POOL)

    assert result.status == CheckStatus.FAILED
    assert "health NOT OK. status: WARNING" in result.message


def test_check_pool_mirroring_without_summary_fails() -> None:
    assert check_pool_mirroring(_cluster(custom_api=_pool_custom_api(None)), POOL).status == CheckStatus.FAILED


def test_check_backup_operator_absent_is_warning() -> None:
    result = check_backup_operator(_cluster(core_api=_core_with_pods([])))

    assert result.status == CheckStatus.WARNING
    assert "consider installing OADP" in result.message


def test_check_network_curls_every_target_pod_ip() -> None:
    source = _cluster(
        "primary",
        core_api=_core_with_pods([_pod("network-check-target-a", namespace="openshift-network-diagnostics")]),
    )
    target = _cluster(
        "secondary",
        core_api=_core_with_pods([_pod("t1", pod_ip="10.128.0.5"), _pod("t2", pod_ip="10.129.0.7"), _pod("t3")]),
    )
    executor = Mock()
    executor.execute.return_value = _command_result()

    result = check_network(source, target, executor)

    assert result.status == CheckStatus.OK
    commands = [call.kwargs["command"] for call in executor.execute.call_args_list]
    assert commands == ["curl --silent --fail 10.128.0.5:8080", "curl --silent --fail 10.129.0.7:8080"]
    assert executor.execute.call_args.kwargs["pod_name"] == "network-check-target-a"
    assert executor.execute.call_args.kwargs["namespace"] == "openshift-network-diagnostics"


def test_check_network_with_curl_failure_fails() -> None:
    source = _cluster("primary", core_api=_core_with_pods([_pod("n", namespace="openshift-network-diagnostics")]))
    target = _cluster("secondary", core_api=_core_with_pods([_pod("t1", pod_ip="10.128.0.5")]))
    executor = Mock()
    executor.execute.return_value = _command_result(exit_code=7)

    result = check_network(source, target, executor)

    assert result.status == CheckStatus.FAILED
    assert "exit code 7" in result.message


def test_check_network_without_target_ips_fails() -> None:
    source = _cluster("primary", core_api=_core_with_pods([_pod("n")]))
    target = _cluster("secondary", core_api=_core_with_pods([_pod("t1")]))

    result = check_network(source, target, Mock())

    assert result.status == CheckStatus.FAILED
    assert "Could not find any IPs" in result.message


def test_run_verification_reports_each_check_per_cluster_and_survives_api_errors() -> None:
    core_api = Mock()
    core_api.read_namespaced_config_map.side_effect = ApiException(status=403, reason="Forbidden")
    core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[])
    custom_api = _pool_custom_api({"health": "OK"})
    events: list[WorkflowEvent] = []

    results = run_verification(
        _cluster("primary", core_api=core_api, custom_api=custom_api),
        _cluster("secondary", core_api=core_api, custom_api=custom_api),
        executor=Mock(),
        pool_name=POOL,
        reporter=EventReporter("verify", sink=events.append),
    )

    assert len(results) == 12
    assert [result.cluster for result in results[:6]] == ["primary"] * 6
    assert results[0].status == CheckStatus.FAILED
    assert "API status 403" in results[0].message
    statuses = {result.name: result.status for result in results if result.cluster == "primary"}
    assert statuses["pool-mirroring"] == CheckStatus.OK
    assert statuses["backup-operator"] == CheckStatus.WARNING
    assert any(event.level == "error" for event in events)
