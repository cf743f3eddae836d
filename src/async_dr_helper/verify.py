from __future__ import annotations

from typing import Any, Callable

import structlog

from . import oadp
from .events import EventReporter
from .executor import CommandExecutor, CommandTransportError
from .k8s import CEPH_BLOCK_POOL, OCS_NAMESPACE, ClusterHandle, KubernetesApiError, get_custom_object, safe_api_call
from .models import CheckResult, CheckStatus
from .reconciler import OMAP_GENERATOR_CONTAINER, OMAP_GENERATOR_FLAG, OPERATOR_CONFIG_MAP

logger = structlog.get_logger(__name__)

RBD_PROVISIONER_LABEL_SELECTOR = "app=csi-rbdplugin-provisioner"
RBD_MIRROR_LABEL_SELECTOR = "app=rook-ceph-rbd-mirror"
EXPECTED_PROVISIONER_PODS = 2

NETWORK_DIAGNOSTICS_NAMESPACE = "openshift-network-diagnostics"
NETWORK_CHECK_LABEL_SELECTOR = "app=network-check-target"
NETWORK_CHECK_PORT = 8080


def check_omap_flag(cluster: ClusterHandle) -> CheckResult:
    config_map = safe_api_call(
        operation=f"read configmap '{OPERATOR_CONFIG_MAP}' in the {cluster.name} cluster",
        hint="Verify OCS is installed and RBAC allows get on configmaps.",
        func=lambda: cluster.core_api.read_namespaced_config_map(name=OPERATOR_CONFIG_MAP, namespace=OCS_NAMESPACE),
    )
    value = (config_map.data or {}).get(OMAP_GENERATOR_FLAG)
    if value == "true":
        return _result(cluster, "omap-flag", CheckStatus.OK, f"{OMAP_GENERATOR_FLAG} ... OK")
    return _result(
        cluster,
        "omap-flag",
        CheckStatus.FAILED,
        f"{OMAP_GENERATOR_FLAG} is '{value or 'unset'}' in {OPERATOR_CONFIG_MAP}, expected 'true'",
    )


def check_provisioner_pods(cluster: ClusterHandle) -> CheckResult:
    pods = _list_pods(cluster, OCS_NAMESPACE, RBD_PROVISIONER_LABEL_SELECTOR)
    if not pods:
        return _result(
            cluster,
            "rbd-provisioner",
            CheckStatus.FAILED,
            f"No pods in {OCS_NAMESPACE} namespace with label {RBD_PROVISIONER_LABEL_SELECTOR} found",
        )
    if len(pods) != EXPECTED_PROVISIONER_PODS:
        return _result(
            cluster,
            "rbd-provisioner",
            CheckStatus.FAILED,
            f"There should be {EXPECTED_PROVISIONER_PODS} pods from deployment/csi-rbdplugin-provisioner, "
            f"found {len(pods)}",
        )

    for pod in pods:
        container_names = [container.name for container in (pod.spec.containers if pod.spec else None) or []]
        if OMAP_GENERATOR_CONTAINER not in container_names:
            return _result(
                cluster,
                "rbd-provisioner",
                CheckStatus.FAILED,
                f"Pod {pod.metadata.name} has no {OMAP_GENERATOR_CONTAINER} container",
            )
        not_ready = _not_ready_containers(pod)
        if not_ready:
            return _result(
                cluster,
                "rbd-provisioner",
                CheckStatus.FAILED,
                f"Pod {pod.metadata.name} containers not ready: {', '.join(not_ready)}",
            )
    return _result(cluster, "rbd-provisioner", CheckStatus.OK, "RBD provisioner pods ... OK")


def check_rbd_mirror_pod(cluster: ClusterHandle) -> CheckResult:
    pods = _list_pods(cluster, OCS_NAMESPACE, RBD_MIRROR_LABEL_SELECTOR)
    if not pods:
        return _result(cluster, "rbd-mirror", CheckStatus.FAILED, "No RBD mirror daemon pod found")
    for pod in pods:
        not_ready = _not_ready_containers(pod)
        if not_ready:
            return _result(
                cluster,
                "rbd-mirror",
                CheckStatus.FAILED,
                f"RBD mirror pod {pod.metadata.name} containers not ready: {', '.join(not_ready)}",
            )
    return _result(cluster, "rbd-mirror", CheckStatus.OK, "RBD mirror daemon ... OK")


def check_pool_mirroring(cluster: ClusterHandle, pool_name: str) -> CheckResult:
    pool = get_custom_object(cluster, CEPH_BLOCK_POOL, namespace=OCS_NAMESPACE, name=pool_name)
    if pool is None:
        return _result(cluster, "pool-mirroring", CheckStatus.FAILED, f"CephBlockPool {pool_name} not found")

    summary = (((pool.get("status") or {}).get("mirroringStatus") or {}).get("summary") or {}).get("summary")
    if not isinstance(summary, dict) or not summary:
        return _result(
            cluster,
            "pool-mirroring",
            CheckStatus.FAILED,
            f"CephBlockPool {pool_name} does not report a mirroring summary yet",
        )

    for key, value in sorted(summary.items()):
        if key == "states":
            continue
        if value != "OK":
            return _result(
                cluster,
                "pool-mirroring",
                CheckStatus.FAILED,
                f"CephBlockPool {pool_name} {key} NOT OK. status: {value}",
            )
    return _result(cluster, "pool-mirroring", CheckStatus.OK, f"CephBlockPool {pool_name} mirroring ... OK")


def check_backup_operator(cluster: ClusterHandle) -> CheckResult:
    pods = _list_pods(cluster, oadp.OADP_NAMESPACE, None)
    if not pods:
        return _result(
            cluster,
            "backup-operator",
            CheckStatus.WARNING,
            "OADP does NOT appear to be installed and running. Please consider installing OADP.",
        )
    return _result(cluster, "backup-operator", CheckStatus.OK, "OADP Operator ... OK")


def check_network(source: ClusterHandle, target: ClusterHandle, executor: CommandExecutor) -> CheckResult:
    name = f"network-to-{target.name}"
    source_pods = _list_pods(source, NETWORK_DIAGNOSTICS_NAMESPACE, NETWORK_CHECK_LABEL_SELECTOR)
    if not source_pods:
        return _result(source, name, CheckStatus.FAILED, "No network-check pod found to run the check from")
    target_pods = _list_pods(target, NETWORK_DIAGNOSTICS_NAMESPACE, NETWORK_CHECK_LABEL_SELECTOR)
    ips = [pod.status.pod_ip for pod in target_pods if pod.status and pod.status.pod_ip]
    if not ips:
        return _result(
            source,
            name,
            CheckStatus.FAILED,
            f"Could not find any IPs to connect to in the {target.name} cluster",
        )

    runner_pod = source_pods[0]
    for ip in ips:
        result = executor.execute(
            source,
            namespace=runner_pod.metadata.namespace or NETWORK_DIAGNOSTICS_NAMESPACE,
            pod_name=runner_pod.metadata.name,
            command=f"curl --silent --fail {ip}:{NETWORK_CHECK_PORT}",
        )
        if not result.succeeded:
            detail = result.stderr.strip() or f"exit code {result.exit_code}"
            return _result(source, name, CheckStatus.FAILED, f"{ip}:{NETWORK_CHECK_PORT} is not reachable: {detail}")
    return _result(source, name, CheckStatus.OK, f"Pod network of the {target.name} cluster ... OK")


def run_verification(
    primary: ClusterHandle,
    secondary: ClusterHandle,
    *,
    executor: CommandExecutor,
    pool_name: str,
    reporter: EventReporter,
) -> list[CheckResult]:
    results: list[CheckResult] = []
    for cluster, peer in ((primary, secondary), (secondary, primary)):
        reporter.info(f"{cluster.name} cluster")
        checks: list[tuple[str, Callable[[], CheckResult]]] = [
            ("omap-flag", lambda cluster=cluster: check_omap_flag(cluster)),
            ("rbd-provisioner", lambda cluster=cluster: check_provisioner_pods(cluster)),
            ("rbd-mirror", lambda cluster=cluster: check_rbd_mirror_pod(cluster)),
            ("pool-mirroring", lambda cluster=cluster: check_pool_mirroring(cluster, pool_name)),
            ("backup-operator", lambda cluster=cluster: check_backup_operator(cluster)),
            (
                f"network-to-{peer.name}",
                lambda cluster=cluster, peer=peer: check_network(cluster, peer, executor),
            ),
        ]
        for name, check in checks:
            result = _guarded(cluster, name, check)
            _report(reporter, result)
            results.append(result)
    return results


def _guarded(cluster: ClusterHandle, name: str, check: Callable[[], CheckResult]) -> CheckResult:
    try:
        return check()
    except (KubernetesApiError, CommandTransportError) as error:
        logger.warning("verification check could not run", cluster=cluster.name, check=name, error=str(error))
        return _result(cluster, name, CheckStatus.FAILED, str(error))


def _report(reporter: EventReporter, result: CheckResult) -> None:
    if result.status == CheckStatus.OK:
        reporter.info(result.message, cluster=result.cluster)
    elif result.status == CheckStatus.WARNING:
        reporter.warning(result.message, cluster=result.cluster)
    else:
        reporter.error(result.message, cluster=result.cluster)


def _list_pods(cluster: ClusterHandle, namespace: str, label_selector: str | None) -> list[Any]:
    kwargs: dict[str, Any] = {"namespace": namespace}
    if label_selector:
        kwargs["label_selector"] = label_selector
    return safe_api_call(
        operation=f"list pods in '{namespace}' in the {cluster.name} cluster",
        hint="Verify RBAC allows list on pods.",
        func=lambda: cluster.core_api.list_namespaced_pod(**kwargs).items,
    )


def _not_ready_containers(pod: Any) -> list[str]:
    statuses = (pod.status.container_statuses if pod.status else None) or []
    if not statuses:
        return ["<no container status>"]
    return [status.name for status in statuses if not status.ready]


def _result(cluster: ClusterHandle, name: str, status: CheckStatus, message: str) -> CheckResult:
    return CheckResult(cluster=cluster.name, name=name, status=status, message=message)
