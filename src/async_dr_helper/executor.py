"""Run storage tool commands inside cluster pods.

Commands are split on whitespace; there is no shell quoting. Output is
captured per channel and classified once here against a table of known
marker strings, so callers branch on :class:`CommandOutcome` instead of
matching stderr text themselves.
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes.client import ApiException
from kubernetes.stream import stream

from .k8s import OCS_NAMESPACE, ClusterHandle, safe_api_call
from .models import CommandOutcome, CommandResult

logger = structlog.get_logger(__name__)

TOOLBOX_LABEL_SELECTOR = "app=rook-ceph-tools"
DEFAULT_EXEC_TIMEOUT_SECONDS = 60

MIRRORING_NOT_ENABLED_MARKER = "mirroring not enabled on the image"

OUTCOME_MARKERS: tuple[tuple[str, CommandOutcome], ...] = (
    (MIRRORING_NOT_ENABLED_MARKER, CommandOutcome.MIRRORING_DISABLED),
)


class CommandTransportError(RuntimeError):
    """Raised when the exec channel to a pod cannot be opened or breaks."""


class ToolboxUnavailableError(RuntimeError):
    """Raised when exactly one Ceph toolbox pod cannot be found."""


def split_command(command: str) -> tuple[str, ...]:
    argv = tuple(command.split())
    if not argv:
        raise ValueError("command must not be empty")
    return argv


def classify_output(*, exit_code: int | None, stderr: str) -> CommandOutcome:
    for marker, outcome in OUTCOME_MARKERS:
        if marker in stderr:
            return outcome
    if stderr.strip():
        return CommandOutcome.FAILED
    if exit_code not in (0, None):
        return CommandOutcome.FAILED
    return CommandOutcome.OK


class CommandExecutor:
    def __init__(self, *, timeout_seconds: int = DEFAULT_EXEC_TIMEOUT_SECONDS) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds

    def execute(self, cluster: ClusterHandle, *, namespace: str, pod_name: str, command: str) -> CommandResult:
        argv = split_command(command)
        rendered = " ".join(argv)
        try:
            response = stream(
                cluster.core_api.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                command=list(argv),
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as error:
            raise CommandTransportError(
                f"Could not open exec channel for '{rendered}' on {cluster.name}:{namespace}/{pod_name}: "
                f"API status {error.status} ({error.reason or 'no reason provided'})"
            ) from error
        except Exception as error:  # pylint: disable=broad-except
            raise CommandTransportError(
                f"Could not open exec channel for '{rendered}' on {cluster.name}:{namespace}/{pod_name}: {error}"
            ) from error

        try:
            stdout, stderr, exit_code = self._collect(response)
        except Exception as error:  # pylint: disable=broad-except
            raise CommandTransportError(
                f"Failed executing '{rendered}' on {cluster.name}:{namespace}/{pod_name}: {error}"
            ) from error
        finally:
            response.close()

        outcome = classify_output(exit_code=exit_code, stderr=stderr)
        if outcome == CommandOutcome.FAILED:
            logger.warning(
                "command executed with error",
                cluster=cluster.name,
                pod=f"{namespace}/{pod_name}",
                command=rendered,
                exit_code=exit_code,
                stderr=stderr.strip(),
            )
        else:
            logger.debug("command executed", cluster=cluster.name, command=rendered, outcome=outcome.value)
        return CommandResult(
            command=argv,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            outcome=outcome,
        )

    def execute_in_toolbox(self, cluster: ClusterHandle, command: str) -> CommandResult:
        pod = find_toolbox_pod(cluster)
        return self.execute(
            cluster,
            namespace=pod.metadata.namespace or OCS_NAMESPACE,
            pod_name=pod.metadata.name,
            command=command,
        )

    def _collect(self, response: Any) -> tuple[str, str, int | None]:
        response.run_forever(timeout=self.timeout_seconds)
        if response.is_open():
            raise TimeoutError(f"command did not finish within {self.timeout_seconds}s")
        stdout = response.read_stdout() or ""
        stderr = response.read_stderr() or ""
        return stdout, stderr, response.returncode


def find_toolbox_pod(cluster: ClusterHandle) -> Any:
    pods = safe_api_call(
        operation=f"list toolbox pods in '{OCS_NAMESPACE}' in the {cluster.name} cluster",
        hint="Verify RBAC allows list on pods.",
        func=lambda: cluster.core_api.list_namespaced_pod(
            namespace=OCS_NAMESPACE,
            label_selector=TOOLBOX_LABEL_SELECTOR,
        ).items,
    )
    if not pods:
        raise ToolboxUnavailableError(
            f"No tools pod with label {TOOLBOX_LABEL_SELECTOR} found in the {cluster.name} cluster. "
            "Check that the install has completed successfully."
        )
    if len(pods) > 1:
        raise ToolboxUnavailableError(f"More than one tools pod found in the {cluster.name} cluster.")
    return pods[0]
