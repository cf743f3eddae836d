from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from async_dr_helper import mirror
from async_dr_helper.executor import CommandTransportError
from async_dr_helper.k8s import ClusterHandle
from async_dr_helper.mirror import MirrorCommandError, MirrorStatusTracker, active_namespaces
from async_dr_helper.models import CommandOutcome, CommandResult, MirrorState, PersistentVolumeRef


class FakeRbdExecutor:
    """Tracks per-image mirroring and answers like the rbd CLI would."""

    def __init__(self, enabled: set[str] | None = None, failing: dict[str, str] | None = None) -> None:
        self.enabled = set(enabled or ())
        self.failing = dict(failing or {})
        self.commands: list[str] = []

    def execute_in_toolbox(self, cluster: ClusterHandle, command: str) -> CommandResult:
        self.commands.append(command)
        argv = command.split()
        action, image = argv[5], argv[6]
        if image in self.failing:
            return _result(argv, stderr=self.failing[image], exit_code=1)
        if action == "enable":
            self.enabled.add(image)
            return _result(argv, stdout="Mirroring enabled\n")
        if action == "disable":
            self.enabled.discard(image)
            return _result(argv, stdout="Mirroring disabled\n")
        if image not in self.enabled:
            return _result(
                argv,
                stderr="rbd: mirroring not enabled on the image",
                exit_code=22,
                outcome=CommandOutcome.MIRRORING_DISABLED,
            )
        return _result(argv, stdout=f"{image}:\n  state: up+replaying\n")


def _result(
    argv: list[str],
    *,
    stdout: str = "",
    stderr: str = "",
    exit_code: int = 0,
    outcome: CommandOutcome | None = None,
) -> CommandResult:
    if outcome is None:
        outcome = CommandOutcome.FAILED if stderr else CommandOutcome.OK
    return CommandResult(command=tuple(argv), exit_code=exit_code, stdout=stdout, stderr=stderr, outcome=outcome)


def _cluster(pvs: list[SimpleNamespace] | None = None) -> ClusterHandle:
    core_api = Mock()
    core_api.list_persistent_volume.return_value = SimpleNamespace(items=pvs or [])
    return ClusterHandle(
        name="primary",
        kubeconfig_path="/kube/primary",
        location="cluster-a.example.invalid",
        api_client=Mock(),
        core_api=core_api,
        storage_api=Mock(),
        custom_api=Mock(),
    )


def _pv(name: str, *, namespace: str | None, claim_name: str = "data") -> SimpleNamespace:
    claim = SimpleNamespace(namespace=namespace, name=claim_name) if namespace else None
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(
            csi=SimpleNamespace(
                driver="openshift-storage.rbd.csi.ceph.com",
                volume_attributes={"imageName": f"img-{name}", "pool": "ocs-storagecluster-cephblockpool"},
            ),
            claim_ref=claim,
        ),
    )


def _ref(name: str = "pv-1") -> PersistentVolumeRef:
    return PersistentVolumeRef(
        name=name,
        claim_namespace="app1",
        claim_name="data",
        image_name=f"img-{name}",
        pool_name="ocs-storagecluster-cephblockpool",
    )


@pytest.fixture(autouse=True)
def _no_backup_operator(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mirror.oadp, "is_oadp_installed", lambda cluster: False)


def test_set_status_enable_then_check_status_reports_active() -> None:
    tracker = MirrorStatusTracker(FakeRbdExecutor())
    cluster = _cluster()
    ref = _ref()

    assert tracker.check_status(cluster, ref) == MirrorState.INACTIVE
    tracker.set_status(cluster, ref, True)

    assert tracker.check_status(cluster, ref) == MirrorState.ACTIVE


def test_set_status_disable_then_check_status_reports_inactive() -> None:
    tracker = MirrorStatusTracker(FakeRbdExecutor(enabled={"img-pv-1"}))
    cluster = _cluster()

    tracker.set_status(cluster, _ref(), False)

    assert tracker.check_status(cluster, _ref()) == MirrorState.INACTIVE


def test_check_status_with_marker_stderr_is_inactive_not_error() -> None:
    executor = FakeRbdExecutor()

    assert MirrorStatusTracker(executor).check_status(_cluster(), _ref()) == MirrorState.INACTIVE
    assert executor.commands == ["rbd -p ocs-storagecluster-cephblockpool mirror image status img-pv-1"]


def test_check_status_with_other_stderr_raises() -> None:
    executor = FakeRbdExecutor(failing={"img-pv-1": "rbd: error opening image img-pv-1: (2) No such file"})

    with pytest.raises(MirrorCommandError, match="No such file") as error_info:
        MirrorStatusTracker(executor).check_status(_cluster(), _ref())

    assert error_info.value.result is not None
    assert error_info.value.result.outcome == CommandOutcome.FAILED


def test_set_status_with_failure_raises_with_command_in_message() -> None:
    executor = FakeRbdExecutor(failing={"img-pv-1": "rbd: permission denied"})

    with pytest.raises(MirrorCommandError, match="mirror image enable img-pv-1 snapshot"):
        MirrorStatusTracker(executor).set_status(_cluster(), _ref(), True)


def test_mirror_info_returns_status_output() -> None:
    tracker = MirrorStatusTracker(FakeRbdExecutor(enabled={"img-pv-1"}))

    assert "up+replaying" in tracker.mirror_info(_cluster(), _ref())


def test_demote_and_promote_run_rbd_image_commands() -> None:
    executor = FakeRbdExecutor(enabled={"img-pv-1"})
    tracker = MirrorStatusTracker(executor)

    tracker.demote(_cluster(), _ref())
    tracker.promote(_cluster(), _ref())

    assert executor.commands == [
        "rbd -p ocs-storagecluster-cephblockpool mirror image demote img-pv-1",
        "rbd -p ocs-storagecluster-cephblockpool mirror image promote img-pv-1",
    ]


def test_list_rows_excludes_volumes_without_bound_claim() -> None:
    cluster = _cluster(
        [
            _pv("pv-b", namespace="app2", claim_name="logs"),
            _pv("pv-unbound", namespace=None),
            _pv("pv-a", namespace="app1", claim_name="data"),
        ]
    )
    executor = FakeRbdExecutor(enabled={"img-pv-a"})

    rows = MirrorStatusTracker(executor).list_rows(cluster)

    assert [(row.namespace, row.claim_name, row.state) for row in rows] == [
        ("app1", "data", MirrorState.ACTIVE),
        ("app2", "logs", MirrorState.INACTIVE),
    ]
    assert not any("img-pv-unbound" in command for command in executor.commands)


def test_list_rows_skips_volumes_whose_status_cannot_be_read() -> None:
    cluster = _cluster([_pv("pv-a", namespace="app1"), _pv("pv-b", namespace="app2")])
    executor = FakeRbdExecutor(failing={"img-pv-a": "rbd: timed out"})

    rows = MirrorStatusTracker(executor).list_rows(cluster)

    assert [row.volume_name for row in rows] == ["pv-b"]


def test_apply_selection_changes_only_selected_rows_that_differ() -> None:
    cluster = _cluster([_pv("pv-a", namespace="app1"), _pv("pv-b", namespace="app2")])
    executor = FakeRbdExecutor()
    tracker = MirrorStatusTracker(executor)
    rows = tracker.list_rows(cluster)
    executor.commands.clear()

    updated = tracker.apply_selection(cluster, rows, ["pv-a"], enable=True)

    assert [(row.volume_name, row.state) for row in updated] == [
        ("pv-a", MirrorState.ACTIVE),
        ("pv-b", MirrorState.INACTIVE),
    ]
    assert executor.commands == ["rbd -p ocs-storagecluster-cephblockpool mirror image enable img-pv-a snapshot"]


def test_apply_selection_keeps_previous_state_when_command_fails() -> None:
    cluster = _cluster([_pv("pv-a", namespace="app1")])
    tracker = MirrorStatusTracker(FakeRbdExecutor())
    rows = tracker.list_rows(cluster)
    tracker.executor = Mock(execute_in_toolbox=Mock(side_effect=CommandTransportError("stream closed")))

    updated = tracker.apply_selection(cluster, rows, ["pv-a"], enable=True)

    assert updated[0].state == MirrorState.INACTIVE


def test_apply_selection_with_backup_operator_refreshes_schedule(monkeypatch: pytest.MonkeyPatch) -> None:
    cluster = _cluster([_pv("pv-a", namespace="app1"), _pv("pv-b", namespace="app2")])
    tracker = MirrorStatusTracker(FakeRbdExecutor(enabled={"img-pv-b"}))
    rows = tracker.list_rows(cluster)
    schedule = Mock()
    monkeypatch.setattr(mirror.oadp, "is_oadp_installed", lambda cluster: True)
    monkeypatch.setattr(mirror.oadp, "apply_backup_schedule", schedule)

    tracker.apply_selection(cluster, rows, ["pv-a"], enable=True)

    schedule.assert_called_once_with(cluster, ["app1", "app2"])


def test_active_namespaces_is_sorted_and_unique() -> None:
    rows = [
        SimpleNamespace(namespace="b", state=MirrorState.ACTIVE),
        SimpleNamespace(namespace="a", state=MirrorState.ACTIVE),
        SimpleNamespace(namespace="b", state=MirrorState.ACTIVE),
        SimpleNamespace(namespace="c", state=MirrorState.INACTIVE),
    ]

    assert active_namespaces(rows) == ["a", "b"]
