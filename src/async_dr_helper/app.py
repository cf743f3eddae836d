from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any

import streamlit as st
import yaml

from async_dr_helper.config import (
    AppConfig,
    ReplicationSettings,
    S3Settings,
    SettingsError,
    load_settings,
    save_settings,
)
from async_dr_helper.failover import list_restorable_namespaces
from async_dr_helper.k8s import KubernetesApiError, KubernetesAuthenticationError, load_cluster_handle
from async_dr_helper.logs import configure_logging
from async_dr_helper.models import CheckResult, CheckStatus, MirrorState, MirrorStatusRow, WorkflowEvent
from async_dr_helper.workflows import (
    CLUSTER_NAMES,
    AppContext,
    ConfigurationLockedError,
    WorkflowBusyError,
    WorkflowRunner,
    failover_workflow,
    install_workflow,
    mirror_info_workflow,
    mirror_table_workflow,
    mirror_toggle_workflow,
    verify_workflow,
)

_PAGE_INSTALL = "Install"
_PAGE_VERIFY = "Verify"
_PAGE_MIRROR = "Mirror status"
_PAGE_FAILOVER = "Failover / Failback"

_FAILOVER_LABEL = "Failover (primary -> secondary)"
_FAILBACK_LABEL = "Failback (secondary -> primary)"
_FAILOVER_DIRECTIONS = {
    _FAILOVER_LABEL: ("primary", "secondary"),
    _FAILBACK_LABEL: ("secondary", "primary"),
}

_CHECK_STATUS_LABELS = {
    CheckStatus.OK: "OK",
    CheckStatus.WARNING: "WARNING",
    CheckStatus.FAILED: "FAILED",
}

_EVENT_LOG_LIMIT = 500
_CANCEL_WAIT_SECONDS = 1.0


def _initialize_state(config: AppConfig) -> None:
    if "runner" not in st.session_state:
        configure_logging(config.log_file, config.log_level)
        settings = load_settings(config.settings_path)
        runner = WorkflowRunner(AppContext(config=config, settings=settings))
        st.session_state.runner = runner
        st.session_state.connection_errors = {}
        for cluster_name, path in (
            ("primary", settings.primary_kubeconfig_path),
            ("secondary", settings.secondary_kubeconfig_path),
        ):
            if path:
                error = _connect_cluster(runner, cluster_name, path)
                if error:
                    st.session_state.connection_errors[cluster_name] = error

    defaults: dict[str, Any] = {
        "event_log": [],
        "active_workflow": None,
        "mirror_rows": {},
        "mirror_info": "",
        "check_results": [],
        "failover_state": None,
        "workflow_error": "",
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _connect_cluster(runner: WorkflowRunner, cluster_name: str, kubeconfig_path_input: str) -> str | None:
    validation_error = _validate_kubeconfig_path_input(kubeconfig_path_input)
    if validation_error:
        return validation_error
    try:
        handle = load_cluster_handle(cluster_name, kubeconfig_path_input)
        runner.update_context(lambda context: context.with_cluster(handle))
    except (KubernetesAuthenticationError, ConfigurationLockedError) as error:
        return str(error)
    return None


def _format_event(event: WorkflowEvent) -> str:
    prefix = f"[{event.cluster}] " if event.cluster else ""
    if event.level == "warning":
        return f"WARNING: {prefix}{event.message}"
    if event.level == "error":
        return f"ERROR: {prefix}{event.message}"
    return f"{prefix}{event.message}"


def _build_cluster_rows(context: AppContext) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for cluster_name, path in (
        ("primary", context.settings.primary_kubeconfig_path),
        ("secondary", context.settings.secondary_kubeconfig_path),
    ):
        handle = context.primary if cluster_name == "primary" else context.secondary
        rows.append(
            {
                "cluster": cluster_name,
                "kubeconfig": path or "not set",
                "location": handle.location if handle is not None else "unknown",
                "state": "Connected" if handle is not None else "Not connected",
            }
        )
    return rows


def _build_mirror_rows(rows: list[MirrorStatusRow]) -> list[dict[str, str]]:
    return [
        {
            "namespace": row.namespace,
            "pvc": row.claim_name,
            "pv": row.volume_name,
            "mirroring": "Active" if row.state == MirrorState.ACTIVE else "Inactive",
        }
        for row in rows
    ]


def _build_check_rows(results: list[CheckResult]) -> list[dict[str, str]]:
    return [
        {
            "cluster": result.cluster,
            "check": result.name,
            "status": _CHECK_STATUS_LABELS[result.status],
            "message": result.message,
        }
        for result in results
    ]


def _label_for_mirror_row(row: MirrorStatusRow) -> str:
    return f"{row.namespace}/{row.claim_name} | pv={row.volume_name}"


def _validate_s3_inputs(
    *,
    bucket_input: str,
    region_input: str,
    access_key_id_input: str,
    secret_access_key_input: str,
) -> list[str]:
    errors: list[str] = []
    if not bucket_input.strip():
        errors.append("S3 bucket is required.")
    if not region_input.strip():
        errors.append("S3 region is required.")
    if not access_key_id_input.strip():
        errors.append("S3 access key id is required.")
    if not secret_access_key_input:
        errors.append("S3 secret access key is required.")
    return errors


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _start_workflow(runner: WorkflowRunner, name: str, workflow: Any) -> None:
    try:
        runner.start(name, workflow)
    except WorkflowBusyError as error:
        st.warning(str(error))
        return
    st.session_state.active_workflow = name
    st.session_state.workflow_error = ""
    st.session_state.event_log = []


def _collect_result(runner: WorkflowRunner, name: str) -> None:
    result = runner.take_result(name)
    if name == "install" or result is None:
        return
    if name == "verify":
        st.session_state.check_results = result
    elif name == "failover":
        st.session_state.failover_state = result
    elif name.startswith("mirror-info-"):
        st.session_state.mirror_info = result
    elif name.startswith("mirror-"):
        cluster_name = name.rsplit("-", 1)[-1]
        st.session_state.mirror_rows = {**st.session_state.mirror_rows, cluster_name: result}


@st.fragment(run_every=2)
def _render_workflow_output() -> None:
    runner: WorkflowRunner = st.session_state.runner
    lines = [_format_event(event) for event in runner.drain_events()]
    if lines:
        st.session_state.event_log = (st.session_state.event_log + lines)[-_EVENT_LOG_LIMIT:]

    active = st.session_state.active_workflow
    if active is not None:
        if runner.is_busy():
            st.caption(f"Running: {active}")
            if st.button("Cancel workflow"):
                runner.cancel()
                if not runner.join(timeout=_CANCEL_WAIT_SECONDS):
                    st.caption(f"Waiting for {active} to stop at its next checkpoint")
        else:
            st.session_state.active_workflow = None
            error = runner.error_for(active)
            st.session_state.workflow_error = f"{active} failed: {error}" if error is not None else ""
            _collect_result(runner, active)
            st.rerun()

    if st.session_state.event_log:
        st.code("\n".join(st.session_state.event_log), language=None)
    else:
        st.caption("No workflow output yet.")


def _render_sidebar(runner: WorkflowRunner) -> None:
    context = runner.context
    st.sidebar.header("Clusters")
    for cluster_name in CLUSTER_NAMES:
        current = (
            context.settings.primary_kubeconfig_path
            if cluster_name == "primary"
            else context.settings.secondary_kubeconfig_path
        )
        path_input = st.sidebar.text_input(
            f"{cluster_name.capitalize()} kubeconfig path",
            value=current,
            key=f"kubeconfig_{cluster_name}",
        )
        if st.sidebar.button(f"Connect {cluster_name}", disabled=runner.is_busy()):
            error = _connect_cluster(runner, cluster_name, path_input)
            if error:
                st.session_state.connection_errors[cluster_name] = error
            else:
                st.session_state.connection_errors.pop(cluster_name, None)
                settings = runner.context.settings.with_kubeconfig_path(cluster_name, path_input.strip())
                _save_settings(runner, settings)
        connection_error = st.session_state.connection_errors.get(cluster_name)
        if connection_error:
            st.sidebar.error(connection_error)

    dedicated_pool = st.sidebar.checkbox(
        "Use dedicated block pool",
        value=context.settings.dedicated_pool,
        disabled=runner.is_busy(),
        help="Create a separate mirrored pool and storage class instead of mirroring the default pool.",
    )
    if dedicated_pool != context.settings.dedicated_pool:
        _save_settings(runner, _replace_settings(context, dedicated_pool=dedicated_pool))

    st.sidebar.header("S3 backup target")
    s3 = context.settings.s3
    with st.sidebar.form("s3_form"):
        bucket_input = st.text_input("Bucket", value=s3.bucket)
        region_input = st.text_input("Region", value=s3.region)
        endpoint_input = st.text_input("Endpoint URL (optional)", value=s3.endpoint_url)
        prefix_input = st.text_input("Object prefix (optional)", value=s3.prefix)
        path_style_input = st.checkbox("Path-style addressing", value=s3.path_style)
        insecure_input = st.checkbox("Skip TLS verification", value=s3.insecure)
        access_key_input = st.text_input("Access key id", value=s3.access_key_id)
        secret_key_input = st.text_input("Secret access key", value=s3.secret_access_key, type="password")
        submitted = st.form_submit_button("Save S3 settings", disabled=runner.is_busy())

    if submitted:
        errors = _validate_s3_inputs(
            bucket_input=bucket_input,
            region_input=region_input,
            access_key_id_input=access_key_input,
            secret_access_key_input=secret_key_input,
        )
        if errors:
            for error in errors:
                st.sidebar.error(error)
        else:
            updated_s3 = S3Settings(
                bucket=bucket_input.strip(),
                region=region_input.strip(),
                endpoint_url=endpoint_input.strip(),
                path_style=path_style_input,
                insecure=insecure_input,
                access_key_id=access_key_input.strip(),
                secret_access_key=secret_key_input,
                prefix=prefix_input.strip(),
            )
            _save_settings(runner, _replace_settings(context, s3=updated_s3))
            st.sidebar.success("S3 settings saved.")

    st.sidebar.caption(f"Settings file: {context.config.settings_path}")
    st.sidebar.caption(f"Log file: {context.config.log_file}")


def _replace_settings(context: AppContext, **changes: Any) -> ReplicationSettings:
    return replace(context.settings, **changes)


def _save_settings(runner: WorkflowRunner, settings: ReplicationSettings) -> None:
    try:
        context = runner.update_context(lambda current: current.with_settings(settings))
        save_settings(context.config.settings_path, settings)
    except (ConfigurationLockedError, SettingsError) as error:
        st.sidebar.error(str(error))


def _render_install_page(runner: WorkflowRunner) -> None:
    st.subheader("Install")
    st.caption(
        "Enables the OMAP generator, pool mirroring, the peer bootstrap exchange, the RBD mirror daemon, "
        "the Ceph toolbox and Retain on the storage class in both clusters. Installs OADP when S3 is configured."
    )
    if not runner.context.settings.s3.configured:
        st.info("S3 target is not configured. The backup operator install will be skipped.")
    if st.button("Run install", type="primary", disabled=runner.is_busy()):
        _start_workflow(runner, "install", install_workflow)


def _render_verify_page(runner: WorkflowRunner) -> None:
    st.subheader("Verify")
    if st.button("Run verification", type="primary", disabled=runner.is_busy()):
        _start_workflow(runner, "verify", verify_workflow)

    results: list[CheckResult] = st.session_state.check_results
    if not results:
        st.info("Run verification to check both clusters.")
        return
    st.dataframe(_build_check_rows(results), use_container_width=True, hide_index=True)
    for result in results:
        if result.status == CheckStatus.FAILED:
            st.error(f"{result.cluster}/{result.name}: {result.message}")
        elif result.status == CheckStatus.WARNING:
            st.warning(f"{result.cluster}/{result.name}: {result.message}")


def _render_mirror_page(runner: WorkflowRunner) -> None:
    st.subheader("Mirror status")
    cluster_name = st.radio("Cluster", options=list(CLUSTER_NAMES), horizontal=True)
    if st.button("Refresh", disabled=runner.is_busy()):
        _start_workflow(runner, f"mirror-table-{cluster_name}", mirror_table_workflow(cluster_name))

    rows: list[MirrorStatusRow] = st.session_state.mirror_rows.get(cluster_name, [])
    if not rows:
        st.info("Click 'Refresh' to load PersistentVolume mirror status.")
        return

    st.dataframe(_build_mirror_rows(rows), use_container_width=True, hide_index=True)
    labels = [_label_for_mirror_row(row) for row in rows]
    label_to_row = dict(zip(labels, rows, strict=False))
    selected_labels = st.multiselect("Choose PersistentVolumes", options=labels, key=f"mirror_selection_{cluster_name}")
    selected_names = [label_to_row[label].volume_name for label in selected_labels]

    columns = st.columns(3)
    if columns[0].button("Enable mirroring", disabled=runner.is_busy() or not selected_names):
        _start_workflow(
            runner,
            f"mirror-toggle-{cluster_name}",
            mirror_toggle_workflow(cluster_name, rows, selected_names, enable=True),
        )
    if columns[1].button("Disable mirroring", disabled=runner.is_busy() or not selected_names):
        _start_workflow(
            runner,
            f"mirror-toggle-{cluster_name}",
            mirror_toggle_workflow(cluster_name, rows, selected_names, enable=False),
        )
    if columns[2].button("Show mirror info", disabled=runner.is_busy() or len(selected_names) != 1):
        row = label_to_row[selected_labels[0]]
        _start_workflow(runner, f"mirror-info-{cluster_name}", mirror_info_workflow(cluster_name, row))

    if st.session_state.mirror_info:
        st.code(st.session_state.mirror_info, language=None)


def _render_failover_page(runner: WorkflowRunner) -> None:
    st.subheader("Failover / Failback")
    direction_label = st.radio("Direction", options=list(_FAILOVER_DIRECTIONS), horizontal=True)
    source_name, target_name = _FAILOVER_DIRECTIONS[direction_label]

    # The source cluster may be unreachable during a failover.
    try:
        target = runner.context.cluster(target_name)
        namespaces = list_restorable_namespaces(target)
    except (RuntimeError, KubernetesApiError) as error:
        st.error(str(error))
        return

    selected_namespaces = st.multiselect(
        "Namespaces to fail over",
        options=namespaces,
        key=f"failover_namespaces_{source_name}",
    )
    st.caption(
        f"Demotes volumes in the {source_name} cluster (failures tolerated), promotes them in the "
        f"{target_name} cluster and restores the namespaces from the newest backup when OADP is installed."
    )
    confirmed = st.checkbox("I understand this changes which cluster serves the selected namespaces")
    if st.button(
        "Start",
        type="primary",
        disabled=runner.is_busy() or not selected_namespaces or not confirmed,
    ):
        _start_workflow(runner, "failover", failover_workflow(source_name, target_name, selected_namespaces))

    if st.session_state.failover_state is not None:
        st.caption(f"Last failover finished in state: {st.session_state.failover_state.value}")


def main() -> None:
    st.set_page_config(page_title="Async DR Helper", layout="wide")
    config = AppConfig()
    _initialize_state(config)
    runner: WorkflowRunner = st.session_state.runner

    st.title("Async DR Helper")
    st.caption("Set up asynchronous RBD mirroring between two OpenShift clusters and fail namespaces over.")
    st.dataframe(_build_cluster_rows(runner.context), use_container_width=True, hide_index=True)

    _render_sidebar(runner)

    page = st.sidebar.radio("Page", options=[_PAGE_INSTALL, _PAGE_VERIFY, _PAGE_MIRROR, _PAGE_FAILOVER])
    if page == _PAGE_INSTALL:
        _render_install_page(runner)
    elif page == _PAGE_VERIFY:
        _render_verify_page(runner)
    elif page == _PAGE_MIRROR:
        _render_mirror_page(runner)
    else:
        _render_failover_page(runner)

    st.subheader("Workflow output")
    if st.session_state.workflow_error:
        st.error(st.session_state.workflow_error)
    _render_workflow_output()


if __name__ == "__main__":
    main()
