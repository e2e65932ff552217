from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

import streamlit as st
import yaml

from vcluster_platform_ops.archive import ArchiveFormatError, load_archive, to_yaml, write_archive
from vcluster_platform_ops.backup import DOCUMENTED_SKIP_NAMES, RESOURCE_CATALOGUE, BackupCollection, collect_backup
from vcluster_platform_ops.config import AppConfig, ensure_directories
from vcluster_platform_ops.k8s import (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    get_cluster_summary,
    host_connection_factory,
    is_platform_installed,
    list_kube_contexts,
    load_kubernetes_clients,
    write_pasted_kubeconfig,
)
from vcluster_platform_ops.lifecycle import LEAVE_SLEEPING_OPTION, WAKE_NOW_OPTION
from vcluster_platform_ops.logging import configure_logging
from vcluster_platform_ops.models import OUTCOME_ADDED, OUTCOME_FAILED, RegistrationOptions, RegistrationOutcome
from vcluster_platform_ops.prompts import static_prompter
from vcluster_platform_ops.registration import add_vclusters

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"
_AUTH_MODE_ALIASES = {
    "path": _AUTH_MODE_USE_KUBECONFIG_PATH,
    "kubeconfig": _AUTH_MODE_USE_KUBECONFIG_PATH,
    "paste": _AUTH_MODE_PASTE_KUBECONFIG,
    "in-cluster": _AUTH_MODE_IN_CLUSTER,
    "incluster": _AUTH_MODE_IN_CLUSTER,
}
_SERVICE_ACCOUNT_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")

_TARGET_MODE_SINGLE_LABEL = "Single vCluster"
_TARGET_MODE_ALL_LABEL = "All vClusters in all namespaces"

_WAKE_POLICY_LEAVE_LABEL = "Leave sleeping vClusters asleep (added on next wakeup)"
_WAKE_POLICY_WAKE_LABEL = "Wake sleeping vClusters and add now"

_OUTCOME_STATUS_LABELS = {
    OUTCOME_ADDED: "Added",
    OUTCOME_FAILED: "Failed",
}

_FAILURE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "failed to wake up vcluster",
        "Verify RBAC allows patching the vCluster StatefulSet or Deployment.",
    ),
    (
        "timed out waiting for vcluster",
        "Inspect the vCluster pods and consider increasing VCPO_WAKE_TIMEOUT_SECONDS for slow clusters.",
    ),
    (
        "delete vcluster workloads",
        "The platform secret was applied; delete the vCluster pods manually to finish registration.",
    ),
    (
        "failed to capture your response",
        "Choose a wake policy before adding sleeping vClusters.",
    ),
    (
        "Kubernetes authentication setup failed",
        "Verify the kubeconfig and context can reach the vCluster host cluster.",
    ),
    (
        "API status 403",
        "Review RBAC permissions for secrets and pods in the vCluster namespace.",
    ),
)


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "last_backup": None,
        "last_registration": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for marker, hint in _FAILURE_HINTS:
        if marker in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the vCluster pods and platform logs for more detail."


def _build_outcome_rows(outcomes: list[RegistrationOutcome]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for outcome in outcomes:
        actionable_message = outcome.message
        if outcome.status == OUTCOME_FAILED:
            actionable_message = _actionable_next_step(outcome.message)

        rows.append(
            {
                "namespace": outcome.namespace,
                "vcluster": outcome.name,
                "status": _OUTCOME_STATUS_LABELS.get(outcome.status, "Pending wakeup"),
                "message": actionable_message,
            }
        )
    return rows


def _build_collection_rows(collection: BackupCollection) -> list[dict[str, str]]:
    counts: dict[str, int] = {}
    for record in collection.records:
        counts[record.kind] = counts.get(record.kind, 0) + 1
    warnings = {error.kind: str(error) for error in collection.errors}

    rows: list[dict[str, str]] = []
    for resource_kind in RESOURCE_CATALOGUE:
        count = counts.get(resource_kind.kind, 0)
        warning = warnings.get(resource_kind.plural, "")
        if count or warning:
            rows.append({"kind": resource_kind.plural, "records": str(count), "warning": warning})
    return rows


def _wake_policy_answer(policy_label: str) -> str:
    if policy_label == _WAKE_POLICY_WAKE_LABEL:
        return WAKE_NOW_OPTION
    return LEAVE_SLEEPING_OPTION


def _parse_skip_input(values: list[str]) -> list[str]:
    return [value.strip() for value in values if value and value.strip()]


def _validate_registration_inputs(
    *,
    target_mode: str,
    name_input: str,
    project_input: str,
    host_input: str,
    access_key_input: str,
) -> list[str]:
    errors: list[str] = []
    if target_mode == _TARGET_MODE_SINGLE_LABEL:
        if not name_input.strip():
            errors.append("vCluster name is required when adding a single vCluster.")
    if not project_input.strip():
        errors.append("Platform project is required.")
    if not host_input.strip():
        errors.append("Platform host is required.")
    if not access_key_input:
        errors.append("Platform access key is required.")
    return errors


@dataclass(frozen=True)
class _HostConnection:
    kubeconfig_path: str | None
    context: str | None
    in_cluster: bool


def _running_in_pod() -> bool:
    return bool(os.getenv("KUBERNETES_SERVICE_HOST")) and _SERVICE_ACCOUNT_TOKEN_PATH.is_file()


def _default_auth_mode() -> str:
    configured = os.getenv("VCPO_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured in _AUTH_MODE_ALIASES:
        return _AUTH_MODE_ALIASES[configured]
    return _AUTH_MODE_IN_CLUSTER if _running_in_pod() else _AUTH_MODE_USE_KUBECONFIG_PATH


def _prepare_host_connection(
    *,
    auth_mode: str,
    kubeconfig_path_input: str,
    kubeconfig_text_input: str,
    context_input: str,
) -> tuple[_HostConnection | None, str | None]:
    """Turn the sidebar inputs into connection settings for the vCluster host cluster.

    Returns the settings, or ``None`` with the message to show. The context
    must exist in the kubeconfig because every vCluster connection reuses it.
    """
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        if not _running_in_pod():
            return None, (
                "In-cluster mode only works when the console runs as a pod on the vCluster host cluster "
                "with a mounted service account token."
            )
        return _HostConnection(kubeconfig_path=None, context=None, in_cluster=True), None

    if auth_mode != _AUTH_MODE_PASTE_KUBECONFIG:
        path_value = kubeconfig_path_input.strip()
        if not path_value:
            return None, "Enter the path of the host cluster kubeconfig."
        expanded_path = Path(path_value).expanduser()
        if not expanded_path.is_file():
            return None, f"Kubeconfig file not found: {expanded_path}"
        return _check_kubeconfig_contexts(str(expanded_path), context_input)

    kubeconfig_text = kubeconfig_text_input.strip()
    if not kubeconfig_text:
        return None, "Paste the host cluster kubeconfig before connecting."
    try:
        parsed = yaml.safe_load(kubeconfig_text)
    except yaml.YAMLError as error:
        return None, f"Pasted kubeconfig is not valid YAML: {error.__class__.__name__}."
    if not isinstance(parsed, dict) or not parsed.get("contexts"):
        return None, "Pasted kubeconfig must define at least one context."

    pasted_path = write_pasted_kubeconfig(kubeconfig_text)
    connection, error = _check_kubeconfig_contexts(pasted_path, context_input)
    if connection is None:
        Path(pasted_path).unlink(missing_ok=True)
    return connection, error


def _check_kubeconfig_contexts(kubeconfig_path: str, context_input: str) -> tuple[_HostConnection | None, str | None]:
    try:
        contexts, current_context = list_kube_contexts(kubeconfig_path)
    except KubernetesAuthenticationError as error:
        return None, str(error)

    context = context_input.strip() or None
    available = ", ".join(contexts) or "none"
    if context is not None and context not in contexts:
        return None, f"Context '{context}' is not defined in the kubeconfig. Available contexts: {available}."
    if context is None and current_context is None:
        return None, f"The kubeconfig has no current context. Choose one of: {available}."
    return _HostConnection(kubeconfig_path=kubeconfig_path, context=context, in_cluster=False), None


def _render_backup_section(clients, base_config: AppConfig) -> None:
    st.subheader("Management Plane Backup")
    namespace = st.text_input("Platform namespace", value=base_config.platform_namespace)
    filename = st.text_input("Backup file", value=str(base_config.backup_filename))
    skip = st.multiselect("Skip resources", options=list(DOCUMENTED_SKIP_NAMES))

    if not st.button("Create backup"):
        return

    try:
        if not is_platform_installed(clients, namespace.strip()):
            st.warning(f"The vCluster platform does not seem to be installed into namespace '{namespace}'.")
    except KubernetesDiscoveryError as error:
        st.error(str(error))
        return

    with st.status("Collecting management plane resources...", expanded=False) as status:
        collection = collect_backup(clients, _parse_skip_input(skip), progress=status.write)
        status.update(label=f"Collected {len(collection.records)} resource(s).", state="complete")

    for error in collection.errors:
        st.warning(str(error))

    archive_bytes = to_yaml(collection.records)
    try:
        written = write_archive(archive_bytes, filename.strip() or base_config.backup_filename)
    except OSError as error:
        st.error(f"Failed to write backup to {filename}: {error}")
        return

    st.session_state.last_backup = {
        "path": str(written),
        "rows": _build_collection_rows(collection),
        "archive": archive_bytes,
    }
    st.success(f"Wrote backup to {written}")


def _render_registration_section(clients, base_config: AppConfig) -> None:
    st.subheader("Add vClusters to the Platform")
    target_mode = st.radio("Targets", options=[_TARGET_MODE_SINGLE_LABEL, _TARGET_MODE_ALL_LABEL], index=0)
    name_input = ""
    namespace_input = ""
    if target_mode == _TARGET_MODE_SINGLE_LABEL:
        name_input = st.text_input("vCluster name", value="")
        namespace_input = st.text_input(
            "vCluster namespace (optional)",
            value="",
            help="Leave empty to search every namespace for the vCluster.",
        )

    project_input = st.text_input("Platform project", value="default")
    import_name_input = st.text_input("Import name (optional)", value="")
    host_input = st.text_input("Platform host", value="")
    access_key_input = st.text_input("Platform access key", value="", type="password")
    ca_upload = st.file_uploader("Platform CA certificate (optional)", type=["crt", "pem"])
    insecure = st.checkbox("Skip TLS verification", value=False)
    restart = st.checkbox("Restart vCluster pods after registration", value=True)
    wake_policy = st.selectbox("Sleeping vClusters", options=[_WAKE_POLICY_LEAVE_LABEL, _WAKE_POLICY_WAKE_LABEL])

    if not st.button("Add vClusters"):
        return

    errors = _validate_registration_inputs(
        target_mode=target_mode,
        name_input=name_input,
        project_input=project_input,
        host_input=host_input,
        access_key_input=access_key_input,
    )
    if errors:
        for error in errors:
            st.error(error)
        return

    connection = st.session_state.connection
    options = RegistrationOptions(
        project=project_input.strip(),
        import_name=import_name_input.strip(),
        restart=restart,
        insecure=insecure,
        access_key=access_key_input,
        host=host_input.strip(),
        certificate_authority_data=ca_upload.getvalue() if ca_upload is not None else b"",
        all=target_mode == _TARGET_MODE_ALL_LABEL,
    )
    with st.spinner("Adding vClusters to the platform..."):
        try:
            report = add_vclusters(
                clients,
                options,
                name=name_input.strip(),
                namespace=namespace_input.strip(),
                connection_factory=host_connection_factory(
                    kubeconfig_path=connection.get("kubeconfig_path"),
                    context=connection.get("context"),
                    in_cluster=bool(connection.get("in_cluster")),
                ),
                prompter=static_prompter(_wake_policy_answer(wake_policy)),
                context=connection.get("context"),
                config=base_config,
            )
        except KubernetesDiscoveryError as error:
            st.error(str(error))
            return

    st.session_state.last_registration = report.outcomes
    if not report.outcomes:
        st.info("No vClusters were found to add.")
        return

    combined_error = report.combined_error()
    if combined_error is not None:
        st.error(
            f"Registration finished with failures: {len(report.errors)} of {len(report.outcomes)} "
            "vCluster(s) failed. Review actionable details below."
        )
    else:
        st.success(f"Registration finished for {len(report.outcomes)} vCluster(s).")


def main() -> None:
    st.set_page_config(page_title="vCluster Platform Ops", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    ensure_directories(base_config)
    configure_logging(base_config.log_level)

    st.title("vCluster Platform Ops")
    st.caption("Register vClusters with the platform and export management plane backups.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    default_auth_mode = _default_auth_mode()
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(default_auth_mode),
    )
    context = st.sidebar.text_input(
        "Kubernetes context (optional)",
        value=base_config.context or "",
        help=(
            "Ignored for in-cluster service account mode."
            if auth_mode == _AUTH_MODE_IN_CLUSTER
            else "Optional kubeconfig context override."
        ),
    )

    kubeconfig_path_input = base_config.kubeconfig_path or "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value=kubeconfig_path_input)
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

    if st.sidebar.button("Connect", type="primary"):
        connection, connection_error = _prepare_host_connection(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
            context_input=context,
        )
        if connection is None:
            st.sidebar.error(connection_error)
        else:
            try:
                clients = load_kubernetes_clients(
                    kubeconfig_path=connection.kubeconfig_path,
                    context=connection.context,
                    in_cluster=connection.in_cluster,
                )
            except KubernetesAuthenticationError as error:
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(_actionable_next_step(str(error)))
            else:
                st.session_state.connected = True
                st.session_state.clients = clients
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": connection.kubeconfig_path,
                    "context": connection.context,
                    "in_cluster": connection.in_cluster,
                }
                st.session_state.last_backup = None
                st.session_state.last_registration = []
                st.success("Connected to the vCluster host cluster.")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        st.session_state.last_backup = None
        st.session_state.last_registration = []

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to start backup and registration operations.")
        return

    clients = st.session_state.clients
    try:
        summary = get_cluster_summary(clients)
    except KubernetesDiscoveryError as error:
        st.error(_actionable_next_step(str(error)))
    else:
        summary_columns = st.columns(2)
        summary_columns[0].metric("Namespaces", summary["namespaces"])
        summary_columns[1].metric("vClusters", summary["vclusters"])

    backup_tab, registration_tab = st.tabs(["Backup", "Add vClusters"])
    with backup_tab:
        _render_backup_section(clients, base_config)
        last_backup = st.session_state.last_backup
        if last_backup:
            st.dataframe(last_backup["rows"], use_container_width=True, hide_index=True)
            st.download_button(
                "Download backup",
                data=last_backup["archive"],
                file_name=Path(last_backup["path"]).name,
                mime="application/x-yaml",
            )
            with st.expander("Preview archive"):
                try:
                    items = load_archive(last_backup["path"])
                except (OSError, ArchiveFormatError) as error:
                    st.warning(f"Unable to read back {last_backup['path']}: {error}")
                else:
                    st.caption(f"{len(items)} object(s) in {last_backup['path']}")
                    st.code(last_backup["archive"].decode("utf-8"), language="yaml")

    with registration_tab:
        _render_registration_section(clients, base_config)
        if st.session_state.last_registration:
            st.markdown("**Latest Registration Run**")
            st.dataframe(
                _build_outcome_rows(st.session_state.last_registration),
                use_container_width=True,
                hide_index=True,
            )


if __name__ == "__main__":
    main()
