from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
import structlog

from .models import STATUS_PAUSED, STATUS_RUNNING, VClusterInstance

VCLUSTER_LABEL_SELECTOR = "app=vcluster"
PAUSED_ANNOTATION = "loft.sh/paused"
PAUSED_REPLICAS_ANNOTATION = "loft.sh/paused-replicas"
PLATFORM_DEPLOYMENT_NAME = "loft"
DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 20
T = TypeVar("T")

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_objects_api: client.CustomObjectsApi


ConnectionFactory = Callable[[str, str], KubernetesClients]


class KubernetesDiscoveryError(RuntimeError):
    """Raised when cluster discovery cannot safely continue."""


class TargetResolutionError(KubernetesDiscoveryError):
    """Raised when the set of vClusters to operate on cannot be determined."""


class VClusterNotFoundError(KubernetesDiscoveryError):
    def __init__(self, *, name: str, namespace: str, context: str | None = None) -> None:
        scope = f"in namespace {namespace}" if namespace else "in any namespace"
        context_message = f" in context '{context}'" if context else ""
        super().__init__(f"couldn't find vcluster {name} {scope}{context_message}")
        self.name = name
        self.namespace = namespace


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def write_pasted_kubeconfig(kubeconfig_content: str) -> str:
    """Store pasted kubeconfig text in a private temporary file and return its path."""
    descriptor, path = tempfile.mkstemp(prefix="vcpo-kubeconfig-", suffix=".yaml")
    with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
        handle.write(kubeconfig_content)
    return path


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
            api_client = client.ApiClient()
        else:
            api_client = config.new_client_from_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def host_connection_factory(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool = False,
) -> ConnectionFactory:
    """Build a factory that connects to the host cluster a vCluster was found in.

    The factory receives the vCluster namespace and name so callers can route
    individual instances to dedicated endpoints; the default ignores both and
    reuses the host kubeconfig.
    """

    def connect(namespace: str, name: str) -> KubernetesClients:
        logger.debug("connecting to vcluster host", namespace=namespace, vcluster=name, context=context)
        return load_kubernetes_clients(kubeconfig_path=kubeconfig_path, context=context, in_cluster=in_cluster)

    return connect


def list_kube_contexts(kubeconfig_path: str | None = None) -> tuple[list[str], str | None]:
    """Return the sorted context names of a kubeconfig and its current context."""
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, current = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            f"cannot read contexts from kubeconfig '{expanded or '~/.kube/config'}': {_error_reason(error)}"
        ) from error
    names = sorted(context["name"] for context in contexts or [])
    return names, (current or {}).get("name")


def get_cluster_summary(clients: KubernetesClients) -> dict[str, int]:
    namespaces = list_namespace_names(clients)
    workloads = _safe_discovery_call(
        operation="list vCluster StatefulSets across namespaces",
        hint="Check cluster-wide RBAC verbs for statefulsets.",
        func=lambda: clients.apps_api.list_stateful_set_for_all_namespaces(label_selector=VCLUSTER_LABEL_SELECTOR).items,
    ) + _safe_discovery_call(
        operation="list vCluster Deployments across namespaces",
        hint="Check cluster-wide RBAC verbs for deployments.",
        func=lambda: clients.apps_api.list_deployment_for_all_namespaces(label_selector=VCLUSTER_LABEL_SELECTOR).items,
    )

    # A StatefulSet and a Deployment sharing a release are one vCluster.
    releases = set()
    for workload in workloads:
        metadata = getattr(workload, "metadata", None)
        if metadata is None:
            continue
        labels = getattr(metadata, "labels", None) or {}
        release = labels.get("release") or getattr(metadata, "name", None)
        if release:
            releases.add((getattr(metadata, "namespace", None), release))
    return {
        "namespaces": len(namespaces),
        "vclusters": len(releases),
    }


def resolve_targets(
    clients: KubernetesClients,
    *,
    all_namespaces: bool,
    name: str,
    namespace: str,
    connection_factory: ConnectionFactory,
    context: str | None = None,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[VClusterInstance]:
    if not all_namespaces and not namespace:
        return [
            find_vcluster(
                clients,
                name=name,
                connection_factory=connection_factory,
                context=context,
                request_timeout_seconds=request_timeout_seconds,
            )
        ]
    if not all_namespaces:
        return [
            get_vcluster(
                clients,
                name=name,
                namespace=namespace,
                connection_factory=connection_factory,
                context=context,
                request_timeout_seconds=request_timeout_seconds,
            )
        ]

    namespaces = list_namespace_names(clients, request_timeout_seconds=request_timeout_seconds)
    logger.debug("looking for vclusters", namespace_count=len(namespaces))

    targets: list[VClusterInstance] = []
    for namespace_name in namespaces:
        found = list_vclusters(
            clients,
            namespace=namespace_name,
            connection_factory=connection_factory,
            context=context,
            request_timeout_seconds=request_timeout_seconds,
        )
        if not found:
            logger.info("no vclusters found", namespace=namespace_name, context=context)
            continue
        targets.extend(found)
    return targets


def list_namespace_names(
    clients: KubernetesClients,
    *,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[str]:
    namespaces = _safe_discovery_call(
        operation="list namespaces",
        hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
        func=lambda: clients.core_api.list_namespace(_request_timeout=request_timeout_seconds).items,
    )
    return [item.metadata.name for item in namespaces if item.metadata and item.metadata.name]


def list_vclusters(
    clients: KubernetesClients,
    *,
    namespace: str,
    connection_factory: ConnectionFactory,
    context: str | None = None,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[VClusterInstance]:
    stateful_sets = _safe_discovery_call(
        operation=f"list vCluster StatefulSets in namespace '{namespace}'",
        hint="Check RBAC verbs for statefulsets and confirm the namespace still exists.",
        func=lambda: clients.apps_api.list_namespaced_stateful_set(
            namespace=namespace,
            label_selector=VCLUSTER_LABEL_SELECTOR,
            _request_timeout=request_timeout_seconds,
        ).items,
    )
    deployments = _safe_discovery_call(
        operation=f"list vCluster Deployments in namespace '{namespace}'",
        hint="Check RBAC verbs for deployments and confirm the namespace still exists.",
        func=lambda: clients.apps_api.list_namespaced_deployment(
            namespace=namespace,
            label_selector=VCLUSTER_LABEL_SELECTOR,
            _request_timeout=request_timeout_seconds,
        ).items,
    )

    instances: dict[str, VClusterInstance] = {}
    for kind, workloads in (("StatefulSet", stateful_sets), ("Deployment", deployments)):
        for workload in workloads:
            instance = _instance_from_workload(
                workload,
                kind=kind,
                namespace=namespace,
                context=context,
                connection_factory=connection_factory,
            )
            if instance is not None and instance.name not in instances:
                instances[instance.name] = instance

    return [instances[key] for key in sorted(instances)]


def get_vcluster(
    clients: KubernetesClients,
    *,
    name: str,
    namespace: str,
    connection_factory: ConnectionFactory,
    context: str | None = None,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> VClusterInstance:
    for instance in list_vclusters(
        clients,
        namespace=namespace,
        connection_factory=connection_factory,
        context=context,
        request_timeout_seconds=request_timeout_seconds,
    ):
        if instance.name == name:
            return instance
    raise VClusterNotFoundError(name=name, namespace=namespace, context=context)


def find_vcluster(
    clients: KubernetesClients,
    *,
    name: str,
    connection_factory: ConnectionFactory,
    context: str | None = None,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> VClusterInstance:
    """Locate ``name`` in whichever namespace hosts it.

    A name that exists in more than one namespace is ambiguous and raises
    ``TargetResolutionError`` instead of picking one.
    """
    matches: list[VClusterInstance] = []
    for namespace_name in list_namespace_names(clients, request_timeout_seconds=request_timeout_seconds):
        matches.extend(
            instance
            for instance in list_vclusters(
                clients,
                namespace=namespace_name,
                connection_factory=connection_factory,
                context=context,
                request_timeout_seconds=request_timeout_seconds,
            )
            if instance.name == name
        )

    if not matches:
        raise VClusterNotFoundError(name=name, namespace="", context=context)
    if len(matches) > 1:
        namespaces = ", ".join(instance.namespace for instance in matches)
        raise TargetResolutionError(
            f"found more than one vcluster named {name} (namespaces: {namespaces}). "
            "Specify the namespace to choose one."
        )
    return matches[0]


def is_platform_installed(clients: KubernetesClients, namespace: str) -> bool:
    try:
        clients.apps_api.read_namespaced_deployment(name=PLATFORM_DEPLOYMENT_NAME, namespace=namespace)
    except ApiException as error:
        if error.status == 404:
            return False
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=f"check the platform deployment in namespace '{namespace}'",
                hint="Verify RBAC allows get on Deployments in the platform namespace.",
                error=error,
            )
        ) from error
    return True


def _instance_from_workload(
    workload: object,
    *,
    kind: str,
    namespace: str,
    context: str | None,
    connection_factory: ConnectionFactory,
) -> VClusterInstance | None:
    metadata = getattr(workload, "metadata", None)
    if metadata is None:
        return None

    labels = getattr(metadata, "labels", None) or {}
    name = labels.get("release") or getattr(metadata, "name", None)
    if not name:
        return None

    created_at = getattr(metadata, "creation_timestamp", None)

    def connect(namespace: str = namespace, name: str = name) -> KubernetesClients:
        return connection_factory(namespace, name)

    return VClusterInstance(
        name=name,
        namespace=namespace,
        status=_workload_status(workload),
        connect=connect,
        context=context,
        workload_kind=kind,
        workload_name=getattr(metadata, "name", None) or name,
        created_at=created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
    )


def _workload_status(workload: object) -> str:
    metadata = getattr(workload, "metadata", None)
    annotations = (getattr(metadata, "annotations", None) if metadata is not None else None) or {}
    if annotations.get(PAUSED_ANNOTATION) == "true":
        return STATUS_PAUSED

    spec = getattr(workload, "spec", None)
    if spec is not None and getattr(spec, "replicas", None) == 0:
        return STATUS_PAUSED
    return STATUS_RUNNING


def _safe_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise TargetResolutionError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise TargetResolutionError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    stripped = (kubeconfig_path or "").strip()
    return str(Path(stripped).expanduser()) if stripped else None


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    if in_cluster:
        source = "the in-cluster service account"
    else:
        source = f"kubeconfig '{kubeconfig_path or '~/.kube/config'}'"
        if context:
            source += f" with context '{context}'"
    return (
        f"Kubernetes authentication setup failed: cannot connect to the vCluster host cluster using {source}: "
        f"{_error_reason(error)}"
    )


def _error_reason(error: Exception) -> str:
    return str(error).strip() or error.__class__.__name__
