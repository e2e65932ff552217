"""Management plane backup collection.

Every kind in :data:`RESOURCE_CATALOGUE` is listed from the ``storage.loft.sh``
API in catalogue order. A kind that cannot be listed is reported in the
returned error list and the scan moves on to the next kind, so a partial
backup is always produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import copy
from typing import Any, Callable, Iterable

from kubernetes.client import ApiException
import structlog

from .k8s import KubernetesClients
from .models import ResourceRecord

STORAGE_GROUP = "storage.loft.sh"
STORAGE_VERSION = "v1"
SERVER_MANAGED_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
)

ProgressSink = Callable[[str], None]

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ResourceKind:
    skip_name: str
    kind: str
    plural: str
    namespaced: bool = False
    group: str = STORAGE_GROUP
    version: str = STORAGE_VERSION

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def matches(self, skip: frozenset[str]) -> bool:
        return self.skip_name in skip or self.plural in skip


RESOURCE_CATALOGUE: tuple[ResourceKind, ...] = (
    ResourceKind(skip_name="clusterroletemplates", kind="ClusterRoleTemplate", plural="clusterroletemplates"),
    ResourceKind(skip_name="clusteraccesses", kind="ClusterAccess", plural="clusteraccesses"),
    ResourceKind(skip_name="users", kind="User", plural="users"),
    ResourceKind(skip_name="teams", kind="Team", plural="teams"),
    ResourceKind(skip_name="sharedsecrets", kind="SharedSecret", plural="sharedsecrets", namespaced=True),
    ResourceKind(skip_name="accesskeys", kind="AccessKey", plural="accesskeys"),
    ResourceKind(skip_name="apps", kind="App", plural="apps"),
    ResourceKind(skip_name="spacetemplates", kind="SpaceTemplate", plural="spacetemplates"),
    ResourceKind(
        skip_name="virtualclustertemplates",
        kind="VirtualClusterTemplate",
        plural="virtualclustertemplates",
    ),
    ResourceKind(skip_name="clusters", kind="Cluster", plural="clusters"),
    ResourceKind(
        skip_name="clusteraccounttemplates",
        kind="ClusterAccountTemplate",
        plural="clusteraccounttemplates",
    ),
    ResourceKind(skip_name="projects", kind="Project", plural="projects"),
    ResourceKind(skip_name="projectsecrets", kind="ProjectSecret", plural="projectsecrets", namespaced=True),
    ResourceKind(
        skip_name="virtualclusterinstances",
        kind="VirtualClusterInstance",
        plural="virtualclusterinstances",
        namespaced=True,
    ),
    ResourceKind(skip_name="spaceinstances", kind="SpaceInstance", plural="spaceinstances", namespaced=True),
)

DOCUMENTED_SKIP_NAMES = ("users", "teams", "accesskeys", "sharedsecrets", "clusters", "clusteraccounttemplates")


class CollectionError(RuntimeError):
    def __init__(self, *, kind: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"backup {kind}: {normalized_reason}")
        self.kind = kind


@dataclass
class BackupCollection:
    records: list[ResourceRecord] = field(default_factory=list)
    errors: list[CollectionError] = field(default_factory=list)

    def kinds(self) -> list[str]:
        seen: list[str] = []
        for record in self.records:
            if record.kind not in seen:
                seen.append(record.kind)
        return seen


def collect_backup(
    clients: KubernetesClients,
    skip: Iterable[str] = (),
    progress: ProgressSink | None = None,
    *,
    catalogue: tuple[ResourceKind, ...] = RESOURCE_CATALOGUE,
) -> BackupCollection:
    skip_set = frozenset(skip)
    _log_unknown_skip_names(skip_set, catalogue)
    notify = progress or (lambda _message: None)

    collection = BackupCollection()
    for resource_kind in catalogue:
        if resource_kind.matches(skip_set):
            notify(f"Skipping {resource_kind.plural}")
            continue

        notify(f"Backing up {resource_kind.plural}...")
        try:
            items = _list_objects(clients, resource_kind)
        except Exception as error:  # pylint: disable=broad-except
            collection_error = CollectionError(kind=resource_kind.plural, reason=_error_reason(error))
            collection.errors.append(collection_error)
            logger.warning("failed to back up resource kind", kind=resource_kind.plural, error=str(collection_error))
            continue

        for item in items:
            collection.records.append(
                ResourceRecord(kind=resource_kind.kind, payload=clean_object(item, resource_kind))
            )
        logger.debug("backed up resource kind", kind=resource_kind.plural, count=len(items))

    return collection


def clean_object(item: dict[str, Any], resource_kind: ResourceKind) -> dict[str, Any]:
    cleaned = copy.deepcopy(item)
    cleaned["apiVersion"] = cleaned.get("apiVersion") or resource_kind.api_version
    cleaned["kind"] = cleaned.get("kind") or resource_kind.kind
    cleaned.pop("status", None)

    metadata = cleaned.get("metadata")
    if isinstance(metadata, dict):
        for field_name in SERVER_MANAGED_METADATA_FIELDS:
            metadata.pop(field_name, None)
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict):
            annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
            if not annotations:
                metadata.pop("annotations")
    return cleaned


def _list_objects(clients: KubernetesClients, resource_kind: ResourceKind) -> list[dict[str, Any]]:
    # list_cluster_custom_object spans every namespace for namespaced kinds.
    response = clients.custom_objects_api.list_cluster_custom_object(
        group=resource_kind.group,
        version=resource_kind.version,
        plural=resource_kind.plural,
    )
    items = response.get("items") if isinstance(response, dict) else None
    return list(items or [])


def _log_unknown_skip_names(skip: frozenset[str], catalogue: tuple[ResourceKind, ...]) -> None:
    known = {resource_kind.skip_name for resource_kind in catalogue} | {
        resource_kind.plural for resource_kind in catalogue
    }
    unknown = sorted(skip - known)
    if unknown:
        logger.debug("ignoring unknown skip names", names=unknown)


def _error_reason(error: Exception) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else "unknown"
        reason = error.reason or "no reason provided"
        return f"API status {status} ({reason})"
    message = str(error).strip()
    return message or error.__class__.__name__
