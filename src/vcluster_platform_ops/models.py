from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .k8s import KubernetesClients

STATUS_RUNNING = "Running"
STATUS_PAUSED = "Paused"
STATUS_UNKNOWN = "Unknown"

OUTCOME_ADDED = "added"
OUTCOME_PENDING_WAKEUP = "pending_wakeup"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class VClusterInstance:
    name: str
    namespace: str
    status: str
    connect: Callable[[], KubernetesClients] = field(repr=False, compare=False)
    context: str | None = None
    workload_kind: str = "StatefulSet"
    workload_name: str | None = None
    created_at: str | None = None

    @property
    def paused(self) -> bool:
        return self.status == STATUS_PAUSED


@dataclass(frozen=True)
class RegistrationOptions:
    project: str
    import_name: str = ""
    restart: bool = True
    insecure: bool = False
    access_key: str = field(default="", repr=False)
    host: str = ""
    certificate_authority_data: bytes = field(default=b"", repr=False)
    all: bool = False


@dataclass(frozen=True)
class RegistrationOutcome:
    namespace: str
    name: str
    status: str
    message: str = ""


@dataclass(frozen=True)
class ResourceRecord:
    kind: str
    payload: dict[str, Any]

    @property
    def name(self) -> str:
        metadata = self.payload.get("metadata") or {}
        return str(metadata.get("name", ""))

    @property
    def namespace(self) -> str | None:
        metadata = self.payload.get("metadata") or {}
        return metadata.get("namespace")
