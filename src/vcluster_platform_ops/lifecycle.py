from __future__ import annotations

from enum import Enum
import threading
import time

from kubernetes import client
from kubernetes.client import ApiException
import structlog

from .k8s import (
    PAUSED_ANNOTATION,
    PAUSED_REPLICAS_ANNOTATION,
    KubernetesClients,
    get_vcluster,
)
from .models import VClusterInstance
from .prompts import Prompter, PromptError

LEAVE_SLEEPING_OPTION = "No. Leave it sleeping. (It will be added automatically on next wakeup)"
WAKE_NOW_OPTION = "Yes. Wake and add now."
DEFAULT_WAKE_TIMEOUT_SECONDS = 600
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

logger = structlog.get_logger(__name__)


class WakeState(Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    WAKING = "waking"
    RESOLVED = "resolved"


class WakeCommandError(RuntimeError):
    """Raised when the resume command for a sleeping vCluster fails."""


class WakeTimeoutError(TimeoutError):
    """Raised when a resumed vCluster does not report running in time."""


class OperationCancelledError(RuntimeError):
    """Raised when the surrounding invocation was cancelled."""


def ensure_awake(
    instance: VClusterInstance,
    *,
    clients: KubernetesClients,
    prompter: Prompter,
    wake_timeout_seconds: float = DEFAULT_WAKE_TIMEOUT_SECONDS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    cancel_event: threading.Event | None = None,
) -> bool:
    """Make sure ``instance`` is running, asking the operator if it sleeps.

    Returns ``True`` when the operator chose to leave the vCluster asleep.
    Status query failures, wake failures and timeouts propagate to the caller.
    """
    _check_cancelled(cancel_event, stage="before checking sleep state")
    if not instance.paused:
        _log_transition(instance, WakeState.ACTIVE, asleep=False)
        return False

    _log_transition(instance, WakeState.SUSPENDED)
    try:
        answer = prompter(
            f"Would you like to wake vCluster {instance.name} now to add immediately?",
            (LEAVE_SLEEPING_OPTION, WAKE_NOW_OPTION),
            LEAVE_SLEEPING_OPTION,
        )
    except PromptError:
        raise
    except KeyboardInterrupt as error:
        raise OperationCancelledError("operation cancelled at the wake prompt") from error
    except Exception as error:  # pylint: disable=broad-except
        raise PromptError(f"failed to capture your response: {error}") from error
    _check_cancelled(cancel_event, stage="after the wake decision")

    if answer == LEAVE_SLEEPING_OPTION:
        _log_transition(instance, WakeState.RESOLVED, asleep=True)
        return True

    try:
        resume_vcluster(clients, instance)
    except Exception as error:  # pylint: disable=broad-except
        raise WakeCommandError(f"failed to wake up vcluster {instance.name}: {_error_message(error)}") from error

    _log_transition(instance, WakeState.WAKING)
    wait_until_awake(
        instance,
        clients=clients,
        timeout_seconds=wake_timeout_seconds,
        poll_interval_seconds=poll_interval_seconds,
        cancel_event=cancel_event,
    )
    _log_transition(instance, WakeState.RESOLVED, asleep=False)
    return False


def resume_vcluster(clients: KubernetesClients, instance: VClusterInstance) -> None:
    workload_name = instance.workload_name or instance.name
    if instance.workload_kind == "Deployment":
        workload = clients.apps_api.read_namespaced_deployment(name=workload_name, namespace=instance.namespace)
    else:
        workload = clients.apps_api.read_namespaced_stateful_set(name=workload_name, namespace=instance.namespace)

    body = {
        "metadata": {
            "annotations": {
                PAUSED_ANNOTATION: None,
                PAUSED_REPLICAS_ANNOTATION: None,
            }
        },
        "spec": {"replicas": _paused_replicas(workload)},
    }
    if instance.workload_kind == "Deployment":
        clients.apps_api.patch_namespaced_deployment(name=workload_name, namespace=instance.namespace, body=body)
    else:
        clients.apps_api.patch_namespaced_stateful_set(name=workload_name, namespace=instance.namespace, body=body)
    logger.info("resumed vcluster", namespace=instance.namespace, vcluster=instance.name, replicas=body["spec"]["replicas"])


def wait_until_awake(
    instance: VClusterInstance,
    *,
    clients: KubernetesClients,
    timeout_seconds: float = DEFAULT_WAKE_TIMEOUT_SECONDS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    cancel_event: threading.Event | None = None,
) -> VClusterInstance:
    deadline = time.monotonic() + timeout_seconds
    polls = 0
    while True:
        _sleep(poll_interval_seconds, cancel_event)
        _check_cancelled(cancel_event, stage="while waiting for wakeup")
        polls += 1

        current = get_vcluster(
            clients,
            name=instance.name,
            namespace=instance.namespace,
            connection_factory=lambda _namespace, _name: clients,
            context=instance.context,
        )
        if not current.paused:
            logger.debug("vcluster is awake", namespace=instance.namespace, vcluster=instance.name, polls=polls)
            return current

        if time.monotonic() >= deadline:
            raise WakeTimeoutError(
                f"timed out waiting for vcluster {instance.name} to wake up "
                f"(waited {timeout_seconds:g}s, last observed status={current.status})"
            )


def delete_workload_pods(clients: KubernetesClients, *, label_selector: str, namespace: str) -> list[str]:
    pods = clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector).items
    deleted: list[str] = []
    for pod in pods:
        pod_name = pod.metadata.name if pod.metadata else None
        if not pod_name:
            continue
        try:
            clients.core_api.delete_namespaced_pod(
                name=pod_name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
            )
        except ApiException as error:
            if error.status == 404:
                continue
            raise
        deleted.append(pod_name)

    logger.info("deleted vcluster pods", namespace=namespace, selector=label_selector, pods=deleted)
    return deleted


def _paused_replicas(workload: object) -> int:
    metadata = getattr(workload, "metadata", None)
    annotations = (getattr(metadata, "annotations", None) if metadata is not None else None) or {}
    raw = annotations.get(PAUSED_REPLICAS_ANNOTATION)
    try:
        replicas = int(raw) if raw is not None else 1
    except (TypeError, ValueError):
        replicas = 1
    return max(1, replicas)


def _sleep(seconds: float, cancel_event: threading.Event | None) -> None:
    if cancel_event is not None:
        cancel_event.wait(seconds)
        return
    time.sleep(seconds)


def _check_cancelled(cancel_event: threading.Event | None, *, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError(f"operation cancelled {stage}")


def _log_transition(instance: VClusterInstance, state: WakeState, **fields: object) -> None:
    logger.debug(
        "wake state transition",
        namespace=instance.namespace,
        vcluster=instance.name,
        state=state.value,
        **fields,
    )


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
