from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from vcluster_platform_ops.k8s import KubernetesClients
from vcluster_platform_ops.lifecycle import (
    LEAVE_SLEEPING_OPTION,
    WAKE_NOW_OPTION,
    OperationCancelledError,
    WakeCommandError,
    WakeTimeoutError,
    delete_workload_pods,
    ensure_awake,
    resume_vcluster,
)
from vcluster_platform_ops.models import STATUS_PAUSED, STATUS_RUNNING, VClusterInstance
from vcluster_platform_ops.prompts import PromptError


def _workload(*, name: str, replicas: int, annotations: dict[str, str] | None = None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            labels={"app": "vcluster", "release": name},
            annotations=annotations or {},
            creation_timestamp=None,
        ),
        spec=SimpleNamespace(replicas=replicas),
    )


def _clients(*, apps_api: Mock | None = None, core_api: Mock | None = None) -> KubernetesClients:
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api or Mock(),
        apps_api=apps_api or Mock(),
        custom_objects_api=Mock(),
    )


def _instance(clients: KubernetesClients, *, status: str) -> VClusterInstance:
    return VClusterInstance(
        name="alpha",
        namespace="vcluster-alpha",
        status=status,
        connect=lambda: clients,
        workload_name="alpha",
    )


def _polling_apps_api(*replica_sequence: int) -> Mock:
    apps_api = Mock()
    apps_api.read_namespaced_stateful_set.return_value = _workload(
        name="alpha",
        replicas=0,
        annotations={"loft.sh/paused": "true", "loft.sh/paused-replicas": "1"},
    )
    apps_api.list_namespaced_stateful_set.side_effect = [
        SimpleNamespace(items=[_workload(name="alpha", replicas=replicas)]) for replicas in replica_sequence
    ]
    apps_api.list_namespaced_deployment.return_value = SimpleNamespace(items=[])
    return apps_api


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("vcluster_platform_ops.lifecycle.time.sleep", lambda _: None)


def test_ensure_awake_with_running_vcluster_never_prompts() -> None:
    clients = _clients()
    prompter = Mock()

    asleep = ensure_awake(_instance(clients, status=STATUS_RUNNING), clients=clients, prompter=prompter)

    assert asleep is False
    prompter.assert_not_called()
    clients.apps_api.patch_namespaced_stateful_set.assert_not_called()


def test_ensure_awake_with_leave_sleeping_answer_returns_asleep_without_resume() -> None:
    clients = _clients()
    prompter = Mock(return_value=LEAVE_SLEEPING_OPTION)

    asleep = ensure_awake(_instance(clients, status=STATUS_PAUSED), clients=clients, prompter=prompter)

    assert asleep is True
    question, options, default = prompter.call_args.args
    assert "alpha" in question
    assert tuple(options) == (LEAVE_SLEEPING_OPTION, WAKE_NOW_OPTION)
    assert default == LEAVE_SLEEPING_OPTION
    clients.apps_api.patch_namespaced_stateful_set.assert_not_called()


def test_ensure_awake_with_wake_answer_resumes_and_polls_until_running() -> None:
    apps_api = _polling_apps_api(0, 0, 1)
    clients = _clients(apps_api=apps_api)

    asleep = ensure_awake(
        _instance(clients, status=STATUS_PAUSED),
        clients=clients,
        prompter=Mock(return_value=WAKE_NOW_OPTION),
        wake_timeout_seconds=60,
        poll_interval_seconds=0,
    )

    assert asleep is False
    apps_api.patch_namespaced_stateful_set.assert_called_once()
    assert apps_api.list_namespaced_stateful_set.call_count == 3


def test_ensure_awake_with_status_never_clearing_raises_timeout_error() -> None:
    apps_api = _polling_apps_api(0, 0, 0)
    clients = _clients(apps_api=apps_api)

    with pytest.raises(WakeTimeoutError, match="timed out waiting for vcluster alpha") as excinfo:
        ensure_awake(
            _instance(clients, status=STATUS_PAUSED),
            clients=clients,
            prompter=Mock(return_value=WAKE_NOW_OPTION),
            wake_timeout_seconds=0,
            poll_interval_seconds=0,
        )

    assert not isinstance(excinfo.value, WakeCommandError)


def test_ensure_awake_with_failed_resume_raises_wake_command_error() -> None:
    apps_api = Mock()
    apps_api.read_namespaced_stateful_set.side_effect = ApiException(status=403, reason="Forbidden")
    clients = _clients(apps_api=apps_api)

    with pytest.raises(WakeCommandError, match="failed to wake up vcluster alpha"):
        ensure_awake(
            _instance(clients, status=STATUS_PAUSED),
            clients=clients,
            prompter=Mock(return_value=WAKE_NOW_OPTION),
            poll_interval_seconds=0,
        )

    apps_api.list_namespaced_stateful_set.assert_not_called()


def test_ensure_awake_with_prompt_failure_raises_prompt_error() -> None:
    clients = _clients()

    with pytest.raises(PromptError, match="failed to capture your response"):
        ensure_awake(
            _instance(clients, status=STATUS_PAUSED),
            clients=clients,
            prompter=Mock(side_effect=EOFError("stdin closed")),
        )


def test_ensure_awake_with_cancelled_event_aborts_before_prompting() -> None:
    clients = _clients()
    prompter = Mock()
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(OperationCancelledError):
        ensure_awake(
            _instance(clients, status=STATUS_PAUSED),
            clients=clients,
            prompter=prompter,
            cancel_event=cancel_event,
        )

    prompter.assert_not_called()


def test_ensure_awake_with_cancellation_during_prompt_skips_resume() -> None:
    clients = _clients()
    cancel_event = threading.Event()

    def answer_then_cancel(*_args: object) -> str:
        cancel_event.set()
        return WAKE_NOW_OPTION

    with pytest.raises(OperationCancelledError, match="after the wake decision"):
        ensure_awake(
            _instance(clients, status=STATUS_PAUSED),
            clients=clients,
            prompter=answer_then_cancel,
            cancel_event=cancel_event,
        )

    clients.apps_api.read_namespaced_stateful_set.assert_not_called()


def test_resume_vcluster_restores_paused_replicas_and_clears_annotations() -> None:
    apps_api = Mock()
    apps_api.read_namespaced_stateful_set.return_value = _workload(
        name="alpha",
        replicas=0,
        annotations={"loft.sh/paused": "true", "loft.sh/paused-replicas": "3"},
    )
    clients = _clients(apps_api=apps_api)

    resume_vcluster(clients, _instance(clients, status=STATUS_PAUSED))

    kwargs = apps_api.patch_namespaced_stateful_set.call_args.kwargs
    assert kwargs["name"] == "alpha"
    assert kwargs["namespace"] == "vcluster-alpha"
    assert kwargs["body"]["spec"]["replicas"] == 3
    assert kwargs["body"]["metadata"]["annotations"] == {
        "loft.sh/paused": None,
        "loft.sh/paused-replicas": None,
    }


def test_resume_vcluster_with_deployment_workload_patches_deployment() -> None:
    apps_api = Mock()
    apps_api.read_namespaced_deployment.return_value = _workload(name="alpha", replicas=0)
    clients = _clients(apps_api=apps_api)
    instance = VClusterInstance(
        name="alpha",
        namespace="vcluster-alpha",
        status=STATUS_PAUSED,
        connect=lambda: clients,
        workload_kind="Deployment",
        workload_name="alpha",
    )

    resume_vcluster(clients, instance)

    assert apps_api.patch_namespaced_deployment.call_args.kwargs["body"]["spec"]["replicas"] == 1
    apps_api.patch_namespaced_stateful_set.assert_not_called()


def test_delete_workload_pods_deletes_matching_pods_and_tolerates_missing() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[
            SimpleNamespace(metadata=SimpleNamespace(name="alpha-0")),
            SimpleNamespace(metadata=SimpleNamespace(name="alpha-1")),
        ]
    )
    core_api.delete_namespaced_pod.side_effect = [None, ApiException(status=404, reason="Not Found")]

    deleted = delete_workload_pods(
        _clients(core_api=core_api),
        label_selector="app=vcluster,release=alpha",
        namespace="vcluster-alpha",
    )

    assert deleted == ["alpha-0"]
    core_api.list_namespaced_pod.assert_called_once_with(
        namespace="vcluster-alpha",
        label_selector="app=vcluster,release=alpha",
    )
