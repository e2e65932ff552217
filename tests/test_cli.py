from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException
from typer.testing import CliRunner

from vcluster_platform_ops import cli
from vcluster_platform_ops.archive import load_archive
from vcluster_platform_ops.k8s import KubernetesAuthenticationError, KubernetesClients, VClusterNotFoundError
from vcluster_platform_ops.lifecycle import LEAVE_SLEEPING_OPTION, WAKE_NOW_OPTION
from vcluster_platform_ops.models import OUTCOME_ADDED, OUTCOME_FAILED, RegistrationOutcome
from vcluster_platform_ops.registration import RegistrationReport

runner = CliRunner()


def _clients() -> KubernetesClients:
    return KubernetesClients(api_client=Mock(), core_api=Mock(), apps_api=Mock(), custom_objects_api=Mock())


@pytest.fixture
def clients(monkeypatch: pytest.MonkeyPatch) -> KubernetesClients:
    host_clients = _clients()
    monkeypatch.setattr(cli, "load_kubernetes_clients", lambda **_kwargs: host_clients)
    return host_clients


def test_add_vcluster_without_name_or_all_exits_with_validation_error() -> None:
    result = runner.invoke(cli.app, ["add-vcluster"])

    assert result.exit_code == cli.ExitCode.VALIDATION
    assert "Provide a vCluster name or use --all." in result.output


def test_add_vcluster_with_name_and_all_exits_with_validation_error() -> None:
    result = runner.invoke(cli.app, ["add-vcluster", "alpha", "--all"])

    assert result.exit_code == cli.ExitCode.VALIDATION


def test_add_vcluster_with_unreachable_kubeconfig_exits_with_environment_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fail(**_kwargs: object) -> None:
        raise KubernetesAuthenticationError("Unable to load kubeconfig")

    monkeypatch.setattr(cli, "load_kubernetes_clients", fail)

    result = runner.invoke(cli.app, ["add-vcluster", "alpha"])

    assert result.exit_code == cli.ExitCode.ENVIRONMENT
    assert "Unable to load kubeconfig" in result.output


def test_add_vcluster_with_missing_vcluster_in_given_namespace_exits_with_validation_error(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
) -> None:
    def not_found(*_args: object, **kwargs: object) -> None:
        raise VClusterNotFoundError(name=str(kwargs["name"]), namespace=str(kwargs["namespace"]))

    monkeypatch.setattr(cli, "add_vclusters", not_found)

    result = runner.invoke(cli.app, ["add-vcluster", "alpha", "-n", "vcluster-alpha"])

    assert result.exit_code == cli.ExitCode.VALIDATION
    assert "couldn't find vcluster alpha in namespace vcluster-alpha" in result.output


def _host_with_vclusters(clients: KubernetesClients, vclusters_by_namespace: dict[str, list[str]]) -> None:
    clients.core_api.list_namespace.return_value = SimpleNamespace(
        items=[SimpleNamespace(metadata=SimpleNamespace(name=namespace)) for namespace in vclusters_by_namespace]
    )
    clients.apps_api.list_namespaced_stateful_set.side_effect = lambda namespace, **_: SimpleNamespace(
        items=[
            SimpleNamespace(
                metadata=SimpleNamespace(
                    name=name,
                    labels={"app": "vcluster", "release": name},
                    annotations={},
                    creation_timestamp=None,
                ),
                spec=SimpleNamespace(replicas=1),
            )
            for name in vclusters_by_namespace.get(namespace, [])
        ]
    )
    clients.apps_api.list_namespaced_deployment.return_value = SimpleNamespace(items=[])


def test_add_vcluster_without_namespace_finds_vcluster_in_any_namespace(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
) -> None:
    _host_with_vclusters(clients, {"default": [], "team-a": ["alpha"]})
    target_clients = _clients()
    monkeypatch.setattr(cli, "host_connection_factory", lambda **_kwargs: lambda namespace, name: target_clients)

    result = runner.invoke(cli.app, ["add-vcluster", "alpha", "--no-restart", "--access-key", "key", "--host", "h"])

    assert result.exit_code == 0
    assert "Successfully added vCluster team-a/alpha" in result.output
    assert target_clients.core_api.create_namespaced_secret.call_args.kwargs["namespace"] == "team-a"


def test_add_vcluster_without_namespace_and_no_match_exits_with_validation_error(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
) -> None:
    _host_with_vclusters(clients, {"default": [], "team-a": ["beta"]})

    result = runner.invoke(cli.app, ["add-vcluster", "alpha"])

    assert result.exit_code == cli.ExitCode.VALIDATION
    assert "couldn't find vcluster alpha in any namespace" in result.output


def test_add_vcluster_with_failed_target_prints_outcomes_and_exits_with_provider_error(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
) -> None:
    report = RegistrationReport()
    report.outcomes.append(
        RegistrationOutcome(
            namespace="team-a",
            name="alpha",
            status=OUTCOME_ADDED,
            message="Successfully added vCluster team-a/alpha",
        )
    )
    report.outcomes.append(
        RegistrationOutcome(namespace="team-b", name="beta", status=OUTCOME_FAILED, message="forbidden")
    )
    report.errors.record("beta", RuntimeError("forbidden"))
    captured: dict[str, object] = {}

    def fake_add_vclusters(host_clients: KubernetesClients, options: object, **kwargs: object) -> RegistrationReport:
        captured["clients"] = host_clients
        captured["options"] = options
        captured.update(kwargs)
        return report

    monkeypatch.setattr(cli, "add_vclusters", fake_add_vclusters)

    result = runner.invoke(cli.app, ["add-vcluster", "--all", "--access-key", "key", "--host", "platform.example.com"])

    assert result.exit_code == cli.ExitCode.PROVIDER
    assert "Successfully added vCluster team-a/alpha" in result.output
    assert "cannot add vcluster beta: forbidden" in result.output
    assert captured["clients"] is clients
    assert captured["name"] == ""
    assert captured["namespace"] == ""
    assert captured["options"].all is True
    assert captured["options"].access_key == "key"


def test_add_vcluster_with_wake_flag_answers_wake_prompt(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
) -> None:
    captured: dict[str, object] = {}

    def fake_add_vclusters(_clients: KubernetesClients, _options: object, **kwargs: object) -> RegistrationReport:
        captured.update(kwargs)
        return RegistrationReport()

    monkeypatch.setattr(cli, "add_vclusters", fake_add_vclusters)

    result = runner.invoke(cli.app, ["add-vcluster", "alpha", "--wake"])

    assert result.exit_code == 0
    assert "No vClusters found to add." in result.output
    assert captured["namespace"] == ""
    prompter = captured["prompter"]
    assert prompter("wake?", (LEAVE_SLEEPING_OPTION, WAKE_NOW_OPTION), LEAVE_SLEEPING_OPTION) == WAKE_NOW_OPTION


def test_backup_writes_archive_and_warns_about_failed_kinds(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
    tmp_path: Path,
) -> None:
    def list_objects(*, group: str, version: str, plural: str) -> dict:
        if plural == "teams":
            raise ApiException(status=403, reason="Forbidden")
        if plural == "users":
            return {"items": [{"metadata": {"name": "admin"}, "spec": {}}]}
        return {"items": []}

    clients.custom_objects_api.list_cluster_custom_object.side_effect = list_objects
    monkeypatch.setattr(cli, "is_platform_installed", lambda _clients, _namespace: True)
    target = tmp_path / "backup.yaml"

    result = runner.invoke(cli.app, ["backup", "--filename", str(target), "--skip", "accesskeys,apps"])

    assert result.exit_code == 0
    assert "warning: backup teams: API status 403 (Forbidden)" in result.output
    assert "Skipping accesskeys" in result.output
    assert [item["kind"] for item in load_archive(target)] == ["User"]


def test_backup_without_platform_and_declined_prompt_exits_without_writing(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
    tmp_path: Path,
) -> None:
    monkeypatch.setattr(cli, "is_platform_installed", lambda _clients, _namespace: False)
    monkeypatch.setattr(cli, "interactive_prompter", lambda _question, _options, _default: "No")
    target = tmp_path / "backup.yaml"

    result = runner.invoke(cli.app, ["backup", "--filename", str(target)])

    assert result.exit_code == 0
    assert not target.exists()
    clients.custom_objects_api.list_cluster_custom_object.assert_not_called()


def test_backup_without_platform_and_yes_flag_continues(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
    tmp_path: Path,
) -> None:
    clients.custom_objects_api.list_cluster_custom_object.return_value = {"items": []}
    monkeypatch.setattr(cli, "is_platform_installed", lambda _clients, _namespace: False)
    target = tmp_path / "backup.yaml"

    result = runner.invoke(cli.app, ["backup", "--filename", str(target), "--yes"])

    assert result.exit_code == 0
    assert load_archive(target) == []


def test_split_skip_values_accepts_repeated_and_comma_separated_values() -> None:
    assert cli._split_skip_values(["users, teams", "clusters", ""]) == ["users", "teams", "clusters"]


def test_backup_without_namespace_checks_the_loft_namespace(
    monkeypatch: pytest.MonkeyPatch,
    clients: KubernetesClients,
    tmp_path: Path,
) -> None:
    checked: list[str] = []

    def installed(_clients: KubernetesClients, namespace: str) -> bool:
        checked.append(namespace)
        return True

    clients.custom_objects_api.list_cluster_custom_object.return_value = {"items": []}
    monkeypatch.setattr(cli, "is_platform_installed", installed)

    result = runner.invoke(cli.app, ["backup", "--filename", str(tmp_path / "backup.yaml")])

    assert result.exit_code == 0
    assert checked == ["loft"]
