"""Typer command line for vCluster platform operations.

``add-vcluster`` registers one vCluster, or every vCluster visible to the
current kubeconfig, with the platform. ``backup`` exports the platform
management plane into a single YAML archive.
"""

from __future__ import annotations

from enum import IntEnum
from pathlib import Path
import textwrap
from typing import NoReturn

import typer
from rich.console import Console

from .archive import to_yaml, write_archive
from .backup import DOCUMENTED_SKIP_NAMES, collect_backup
from .config import AppConfig
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesDiscoveryError,
    VClusterNotFoundError,
    host_connection_factory,
    is_platform_installed,
    list_kube_contexts,
    load_kubernetes_clients,
)
from .lifecycle import WAKE_NOW_OPTION, OperationCancelledError
from .logging import bind_context, configure_logging
from .models import OUTCOME_ADDED, OUTCOME_FAILED, RegistrationOptions
from .prompts import Prompter, PromptError, default_prompter, interactive_prompter, static_prompter
from .registration import add_vclusters

console = Console()


class ExitCode(IntEnum):
    """Well-known exit codes used across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4
    CANCELLED = 130


CONTEXT_OPTION = typer.Option(
    None,
    "--context",
    help="Kubernetes context to use (defaults to the current context).",
)
KUBECONFIG_OPTION = typer.Option(
    None,
    "--kubeconfig",
    help="Path to the kubeconfig file (defaults to the standard search path).",
)
YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Accept the default answer for every question instead of prompting.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        vCluster platform operations.

        Register vClusters with the platform and export management plane
        backups.
        """
    ).strip(),
)


@app.callback()
def _root(
    log_level: str = typer.Option(
        AppConfig().log_level,
        "--log-level",
        help="Log level for diagnostic output (DEBUG, INFO, WARNING, ERROR).",
    ),
    log_json: bool = typer.Option(
        False,
        "--log-json",
        help="Emit diagnostic logs as JSON lines.",
    ),
) -> None:
    configure_logging(log_level, json_output=log_json)


@app.command("add-vcluster")
def add_vcluster_command(
    name: str | None = typer.Argument(None, help="Name of the vCluster to add."),
    all_vclusters: bool = typer.Option(
        False,
        "--all",
        help="Add every vCluster found in every namespace of the current context.",
    ),
    namespace: str | None = typer.Option(
        None,
        "--namespace",
        "-n",
        help="Namespace of the vCluster (searches every namespace when omitted).",
    ),
    project: str = typer.Option("default", "--project", help="Platform project to import the vCluster into."),
    import_name: str = typer.Option(
        "",
        "--import-name",
        help="Display name of the vCluster in the platform (defaults to the vCluster name).",
    ),
    restart: bool = typer.Option(
        True,
        "--restart/--no-restart",
        help="Restart the vCluster pods after registration so they pick up the new secret.",
    ),
    insecure: bool = typer.Option(False, "--insecure", help="Skip TLS verification towards the platform."),
    access_key: str = typer.Option(
        "",
        "--access-key",
        envvar="VCPO_ACCESS_KEY",
        help="Platform access key used by the vCluster to register itself.",
    ),
    host: str = typer.Option("", "--host", envvar="VCPO_HOST", help="Platform host the vCluster connects to."),
    ca_data_file: Path | None = typer.Option(
        None,
        "--ca-data-file",
        exists=True,
        dir_okay=False,
        readable=True,
        help="PEM file with the platform certificate authority.",
    ),
    wake: bool = typer.Option(
        False,
        "--wake",
        help="Wake sleeping vClusters without asking so they are added immediately.",
    ),
    wake_timeout: int | None = typer.Option(
        None,
        "--wake-timeout",
        min=1,
        help="Seconds to wait for a woken vCluster to become ready.",
    ),
    context: str | None = CONTEXT_OPTION,
    kubeconfig: str | None = KUBECONFIG_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Add one or all vClusters to the platform."""
    if not all_vclusters and not name:
        _command_error("Provide a vCluster name or use --all.", rc=ExitCode.VALIDATION)
    if all_vclusters and name:
        _command_error("A vCluster name cannot be combined with --all.", rc=ExitCode.VALIDATION)

    base_config = AppConfig()
    config = AppConfig(
        platform_namespace=base_config.platform_namespace,
        backup_filename=base_config.backup_filename,
        wake_timeout_seconds=wake_timeout or base_config.wake_timeout_seconds,
        wake_poll_interval_seconds=base_config.wake_poll_interval_seconds,
        discovery_timeout_seconds=base_config.discovery_timeout_seconds,
        kubeconfig_path=kubeconfig or base_config.kubeconfig_path,
        context=context or base_config.context,
        log_level=base_config.log_level,
    )
    options = RegistrationOptions(
        project=project,
        import_name=import_name,
        restart=restart,
        insecure=insecure,
        access_key=access_key,
        host=host,
        certificate_authority_data=ca_data_file.read_bytes() if ca_data_file else b"",
        all=all_vclusters,
    )
    log = bind_context(command="add-vcluster", vcluster=name, all=all_vclusters)

    clients = _load_clients(config)
    try:
        report = add_vclusters(
            clients,
            options,
            name=name or "",
            namespace=namespace or "",
            connection_factory=host_connection_factory(
                kubeconfig_path=config.kubeconfig_path,
                context=config.context,
            ),
            prompter=_select_prompter(yes=yes, wake=wake),
            context=config.context,
            config=config,
        )
    except VClusterNotFoundError as error:
        _command_error(str(error), rc=ExitCode.VALIDATION)
    except KubernetesDiscoveryError as error:
        _command_error(str(error), rc=ExitCode.PROVIDER)
    except (OperationCancelledError, KeyboardInterrupt) as error:
        _command_error(f"Cancelled: {error}" if str(error) else "Cancelled.", rc=ExitCode.CANCELLED)

    if not report.outcomes:
        console.print("[yellow]No vClusters found to add.[/yellow]")
    for outcome in report.outcomes:
        if outcome.status == OUTCOME_ADDED:
            console.print(f"[green]{outcome.message}[/green]")
        elif outcome.status == OUTCOME_FAILED:
            console.print(f"[red]{outcome.namespace}/{outcome.name}: {outcome.message}[/red]")
        else:
            console.print(f"[yellow]{outcome.message}[/yellow]")

    error = report.combined_error()
    if error is not None:
        log.error("add vcluster finished with failures", failed=report.errors.failed_names)
        _command_error(str(error), rc=ExitCode.PROVIDER)


@app.command("backup")
def backup_command(
    namespace: str = typer.Option(
        AppConfig().platform_namespace,
        "--namespace",
        help="The namespace the vCluster platform was installed into.",
    ),
    filename: Path = typer.Option(
        AppConfig().backup_filename,
        "--filename",
        help="The filename to write the backup to.",
    ),
    skip: list[str] = typer.Option(
        [],
        "--skip",
        help=(
            "What resources the backup should skip (repeatable or comma-separated). "
            f"Valid options are: {', '.join(DOCUMENTED_SKIP_NAMES)}."
        ),
    ),
    context: str | None = CONTEXT_OPTION,
    kubeconfig: str | None = KUBECONFIG_OPTION,
    yes: bool = YES_OPTION,
) -> None:
    """Create a backup of the vCluster platform management plane."""
    base_config = AppConfig()
    config = AppConfig(
        platform_namespace=namespace,
        backup_filename=filename,
        kubeconfig_path=kubeconfig or base_config.kubeconfig_path,
        context=context or base_config.context,
        log_level=base_config.log_level,
    )
    log = bind_context(command="backup", namespace=namespace)
    clients = _load_clients(config)

    try:
        installed = is_platform_installed(clients, namespace)
    except KubernetesDiscoveryError as error:
        _command_error(str(error), rc=ExitCode.PROVIDER)
    if not installed:
        prompter = default_prompter if yes else interactive_prompter
        try:
            answer = prompter(
                f"Seems like the vCluster platform was not installed into namespace {namespace!r}, "
                "do you want to continue?",
                ("Yes", "No"),
                "Yes",
            )
        except PromptError as error:
            _command_error(str(error), rc=ExitCode.VALIDATION)
        if answer != "Yes":
            raise typer.Exit(code=ExitCode.OK)

    collection = collect_backup(clients, _split_skip_values(skip), progress=console.print)
    for error in collection.errors:
        console.print(f"[yellow]warning: {error}[/yellow]")

    console.print(f"Writing backup to {filename}...")
    try:
        written = write_archive(to_yaml(collection.records), filename)
    except OSError as error:
        log.error("failed to write backup", filename=str(filename), error=str(error))
        _command_error(f"Failed to write backup to {filename}: {error}", rc=ExitCode.PROVIDER)

    log.info("wrote backup", filename=str(written), records=len(collection.records), warnings=len(collection.errors))
    console.print(f"[green]Wrote backup to {written}[/green]")


@app.command("contexts")
def contexts_command(kubeconfig: str | None = KUBECONFIG_OPTION) -> None:
    """List the kubeconfig contexts; the current one is marked with *."""
    try:
        names, current = list_kube_contexts(kubeconfig or AppConfig().kubeconfig_path)
    except KubernetesAuthenticationError as error:
        _command_error(str(error), rc=ExitCode.ENVIRONMENT)
    if not names:
        console.print("[yellow]No contexts found.[/yellow]")
    for context_name in names:
        marker = "*" if context_name == current else " "
        console.print(f"{marker} {context_name}", highlight=False)


def main() -> None:
    """Console script entry point."""
    app()


def _load_clients(config: AppConfig) -> KubernetesClients:
    try:
        return load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=False,
        )
    except KubernetesAuthenticationError as error:
        _command_error(str(error), rc=ExitCode.ENVIRONMENT)


def _select_prompter(*, yes: bool, wake: bool) -> Prompter:
    if wake:
        return static_prompter(WAKE_NOW_OPTION)
    if yes:
        return default_prompter
    return interactive_prompter


def _split_skip_values(values: list[str]) -> list[str]:
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


def _command_error(message: str, *, rc: int = ExitCode.VALIDATION) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=int(rc))


if __name__ == "__main__":
    main()
