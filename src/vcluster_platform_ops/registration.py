from __future__ import annotations

from dataclasses import dataclass, field
import base64
import threading

from kubernetes import client
from kubernetes.client import ApiException
import structlog

from .config import AppConfig
from .k8s import ConnectionFactory, KubernetesClients, resolve_targets
from .lifecycle import OperationCancelledError, delete_workload_pods, ensure_awake
from .models import (
    OUTCOME_ADDED,
    OUTCOME_FAILED,
    OUTCOME_PENDING_WAKEUP,
    RegistrationOptions,
    RegistrationOutcome,
    VClusterInstance,
)
from .prompts import Prompter

PLATFORM_SECRET_NAME = "vcluster-platform-api-key"
WORKLOAD_LABEL_SELECTOR_TEMPLATE = "app=vcluster,release={name}"

logger = structlog.get_logger(__name__)


class VClusterAddError(RuntimeError):
    def __init__(self, *, name: str, error: BaseException) -> None:
        super().__init__(f"cannot add vcluster {name}: {_error_message(error)}")
        self.name = name
        self.__cause__ = error


class CombinedVClusterAddError(RuntimeError):
    def __init__(self, errors: list[VClusterAddError]) -> None:
        super().__init__("|".join(str(error) for error in errors))
        self.errors = tuple(errors)


class WorkloadRestartError(RuntimeError):
    """Raised when vCluster pods cannot be deleted after the secret was applied."""


class RegistrationErrors:
    """Ordered per-vCluster failures collected over a batch."""

    def __init__(self) -> None:
        self._errors: list[VClusterAddError] = []

    def record(self, name: str, error: BaseException | None) -> None:
        if error is None:
            return
        self._errors.append(VClusterAddError(name=name, error=error))

    @property
    def errors(self) -> tuple[VClusterAddError, ...]:
        return tuple(self._errors)

    @property
    def failed_names(self) -> list[str]:
        return [error.name for error in self._errors]

    def __len__(self) -> int:
        return len(self._errors)

    def combined_error(self) -> Exception | None:
        if not self._errors:
            return None
        if len(self._errors) == 1:
            return self._errors[0]
        return CombinedVClusterAddError(self._errors)


@dataclass
class RegistrationReport:
    outcomes: list[RegistrationOutcome] = field(default_factory=list)
    errors: RegistrationErrors = field(default_factory=RegistrationErrors)

    @property
    def succeeded(self) -> bool:
        return len(self.errors) == 0

    def combined_error(self) -> Exception | None:
        return self.errors.combined_error()

    def raise_for_errors(self) -> None:
        error = self.combined_error()
        if error is not None:
            raise error


def add_vclusters(
    clients: KubernetesClients,
    options: RegistrationOptions,
    *,
    name: str,
    namespace: str,
    connection_factory: ConnectionFactory,
    prompter: Prompter,
    context: str | None = None,
    config: AppConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> RegistrationReport:
    config = config or AppConfig()
    if options.all:
        logger.debug("add vcluster called with all flag", context=context)

    targets = resolve_targets(
        clients,
        all_namespaces=options.all,
        name=name,
        namespace=namespace,
        connection_factory=connection_factory,
        context=context,
        request_timeout_seconds=config.discovery_timeout_seconds,
    )

    report = RegistrationReport()
    if not targets:
        return report

    logger.debug("adding vclusters to platform", count=len(targets))
    for instance in targets:
        logger.info("adding vcluster to platform", namespace=instance.namespace, vcluster=instance.name)
        try:
            outcome = add_vcluster(
                instance,
                options,
                prompter=prompter,
                wake_timeout_seconds=config.wake_timeout_seconds,
                poll_interval_seconds=config.wake_poll_interval_seconds,
                cancel_event=cancel_event,
            )
        except OperationCancelledError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            report.errors.record(instance.name, error)
            report.outcomes.append(
                RegistrationOutcome(
                    namespace=instance.namespace,
                    name=instance.name,
                    status=OUTCOME_FAILED,
                    message=_error_message(error),
                )
            )
            logger.warning(
                "failed to add vcluster",
                namespace=instance.namespace,
                vcluster=instance.name,
                error=_error_message(error),
            )
            continue
        report.outcomes.append(outcome)

    return report


def add_vcluster(
    instance: VClusterInstance,
    options: RegistrationOptions,
    *,
    prompter: Prompter,
    wake_timeout_seconds: float,
    poll_interval_seconds: float = 1.0,
    cancel_event: threading.Event | None = None,
) -> RegistrationOutcome:
    clients = instance.connect()

    if instance.paused:
        logger.info(
            "vcluster is sleeping and will not be added until it wakes",
            namespace=instance.namespace,
            vcluster=instance.name,
        )
    asleep = ensure_awake(
        instance,
        clients=clients,
        prompter=prompter,
        wake_timeout_seconds=wake_timeout_seconds,
        poll_interval_seconds=poll_interval_seconds,
        cancel_event=cancel_event,
    )

    # The secret is written even while asleep; the vCluster registers itself on wakeup.
    apply_platform_secret(
        clients,
        namespace=instance.namespace,
        import_name=options.import_name or instance.name,
        options=options,
    )

    if options.restart and not asleep:
        selector = WORKLOAD_LABEL_SELECTOR_TEMPLATE.format(name=instance.name)
        try:
            delete_workload_pods(clients, label_selector=selector, namespace=instance.namespace)
        except Exception as error:  # pylint: disable=broad-except
            raise WorkloadRestartError(f"delete vcluster workloads: {_error_message(error)}") from error

    if asleep:
        return RegistrationOutcome(
            namespace=instance.namespace,
            name=instance.name,
            status=OUTCOME_PENDING_WAKEUP,
            message=(
                f"vCluster {instance.namespace}/{instance.name} will be added the next time it awakes. "
                f"Run 'vcluster wakeup --help' to learn how to wake up vCluster "
                f"{instance.namespace}/{instance.name} to complete the add operation."
            ),
        )
    return RegistrationOutcome(
        namespace=instance.namespace,
        name=instance.name,
        status=OUTCOME_ADDED,
        message=f"Successfully added vCluster {instance.namespace}/{instance.name}",
    )


def build_platform_secret(*, namespace: str, import_name: str, options: RegistrationOptions) -> client.V1Secret:
    values = {
        "accessKey": options.access_key.encode("utf-8"),
        "host": options.host.encode("utf-8"),
        "insecure": b"true" if options.insecure else b"false",
        "project": options.project.encode("utf-8"),
        "name": import_name.encode("utf-8"),
        "certificateAuthorityData": options.certificate_authority_data or b"",
    }
    return client.V1Secret(
        metadata=client.V1ObjectMeta(name=PLATFORM_SECRET_NAME, namespace=namespace),
        type="Opaque",
        data={key: base64.b64encode(value).decode("ascii") for key, value in values.items()},
    )


def apply_platform_secret(
    clients: KubernetesClients,
    *,
    namespace: str,
    import_name: str,
    options: RegistrationOptions,
) -> None:
    secret = build_platform_secret(namespace=namespace, import_name=import_name, options=options)
    try:
        clients.core_api.create_namespaced_secret(namespace=namespace, body=secret)
    except ApiException as error:
        if error.status != 409:
            raise
        clients.core_api.replace_namespaced_secret(name=PLATFORM_SECRET_NAME, namespace=namespace, body=secret)
    logger.debug("applied platform secret", namespace=namespace, secret=PLATFORM_SECRET_NAME)


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
