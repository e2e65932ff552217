from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


@dataclass(frozen=True)
class AppConfig:
    platform_namespace: str = os.getenv("VCPO_PLATFORM_NAMESPACE", "loft")
    backup_filename: Path = Path(os.getenv("VCPO_BACKUP_FILENAME", "backup.yaml"))
    wake_timeout_seconds: int = int(os.getenv("VCPO_WAKE_TIMEOUT_SECONDS", "600"))
    wake_poll_interval_seconds: float = float(os.getenv("VCPO_WAKE_POLL_INTERVAL_SECONDS", "1"))
    discovery_timeout_seconds: int = int(os.getenv("VCPO_DISCOVERY_TIMEOUT_SECONDS", "20"))
    kubeconfig_path: str | None = os.getenv("VCPO_KUBECONFIG") or None
    context: str | None = os.getenv("VCPO_CONTEXT") or None
    log_level: str = os.getenv("VCPO_LOG_LEVEL", "INFO")


def ensure_directories(config: AppConfig) -> None:
    config.backup_filename.parent.mkdir(parents=True, exist_ok=True)
