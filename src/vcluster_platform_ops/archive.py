from __future__ import annotations

from pathlib import Path
import os
from typing import Any, Iterable

import yaml

from .models import ResourceRecord

ARCHIVE_API_VERSION = "v1"
ARCHIVE_KIND = "List"
ARCHIVE_FILE_MODE = 0o644


class ArchiveFormatError(ValueError):
    """Raised when a file does not contain a backup archive."""


def to_yaml(records: Iterable[ResourceRecord]) -> bytes:
    document = {
        "apiVersion": ARCHIVE_API_VERSION,
        "kind": ARCHIVE_KIND,
        "items": [record.payload for record in records],
    }
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False).encode("utf-8")


def write_archive(data: bytes, path: Path | str) -> Path:
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    os.chmod(target, ARCHIVE_FILE_MODE)
    return target


def load_archive(path: Path | str) -> list[dict[str, Any]]:
    return parse_archive(Path(path).read_text(encoding="utf-8"))


def parse_archive(content: str) -> list[dict[str, Any]]:
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise ArchiveFormatError(f"backup archive must be valid YAML: {error.__class__.__name__}") from error

    if not isinstance(document, dict):
        raise ArchiveFormatError("backup archive must be a YAML mapping")
    if document.get("kind") != ARCHIVE_KIND or document.get("apiVersion") != ARCHIVE_API_VERSION:
        raise ArchiveFormatError(f"backup archive must be a {ARCHIVE_API_VERSION} {ARCHIVE_KIND}")

    items = document.get("items") or []
    if not isinstance(items, list):
        raise ArchiveFormatError("backup archive items must be a list")
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("kind"):
            raise ArchiveFormatError(f"backup archive item {index} is missing its kind")
    return items
