"""On-disk instance directories and metadata."""

from __future__ import annotations

import json
import logging as py_logging
import os
import re
import shutil
from pathlib import Path

from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.instances.models import Instance

logger = py_logging.getLogger(__name__)

METADATA_FILE = "instance.json"
EULA_FILE = "eula.txt"
_SLUG = re.compile(r"[^A-Za-z0-9._-]+")


def directory_name(name: str) -> str:
    slug = _SLUG.sub("-", name.strip()).strip("-.")
    return slug or "server"


class InstanceStore:
    def __init__(self, instances_dir: Path) -> None:
        self.instances_dir = Path(instances_dir)

    def create_root(self, name: str) -> Path:
        root = self.instances_dir / directory_name(name)
        if root.exists():
            raise ServerDeckError(
                f"Instance directory already exists: {root}",
                kind=ErrorKind.INVALID_REQUEST,
                hint="Choose a different instance name.",
            )
        root.mkdir(parents=True)
        return root

    def write(self, instance: Instance) -> Path:
        path = instance.root / METADATA_FILE
        tmp = path.with_name(f".{METADATA_FILE}.tmp")
        tmp.write_text(json.dumps(instance.to_metadata(), indent=2), encoding="utf-8")
        os.replace(tmp, path)
        return path

    @staticmethod
    def write_eula(root: Path) -> Path:
        path = root / EULA_FILE
        path.write_text(
            "# By changing the setting below to TRUE you are indicating your agreement to the Minecraft EULA\n"
            "# (https://aka.ms/MinecraftEULA).\n"
            "eula=true\n",
            encoding="utf-8",
        )
        return path

    def discover(self) -> list[Instance]:
        if not self.instances_dir.is_dir():
            return []
        found: list[Instance] = []
        for metadata in sorted(self.instances_dir.glob(f"*/{METADATA_FILE}")):
            try:
                payload = json.loads(metadata.read_text(encoding="utf-8"))
                found.append(Instance.from_metadata(payload, metadata.parent))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable instance metadata path=%s error=%s", metadata, exc)
        return found

    def delete_root(self, root: Path) -> None:
        resolved = root.resolve()
        base = self.instances_dir.resolve()
        if base not in resolved.parents:
            raise ServerDeckError(
                f"Refusing to delete a directory outside the instance store: {root}",
                kind=ErrorKind.INVALID_REQUEST,
            )
        shutil.rmtree(resolved, ignore_errors=True)
        logger.debug("Deleted instance directory path=%s", resolved)
