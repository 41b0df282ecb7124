"""Conflict detection and backups.

Nothing that differs from incoming content is overwritten or removed unless
a copy of it exists under `.promptpack/backups/<timestamp>/` first.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .checksum import compute_checksum
from .errors import BackupFailed
from .paths import backups_dir


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackupRecord:
    original: Path
    backup_path: Path


def is_symlink_tree(path: Path) -> bool:
    """True for a symlink, or a directory holding only symlinks (and dirs of them)."""

    if path.is_symlink():
        return True
    if not path.is_dir():
        return False
    found = False
    for dirpath, dirnames, filenames in os.walk(path):
        base = Path(dirpath)
        for name in filenames:
            if not (base / name).is_symlink():
                return False
            found = True
        for name in dirnames:
            if (base / name).is_symlink():
                found = True
    return found


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")


class ConflictGuard:
    """Decides whether a destination holds foreign content and backs it up.

    One guard is used per run; all backups of the run share one timestamp
    directory, created on first use.
    """

    def __init__(self, project_dir: Path, *, stamp: str | None = None) -> None:
        self.project_dir = project_dir
        self.backup_root = backups_dir(project_dir) / (stamp or _timestamp())
        self.records: list[BackupRecord] = []

    def has_conflict(self, dest: Path, incoming_checksum: str, *, managed_symlinks: bool = False) -> bool:
        """Whether installing over `dest` would lose content.

        `managed_symlinks` marks `dest` as a location this tool previously
        filled with symlinks; replacing those links is never a conflict.
        """

        if not os.path.lexists(dest):
            return False
        if managed_symlinks and is_symlink_tree(dest):
            return False
        if dest.is_symlink() and not dest.exists():
            # Dangling link: nothing to lose but the link itself.
            return True
        return compute_checksum(dest) != incoming_checksum

    def _backup_target(self, path: Path) -> Path:
        try:
            rel = path.relative_to(self.project_dir)
        except ValueError:
            rel = Path("_external") / path.relative_to(path.anchor)
        target = self.backup_root / rel
        n = 1
        while os.path.lexists(target):
            target = target.with_name(f"{rel.name}.{n}")
            n += 1
        return target

    def backup(self, path: Path) -> BackupRecord:
        """Copy `path` into the backup area, keeping structure and modes."""

        target = self._backup_target(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if path.is_symlink():
                os.symlink(os.readlink(path), target)
            elif path.is_dir():
                shutil.copytree(path, target, symlinks=True)
            else:
                shutil.copy2(path, target)
        except (OSError, shutil.Error) as e:
            raise BackupFailed(f"unable to back up {path}: {e}") from e

        record = BackupRecord(original=path, backup_path=target)
        self.records.append(record)
        logger.info("backed up %s -> %s", path, target)
        return record
