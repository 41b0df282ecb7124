from __future__ import annotations

import os
from pathlib import Path


MANIFEST_NAMES = ("promptpack.yaml", "promptpack.yml", "promptpack.toml")
LOCKFILE_NAME = "promptpack.lock"
STATE_DIR_NAME = ".promptpack"


def expand_path(text: str) -> str:
    """Expand `$VAR`, `${VAR}` and a leading `~` in a path string."""

    return os.path.expanduser(os.path.expandvars(text))


def resolve_under(base_dir: Path, text: str) -> Path:
    """Expand `text` and interpret relative results against `base_dir`."""

    p = Path(expand_path(text))
    if not p.is_absolute():
        p = base_dir / p
    return Path(os.path.normpath(p))


def work_root() -> Path:
    """Directory where manifest discovery starts (PROMPTPACK_ROOT or cwd)."""

    root = os.environ.get("PROMPTPACK_ROOT")
    if root:
        return Path(root).expanduser().resolve()
    return Path.cwd().resolve()


def state_dir(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME


def backups_dir(project_dir: Path) -> Path:
    """Reserved backup area (.promptpack/backups)."""

    return state_dir(project_dir) / "backups"


def lockfile_path(manifest_path: Path) -> Path:
    return manifest_path.parent / LOCKFILE_NAME


def paths_overlap(a: Path, b: Path) -> bool:
    """True when `a` and `b` are the same path or one contains the other."""

    if a == b:
        return True
    return a in b.parents or b in a.parents
