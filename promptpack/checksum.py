"""Deterministic content checksums for files and directory trees."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from .errors import ChecksumIOError


ALGORITHM = "sha256"
VCS_DIRS = frozenset({".git", ".hg", ".svn"})
_CHUNK = 1024 * 1024


def _update_from_file(h: "hashlib._Hash", path: Path) -> None:
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)


def iter_tree_files(root: Path) -> list[str]:
    """Sorted POSIX relative paths of regular files under `root`.

    VCS metadata directories are skipped. Symlinks to files count as files,
    hashed by target content; dangling links and directory symlinks are not.
    """

    rels: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in VCS_DIRS]
        base = Path(dirpath)
        for name in filenames:
            p = base / name
            if p.is_file():
                rels.append(p.relative_to(root).as_posix())
    rels.sort()
    return rels


def compute_checksum(path: Path) -> str:
    """Return "sha256:<hex>" for a file or directory tree.

    Files hash their raw bytes. Directories hash the sorted sequence of
    (relative path, content) pairs.
    """

    h = hashlib.sha256()
    try:
        if path.is_dir():
            for rel in iter_tree_files(path):
                h.update(b"F" + rel.encode("utf-8") + b"\0")
                _update_from_file(h, path / rel)
                h.update(b"\0")
        else:
            _update_from_file(h, path)
    except OSError as e:
        raise ChecksumIOError(f"unable to hash {path}: {e}") from e
    return f"{ALGORITHM}:{h.hexdigest()}"


def checksum_bytes(data: bytes) -> str:
    return f"{ALGORITHM}:{hashlib.sha256(data).hexdigest()}"
