from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Sequence

from .checksum import iter_tree_files
from .errors import DestinationWriteFailed, SourceNotFound


logger = logging.getLogger(__name__)

SCRIPT_SUFFIXES = frozenset({".sh", ".bash", ".zsh", ".py", ".js", ".ts", ".rb"})
GENERATED_HEADER = "<!-- Generated by promptpack from: {sources}. Edit the sources, not this file. -->"


def remove_path(p: Path) -> None:
    if p.is_symlink() or p.is_file():
        p.unlink()
    elif p.is_dir():
        shutil.rmtree(p)


def is_included(rel: str, include: Sequence[str]) -> bool:
    """Whether a relative path falls under one of the `include` prefixes."""

    if not include:
        return True
    for name in include:
        prefix = name.strip("/")
        if rel == prefix or rel.startswith(prefix + "/"):
            return True
    return False


def selected_files(src: Path, include: Sequence[str]) -> list[str]:
    return [rel for rel in iter_tree_files(src) if is_included(rel, include)]


def _write_file_atomic(src: Path, dst: Path) -> None:
    if dst.is_dir() and not dst.is_symlink():
        shutil.rmtree(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(dst.name + ".tmp")
    shutil.copy2(src, tmp)
    tmp.replace(dst)


def write_bytes_atomic(dst: Path, data: bytes) -> None:
    try:
        if os.path.lexists(dst) and (dst.is_symlink() or dst.is_dir()):
            remove_path(dst)
        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_name(dst.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(dst)
    except OSError as e:
        raise DestinationWriteFailed(f"unable to write {dst}: {e}") from e


def install_copy(src: Path, dest: Path, include: Sequence[str] = ()) -> None:
    """Copy a file or (filtered) tree to `dest`, replacing what is there.

    Trees are staged next to `dest` and swapped in once complete.
    """

    try:
        if src.is_file():
            if dest.is_symlink():
                dest.unlink()
            _write_file_atomic(src, dest)
            return

        tmp = dest.with_name(dest.name + ".promptpack-tmp")
        if os.path.lexists(tmp):
            remove_path(tmp)
        tmp.mkdir(parents=True)
        for rel in selected_files(src, include):
            target = tmp / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src / rel, target)

        if os.path.lexists(dest):
            remove_path(dest)
        tmp.replace(dest)
    except OSError as e:
        raise DestinationWriteFailed(f"unable to install {dest}: {e}") from e
    logger.debug("copied %s -> %s", src, dest)


def install_symlinks(src: Path, dest: Path, include: Sequence[str] = ()) -> list[str]:
    """Link `dest` to `src`.

    A file source becomes one symlink. A directory source becomes one symlink
    per file under a real `dest` directory, so unrelated files placed there
    later are left alone. Returns the relative paths linked.
    """

    src = src.resolve()
    try:
        if src.is_file():
            if os.path.lexists(dest):
                remove_path(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(src, dest)
            return []

        if dest.is_symlink() or (dest.exists() and not dest.is_dir()):
            dest.unlink()
        dest.mkdir(parents=True, exist_ok=True)

        items = selected_files(src, include)
        for rel in items:
            target = dest / rel
            if target.parent.is_symlink():
                target.parent.unlink()
            target.parent.mkdir(parents=True, exist_ok=True)
            if os.path.lexists(target):
                remove_path(target)
            os.symlink(src / rel, target)
    except OSError as e:
        raise DestinationWriteFailed(f"unable to link {dest}: {e}") from e
    logger.debug("linked %d item(s) %s -> %s", len(items), src, dest)
    return items


def prune_empty_dirs(root: Path, *, include_root: bool = True) -> None:
    if not root.is_dir() or root.is_symlink():
        return
    for dirpath, dirnames, filenames in os.walk(root, topdown=False):
        p = Path(dirpath)
        if p == root and not include_root:
            continue
        if not any(p.iterdir()):
            p.rmdir()


def remove_links(dest: Path, items: Sequence[str]) -> list[str]:
    """Unlink recorded per-file symlinks under `dest`; foreign files stay."""

    removed: list[str] = []
    for rel in items:
        p = dest / rel
        if p.is_symlink():
            p.unlink()
            removed.append(rel)
    return removed


def prune_stale_links(dest: Path, previous: Sequence[str], current: Sequence[str]) -> list[str]:
    """Remove links recorded by an earlier install that the source no longer has."""

    keep = set(current)
    stale = [rel for rel in previous if rel not in keep]
    try:
        removed = remove_links(dest, stale)
        if removed:
            prune_empty_dirs(dest, include_root=False)
    except OSError as e:
        raise DestinationWriteFailed(f"unable to remove stale links under {dest}: {e}") from e
    return removed


def _looks_like_script(p: Path) -> bool:
    if p.suffix in SCRIPT_SUFFIXES:
        return True
    with p.open("rb") as f:
        return f.read(2) == b"#!"


def make_executable(dest: Path) -> list[str]:
    """Add execute bits to script files under `dest` (or `dest` itself)."""

    files = [dest] if dest.is_file() else [dest / rel for rel in iter_tree_files(dest)]
    changed: list[str] = []
    try:
        for p in files:
            if p.is_symlink() or not _looks_like_script(p):
                continue
            mode = p.stat().st_mode
            p.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            changed.append(p.name)
    except OSError as e:
        raise DestinationWriteFailed(f"unable to mark scripts executable in {dest}: {e}") from e
    return changed


def compose_documents(parts: Sequence[tuple[str, Path]]) -> bytes:
    """Concatenate several markdown sources into one generated document."""

    header = GENERATED_HEADER.format(sources=", ".join(label for label, _ in parts))
    chunks = [header]
    for label, path in parts:
        if not path.is_file():
            raise SourceNotFound(f"composite source is not a file: {path} ({label})")
        try:
            chunks.append(path.read_text(encoding="utf-8").rstrip("\n"))
        except (OSError, UnicodeDecodeError) as e:
            raise SourceNotFound(f"unable to read composite source {path}: {e}") from e
    return ("\n\n".join(chunks) + "\n").encode("utf-8")
