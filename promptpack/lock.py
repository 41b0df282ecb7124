"""promptpack.lock I/O.

The lockfile records what the last sync installed for each entry id:
- Stable JSON formatting (sorted keys, stable indentation)
- Paths stored exactly as declared, with `$VARS` left unexpanded
- Rewritten only when its content changes
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from .version import __version__
from .errors import LockfileCorrupt


logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def _expect_mapping(value: Any, *, ctx: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise LockfileCorrupt(f"Invalid lockfile: {ctx} must be an object")
    return value


def _expect_str(value: Any, *, ctx: str) -> str:
    if not isinstance(value, str):
        raise LockfileCorrupt(f"Invalid lockfile: {ctx} must be a string")
    return value


def _optional_str(value: Any, *, ctx: str) -> str | None:
    if value is None:
        return None
    return _expect_str(value, ctx=ctx)


def _expect_bool(value: Any, *, ctx: str) -> bool:
    if not isinstance(value, bool):
        raise LockfileCorrupt(f"Invalid lockfile: {ctx} must be a boolean")
    return value


def _expect_str_list(value: Any, *, ctx: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise LockfileCorrupt(f"Invalid lockfile: {ctx} must be a list of strings")
    return value


def _check_unknown(data: Mapping[str, Any], allowed: set[str], *, ctx: str) -> None:
    unknown = sorted(k for k in data.keys() if k not in allowed)
    if unknown:
        raise LockfileCorrupt(f"Invalid lockfile: unknown {ctx} keys: {unknown}")


@dataclass(frozen=True)
class LockedEntry:
    """What was installed for one entry."""

    source: str
    dest: str
    checksum: str
    last_updated_at: str
    resolved_ref: str | None = None
    commit: str | None = None
    is_symlink: bool = False
    target_path: str | None = None
    symlinked_items: tuple[str, ...] = ()
    declaration: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "source": self.source,
            "dest": self.dest,
            "checksum": self.checksum,
            "lastUpdatedAt": self.last_updated_at,
        }
        if self.resolved_ref is not None:
            out["resolvedRef"] = self.resolved_ref
        if self.commit is not None:
            out["commit"] = self.commit
        if self.is_symlink:
            out["isSymlink"] = True
        if self.target_path is not None:
            out["targetPath"] = self.target_path
        if self.symlinked_items:
            out["symlinkedItems"] = list(self.symlinked_items)
        if self.declaration is not None:
            out["declaration"] = self.declaration
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, ctx: str) -> "LockedEntry":
        allowed = {
            "source",
            "dest",
            "checksum",
            "lastUpdatedAt",
            "resolvedRef",
            "commit",
            "isSymlink",
            "targetPath",
            "symlinkedItems",
            "declaration",
        }
        _check_unknown(data, allowed, ctx=ctx)
        missing = sorted(k for k in ("source", "dest", "checksum", "lastUpdatedAt") if k not in data)
        if missing:
            raise LockfileCorrupt(f"Invalid lockfile: {ctx} missing required keys: {missing}")

        return cls(
            source=_expect_str(data["source"], ctx=f"{ctx}.source"),
            dest=_expect_str(data["dest"], ctx=f"{ctx}.dest"),
            checksum=_expect_str(data["checksum"], ctx=f"{ctx}.checksum"),
            last_updated_at=_expect_str(data["lastUpdatedAt"], ctx=f"{ctx}.lastUpdatedAt"),
            resolved_ref=_optional_str(data.get("resolvedRef"), ctx=f"{ctx}.resolvedRef"),
            commit=_optional_str(data.get("commit"), ctx=f"{ctx}.commit"),
            is_symlink=_expect_bool(data.get("isSymlink", False), ctx=f"{ctx}.isSymlink"),
            target_path=_optional_str(data.get("targetPath"), ctx=f"{ctx}.targetPath"),
            symlinked_items=tuple(_expect_str_list(data.get("symlinkedItems", []), ctx=f"{ctx}.symlinkedItems")),
            declaration=_optional_str(data.get("declaration"), ctx=f"{ctx}.declaration"),
        )


@dataclass
class Lockfile:
    """In-memory lockfile state. Mutated by the sync run, saved once at the end."""

    lockfileVersion: int = LOCKFILE_VERSION
    promptpackVersion: str = __version__
    entries: dict[str, LockedEntry] = field(default_factory=dict)

    def get(self, entry_id: str) -> LockedEntry | None:
        return self.entries.get(entry_id)

    def upsert(self, entry_id: str, entry: LockedEntry) -> None:
        self.entries[entry_id] = entry

    def remove(self, entry_id: str) -> None:
        self.entries.pop(entry_id, None)

    def ids_not_in(self, declared: Iterable[str]) -> set[str]:
        return set(self.entries) - set(declared)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lockfileVersion": self.lockfileVersion,
            "promptpackVersion": self.promptpackVersion,
            "entries": {k: v.to_dict() for k, v in self.entries.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Lockfile":
        required = {"lockfileVersion", "promptpackVersion", "entries"}
        missing = sorted(k for k in required if k not in data)
        if missing:
            raise LockfileCorrupt(f"Invalid lockfile: missing required keys: {missing}")
        _check_unknown(data, required, ctx="top-level")

        version = data.get("lockfileVersion")
        if not isinstance(version, int) or isinstance(version, bool):
            raise LockfileCorrupt("Invalid lockfile: lockfileVersion must be an integer")
        if version != LOCKFILE_VERSION:
            raise LockfileCorrupt(f"Unsupported lockfileVersion: {version} (expected {LOCKFILE_VERSION})")

        tool_version = _expect_str(data.get("promptpackVersion"), ctx="promptpackVersion")
        raw_entries = _expect_mapping(data.get("entries"), ctx="entries")
        entries: dict[str, LockedEntry] = {}
        for k, v in raw_entries.items():
            m = _expect_mapping(v, ctx=f"entries[{k}]")
            entries[k] = LockedEntry.from_dict(m, ctx=f"entries[{k}]")

        return cls(lockfileVersion=version, promptpackVersion=tool_version, entries=entries)


def load_lock(path: str | Path) -> Lockfile:
    """Load a promptpack.lock file.

    A missing file yields an empty lockfile; anything unreadable or invalid
    raises LockfileCorrupt.
    """
    p = Path(path)
    if not p.exists():
        logger.debug("no lockfile at %s, starting empty", p)
        return Lockfile()

    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise LockfileCorrupt(f"Invalid lockfile: unable to read {p}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LockfileCorrupt(f"Invalid lockfile: invalid JSON in {p}") from e

    return Lockfile.from_dict(_expect_mapping(data, ctx="top-level"))


def save_lock(path: str | Path, lock: Lockfile) -> bool:
    """Write the lockfile with canonical formatting.

    Returns False (and writes nothing) when the file already has this content.
    """
    p = Path(path)
    lock.promptpackVersion = __version__
    text = _canonical_json(lock.to_dict())

    try:
        if p.read_text(encoding="utf-8") == text:
            return False
    except FileNotFoundError:
        pass

    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(p)
    logger.debug("wrote lockfile %s (%d entries)", p, len(lock.entries))
    return True
