from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Union


AUTO_REF = "auto"
AUTO_REF_CANDIDATES = ("main", "master")
ROOT_PATH = "."


class AssetKind(str, enum.Enum):
    AGENTS_MD = "agents_md"
    COMPOSITE_AGENTS_MD = "composite_agents_md"
    CURSOR_RULES = "cursor_rules"
    CURSOR_SKILLS_ROOT = "cursor_skills_root"
    AGENT_SKILL = "agent_skill"
    CURSOR_HOOKS = "cursor_hooks"

    @property
    def is_single_file(self) -> bool:
        return self in (AssetKind.AGENTS_MD, AssetKind.COMPOSITE_AGENTS_MD)

    @property
    def needs_executables(self) -> bool:
        return self is AssetKind.CURSOR_HOOKS

    def default_dest(self, entry_id: str) -> str:
        if self is AssetKind.AGENT_SKILL:
            return f".claude/skills/{entry_id}"
        return _DEFAULT_DESTS[self]


_DEFAULT_DESTS = {
    AssetKind.AGENTS_MD: "AGENTS.md",
    AssetKind.COMPOSITE_AGENTS_MD: "AGENTS.md",
    AssetKind.CURSOR_RULES: ".cursor/rules",
    AssetKind.CURSOR_SKILLS_ROOT: ".cursor/skills",
    AssetKind.CURSOR_HOOKS: ".cursor/hooks",
}


@dataclass(frozen=True)
class LocalSource:
    """Content that lives on the local filesystem.

    `root` is kept as written in the manifest (possibly with `$VARS`) so it
    can be recorded unexpanded in the lockfile.
    """

    root: str
    path: str = ROOT_PATH
    symlink: bool = True


@dataclass(frozen=True)
class RemoteSource:
    """Content fetched from a git repository (URL or local path)."""

    repo: str
    ref: str = AUTO_REF
    path: str = ROOT_PATH
    shallow: bool = True


Source = Union[LocalSource, RemoteSource]


@dataclass(frozen=True)
class Entry:
    id: str
    kind: AssetKind
    source: Source | None = None
    sources: tuple[Source, ...] = ()
    dest: str | None = None
    include: tuple[str, ...] = ()

    @property
    def dest_spec(self) -> str:
        """Destination as declared (unexpanded), falling back to the kind default."""
        return self.dest if self.dest is not None else self.kind.default_dest(self.id)

    @property
    def all_sources(self) -> tuple[Source, ...]:
        if self.source is not None:
            return (self.source, *self.sources)
        return self.sources


@dataclass(frozen=True)
class Manifest:
    entries: tuple[Entry, ...] = ()

    @property
    def ids(self) -> set[str]:
        return {e.id for e in self.entries}

    def get(self, entry_id: str) -> Entry | None:
        for e in self.entries:
            if e.id == entry_id:
                return e
        return None


@dataclass(frozen=True)
class SyncOptions:
    auto_confirm: bool = False
    dry_run: bool = False
    only_ids: frozenset[str] | None = None
    force_reinstall: bool = False
    strict: bool = False


class Outcome(str, enum.Enum):
    INSTALLED = "installed"
    SKIPPED_UNCHANGED = "skipped_unchanged"
    SKIPPED_BY_USER = "skipped_by_user"
    FAILED = "failed"


@dataclass(frozen=True)
class EntryResult:
    id: str
    outcome: Outcome
    checksum: str | None = None
    resolved_revision_id: str | None = None
    reason: str | None = None
    dest: str | None = None
    backups: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class OrphanAction(str, enum.Enum):
    REMOVED = "removed"
    WOULD_REMOVE = "would_remove"
    KEPT_OVERLAP = "kept_overlap"
    MISSING = "missing"
    DECLINED = "declined"
    FAILED = "failed"


@dataclass(frozen=True)
class OrphanResult:
    id: str
    path: str
    action: OrphanAction
    backup: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SyncReport:
    results: list[EntryResult] = field(default_factory=list)
    orphans: list[OrphanResult] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not any(r.outcome is Outcome.FAILED for r in self.results)
