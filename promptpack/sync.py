"""Sync engine: install declared entries and clean up what is no longer declared.

Per entry, in order (first match wins):
- git source, same declaration, locked commit still current upstream, dest present -> skipped
- resolve source; missing content -> failed
- same declaration, checksum equal to the locked one, dest present -> skipped
- foreign content at dest -> confirm, back up (declined -> skipped_by_user)
- copy or per-file symlink, then record in the lockfile

Entries run one at a time; a failing entry never stops the batch. Only a
corrupt lockfile aborts the run, before anything is touched.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import ExitStack
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from .checksum import checksum_bytes, compute_checksum
from .confirm import AutoConfirm, Confirmer, TerminalConfirm
from .errors import ConflictDeclined, SourceNotFound, SyncError, UnknownEntryIds
from .guard import ConflictGuard
from .install import (
    compose_documents,
    install_copy,
    install_symlinks,
    make_executable,
    prune_empty_dirs,
    prune_stale_links,
    remove_links,
    remove_path,
    selected_files,
    write_bytes_atomic,
)
from .lock import LockedEntry, Lockfile, load_lock, save_lock
from .models import (
    AssetKind,
    Entry,
    EntryResult,
    LocalSource,
    Manifest,
    OrphanAction,
    OrphanResult,
    Outcome,
    Source,
    SyncOptions,
    SyncReport,
)
from .paths import lockfile_path, paths_overlap, resolve_under
from .sources import RemoteResolver, ResolvedSource, resolver_for
from .validate import check_content


logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _source_fields(source: Source) -> dict[str, object]:
    if isinstance(source, LocalSource):
        return {"type": "filesystem", "root": source.root, "path": source.path}
    return {"type": "git", "repo": source.repo, "ref": source.ref, "path": source.path}


def declaration_digest(entry: Entry) -> str:
    """Checksum of what an entry asks for: kind, sources and include filter.

    Recorded in the lockfile so an edited declaration never counts as unchanged.
    """

    payload = {
        "kind": entry.kind.value,
        "sources": [_source_fields(s) for s in entry.all_sources],
        "include": list(entry.include),
    }
    return checksum_bytes(json.dumps(payload, sort_keys=True).encode("utf-8"))


class SyncOrchestrator:
    def __init__(
        self,
        manifest: Manifest,
        manifest_path: Path,
        *,
        options: SyncOptions | None = None,
        confirmer: Confirmer | None = None,
        guard: ConflictGuard | None = None,
    ) -> None:
        self.manifest = manifest
        self.manifest_path = manifest_path
        self.project_dir = manifest_path.parent
        self.options = options or SyncOptions()
        if self.options.auto_confirm:
            self.confirmer: Confirmer = AutoConfirm()
        else:
            self.confirmer = confirmer or TerminalConfirm()
        self.guard = guard or ConflictGuard(self.project_dir)
        self.lock_path = lockfile_path(manifest_path)
        self.lock = Lockfile()

    # ------------------------------------------------------------------
    # run
    # ------------------------------------------------------------------

    def run(self) -> SyncReport:
        self.lock = load_lock(self.lock_path)
        selected = self._select()
        declared = {e.id: self.dest_path(e) for e in self.manifest.entries}
        moved = self._moved_destinations(selected, declared)

        results: list[EntryResult] = []
        orphans: list[OrphanResult] = []
        for entry in selected:
            result = self.sync_entry(entry)
            results.append(result)
            if entry.id in moved and result.outcome is Outcome.INSTALLED:
                old = moved[entry.id]
                orphans.append(self._remove_recorded(entry.id, old, resolve_under(self.project_dir, old.dest)))

        if self.options.only_ids is None:
            for orphan_id in sorted(self.lock.ids_not_in(declared)):
                orphans.append(self._cleanup_orphan(orphan_id, declared))
        else:
            logger.debug("restricted run: orphan cleanup disabled")

        if not self.options.dry_run:
            save_lock(self.lock_path, self.lock)
        return SyncReport(results=results, orphans=orphans, dry_run=self.options.dry_run)

    def _select(self) -> list[Entry]:
        only = self.options.only_ids
        if only is None:
            return list(self.manifest.entries)
        unknown = sorted(set(only) - self.manifest.ids)
        if unknown:
            raise UnknownEntryIds(ids=unknown)
        return [e for e in self.manifest.entries if e.id in only]

    def dest_path(self, entry: Entry) -> Path:
        return resolve_under(self.project_dir, entry.dest_spec)

    def _moved_destinations(self, selected: list[Entry], declared: dict[str, Path]) -> dict[str, LockedEntry]:
        """Locked records whose old destination must go once the entry reinstalls."""

        moved: dict[str, LockedEntry] = {}
        for entry in selected:
            locked = self.lock.get(entry.id)
            if locked is None or locked.dest == entry.dest_spec:
                continue
            old = resolve_under(self.project_dir, locked.dest)
            if old == declared[entry.id] or not os.path.lexists(old):
                continue
            if any(paths_overlap(old, d) for d in declared.values()):
                logger.info("%s: old destination %s overlaps a declared one; leaving it", entry.id, old)
                continue
            moved[entry.id] = locked
        return moved

    # ------------------------------------------------------------------
    # per entry
    # ------------------------------------------------------------------

    def sync_entry(self, entry: Entry) -> EntryResult:
        try:
            if entry.kind is AssetKind.COMPOSITE_AGENTS_MD:
                return self._sync_composite(entry)
            return self._sync_single(entry)
        except SyncError as e:
            logger.warning("%s: %s", entry.id, e)
            return EntryResult(id=entry.id, outcome=Outcome.FAILED, reason=str(e), dest=entry.dest_spec)
        except OSError as e:
            logger.warning("%s: unexpected I/O error: %s", entry.id, e)
            return EntryResult(id=entry.id, outcome=Outcome.FAILED, reason=str(e), dest=entry.dest_spec)

    def _sync_single(self, entry: Entry) -> EntryResult:
        assert entry.source is not None
        dest = self.dest_path(entry)
        locked = self.lock.get(entry.id)
        resolver = resolver_for(entry.source)

        if (
            isinstance(resolver, RemoteResolver)
            and locked is not None
            and locked.dest == entry.dest_spec
            and locked.declaration == declaration_digest(entry)
            and not self.options.force_reinstall
            and os.path.lexists(dest)
        ):
            changed = resolver.probe_remote_changed(locked.commit, base_dir=self.project_dir)
            if changed is False:
                logger.info("%s: %s still at %s, skipping fetch", entry.id, resolver.display_name(), locked.commit)
                return EntryResult(
                    id=entry.id,
                    outcome=Outcome.SKIPPED_UNCHANGED,
                    checksum=locked.checksum,
                    resolved_revision_id=locked.commit,
                    dest=entry.dest_spec,
                )

        with resolver.resolve(self.project_dir) as resolved:
            return self._install_resolved(entry, resolved, dest, locked, resolver.target_spec())

    def _install_resolved(
        self,
        entry: Entry,
        resolved: ResolvedSource,
        dest: Path,
        locked: LockedEntry | None,
        target_spec: str | None,
    ) -> EntryResult:
        content = resolved.content_path
        if not content.exists():
            raise SourceNotFound(f"source path not found: {content}")
        if entry.kind.is_single_file and not content.is_file():
            raise SourceNotFound(f"expected a file for {entry.kind.value}: {content}")

        warnings = tuple(check_content(entry.kind, content, strict=self.options.strict))
        for w in warnings:
            logger.warning("%s: %s", entry.id, w)

        checksum = compute_checksum(content)
        remote = resolved.remote_info
        commit = remote.commit if remote else None
        use_symlink = resolved.allows_symlink

        if self._unchanged(entry, locked, dest, checksum, use_symlink):
            assert locked is not None
            retained = replace(
                locked,
                source=resolved.display_label,
                resolved_ref=remote.ref if remote else locked.resolved_ref,
                commit=commit or locked.commit,
            )
            self.lock.upsert(entry.id, retained)
            return EntryResult(
                id=entry.id,
                outcome=Outcome.SKIPPED_UNCHANGED,
                checksum=checksum,
                resolved_revision_id=commit,
                dest=entry.dest_spec,
                warnings=warnings,
            )

        if use_symlink and content.is_dir() and not (dest.is_symlink() or (dest.exists() and not dest.is_dir())):
            conflicts = self._symlink_item_conflicts(content, dest, entry)
        elif self.guard.has_conflict(dest, checksum, managed_symlinks=self._managed_symlinks_at(dest)):
            conflicts = [dest]
        else:
            conflicts = []

        backups = self._clear_conflicts(entry, conflicts)
        if backups is None:
            return EntryResult(
                id=entry.id,
                outcome=Outcome.SKIPPED_BY_USER,
                checksum=checksum,
                resolved_revision_id=commit,
                reason=str(ConflictDeclined(f"kept local changes at {entry.dest_spec}")),
                dest=entry.dest_spec,
                warnings=warnings,
            )

        items: list[str] = []
        if not self.options.dry_run:
            if use_symlink:
                items = install_symlinks(content, dest, entry.include)
                if locked is not None and locked.is_symlink and locked.dest == entry.dest_spec:
                    prune_stale_links(dest, locked.symlinked_items, items)
            else:
                install_copy(content, dest, entry.include)
                if entry.kind.needs_executables:
                    make_executable(dest)

            self.lock.upsert(
                entry.id,
                LockedEntry(
                    source=resolved.display_label,
                    dest=entry.dest_spec,
                    checksum=checksum,
                    last_updated_at=_now(),
                    resolved_ref=remote.ref if remote else None,
                    commit=commit,
                    is_symlink=use_symlink,
                    target_path=target_spec if use_symlink else None,
                    symlinked_items=tuple(items),
                    declaration=declaration_digest(entry),
                ),
            )
            logger.info("%s: installed %s -> %s", entry.id, resolved.display_label, dest)

        return EntryResult(
            id=entry.id,
            outcome=Outcome.INSTALLED,
            checksum=checksum,
            resolved_revision_id=commit,
            dest=entry.dest_spec,
            backups=backups,
            warnings=warnings,
        )

    def _sync_composite(self, entry: Entry) -> EntryResult:
        dest = self.dest_path(entry)
        locked = self.lock.get(entry.id)

        with ExitStack() as stack:
            parts: list[tuple[str, Path]] = []
            for source in entry.sources:
                resolved = stack.enter_context(resolver_for(source).resolve(self.project_dir))
                parts.append((resolved.display_label, resolved.content_path))
            data = compose_documents(parts)

        checksum = checksum_bytes(data)
        label = ", ".join(label for label, _ in parts)

        if self._unchanged(entry, locked, dest, checksum, False):
            return EntryResult(id=entry.id, outcome=Outcome.SKIPPED_UNCHANGED, checksum=checksum, dest=entry.dest_spec)

        conflicts = [dest] if self.guard.has_conflict(dest, checksum) else []
        backups = self._clear_conflicts(entry, conflicts)
        if backups is None:
            return EntryResult(
                id=entry.id,
                outcome=Outcome.SKIPPED_BY_USER,
                checksum=checksum,
                reason=str(ConflictDeclined(f"kept local changes at {entry.dest_spec}")),
                dest=entry.dest_spec,
            )

        if not self.options.dry_run:
            write_bytes_atomic(dest, data)
            self.lock.upsert(
                entry.id,
                LockedEntry(
                    source=label,
                    dest=entry.dest_spec,
                    checksum=checksum,
                    last_updated_at=_now(),
                    declaration=declaration_digest(entry),
                ),
            )
            logger.info("%s: composed %d source(s) into %s", entry.id, len(parts), dest)

        return EntryResult(
            id=entry.id,
            outcome=Outcome.INSTALLED,
            checksum=checksum,
            dest=entry.dest_spec,
            backups=backups,
        )

    def _unchanged(
        self,
        entry: Entry,
        locked: LockedEntry | None,
        dest: Path,
        checksum: str,
        use_symlink: bool,
    ) -> bool:
        if locked is None or self.options.force_reinstall:
            return False
        return (
            locked.checksum == checksum
            and locked.dest == entry.dest_spec
            and locked.declaration == declaration_digest(entry)
            and locked.is_symlink == use_symlink
            and os.path.lexists(dest)
        )

    def _managed_symlinks_at(self, path: Path) -> bool:
        """Whether any locked record says this tool symlinked content at `path`."""

        for rec in self.lock.entries.values():
            if not rec.is_symlink:
                continue
            rec_dest = resolve_under(self.project_dir, rec.dest)
            if path == rec_dest or rec_dest in path.parents:
                return True
        return False

    def _symlink_item_conflicts(self, content: Path, dest: Path, entry: Entry) -> list[Path]:
        managed = self._managed_symlinks_at(dest)
        conflicts: list[Path] = []
        for rel in selected_files(content, entry.include):
            target = dest / rel
            if self.guard.has_conflict(target, compute_checksum(content / rel), managed_symlinks=managed):
                conflicts.append(target)
        return conflicts

    def _clear_conflicts(self, entry: Entry, conflicts: list[Path]) -> tuple[str, ...] | None:
        """Back up every conflicting path. None means the user declined."""

        if not conflicts:
            return ()
        rels = ", ".join(self._display(p) for p in conflicts)
        if self.options.dry_run:
            logger.info("%s: would back up %s", entry.id, rels)
            return ()
        if not self.confirmer.confirm(f"{entry.id}: {rels} has local changes. Back up and overwrite?"):
            logger.info("%s: declined overwrite of %s", entry.id, rels)
            return None
        return tuple(str(self.guard.backup(p).backup_path) for p in conflicts)

    # ------------------------------------------------------------------
    # orphans
    # ------------------------------------------------------------------

    def _cleanup_orphan(self, orphan_id: str, declared: dict[str, Path]) -> OrphanResult:
        record = self.lock.get(orphan_id)
        assert record is not None
        path = resolve_under(self.project_dir, record.dest)

        if any(paths_overlap(path, d) for d in declared.values()):
            logger.info("orphan %s: %s is shared with a declared entry; keeping files", orphan_id, path)
            self.lock.remove(orphan_id)
            return OrphanResult(id=orphan_id, path=record.dest, action=OrphanAction.KEPT_OVERLAP)

        result = self._remove_recorded(orphan_id, record, path)
        if result.action in (OrphanAction.REMOVED, OrphanAction.MISSING):
            self.lock.remove(orphan_id)
        return result

    def _remove_recorded(self, entry_id: str, record: LockedEntry, path: Path) -> OrphanResult:
        """Remove what `record` installed at `path`: links directly, the rest after a backup."""

        if not os.path.lexists(path):
            return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.MISSING)
        if self.options.dry_run:
            return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.WOULD_REMOVE)
        if not self.confirmer.confirm(f"Remove {self._display(path)} (no longer managed by '{entry_id}')?"):
            return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.DECLINED)

        backup: str | None = None
        try:
            if record.is_symlink and path.is_symlink():
                path.unlink()
            elif record.is_symlink and path.is_dir():
                remove_links(path, record.symlinked_items)
                prune_empty_dirs(path)
            else:
                backup = str(self.guard.backup(path).backup_path)
                remove_path(path)
        except SyncError as e:
            logger.warning("orphan %s: %s", entry_id, e)
            return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.FAILED, reason=str(e))
        except OSError as e:
            logger.warning("orphan %s: unable to remove %s: %s", entry_id, path, e)
            return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.FAILED, reason=str(e))

        logger.info("removed %s (entry '%s')", path, entry_id)
        return OrphanResult(id=entry_id, path=record.dest, action=OrphanAction.REMOVED, backup=backup)

    def _display(self, p: Path) -> str:
        try:
            return p.relative_to(self.project_dir).as_posix()
        except ValueError:
            return str(p)


def sync(
    manifest: Manifest,
    manifest_path: Path,
    *,
    options: SyncOptions | None = None,
    confirmer: Confirmer | None = None,
) -> SyncReport:
    return SyncOrchestrator(manifest, manifest_path, options=options, confirmer=confirmer).run()
