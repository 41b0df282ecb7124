from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from . import paths
from .config import DEFAULT_MANIFEST_TOML, DEFAULT_MANIFEST_YAML, find_manifest, load_manifest
from .errors import LockfileCorrupt, PromptpackConfigError, UnknownEntryIds, ValidationFailed
from .lock import load_lock
from .models import OrphanAction, Outcome, SyncOptions, SyncReport
from .version import __version__


EXIT_FAILED = 1
EXIT_USAGE = 2


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="promptpack",
        description="Install prompt and agent assets from git or local sources into a project",
    )
    p.add_argument("--version", action="version", version=f"promptpack {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose (debug) logging")
    p.add_argument("--manifest", type=Path, default=None, help="Path to promptpack.yaml/.toml")

    sub = p.add_subparsers(dest="cmd", required=True)

    init = sub.add_parser("init", help="Write a starter manifest in the current directory")
    init.add_argument("--format", choices=("yaml", "toml"), default="yaml")
    init.add_argument("--force", action="store_true", help="Overwrite an existing manifest")

    s = sub.add_parser("sync", help="Install or update declared entries")
    s.add_argument("--only", action="append", default=None, metavar="ID", help="Sync only this entry (repeatable)")
    s.add_argument("-y", "--yes", action="store_true", help="Back up and overwrite without asking")
    s.add_argument("--dry-run", action="store_true", help="Show what would change without writing")
    s.add_argument("--strict", action="store_true", help="Treat content validation warnings as failures")
    s.add_argument("--force", action="store_true", help="Reinstall even when nothing changed")

    v = sub.add_parser("validate", help="Check the manifest and local sources")
    v.add_argument("--strict", action="store_true", help="Fail on the first problem")

    sub.add_parser("status", help="Show what the lockfile records")

    return p


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _locate_manifest(args: argparse.Namespace) -> Path | None:
    if args.manifest is not None:
        return Path(args.manifest).expanduser().resolve()
    return find_manifest(paths.work_root())


def _ensure_gitignore(project_dir: Path) -> bool:
    entry = f"{paths.STATE_DIR_NAME}/"
    gi = project_dir / ".gitignore"
    existing = gi.read_text(encoding="utf-8") if gi.exists() else ""
    lines = [line.strip() for line in existing.splitlines()]
    if entry in lines or paths.STATE_DIR_NAME in lines:
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    gi.write_text(existing + prefix + entry + "\n", encoding="utf-8")
    return True


def _cmd_init(args: argparse.Namespace) -> int:
    if args.manifest is not None:
        target = Path(args.manifest).expanduser().resolve()
    else:
        target = paths.work_root() / ("promptpack.toml" if args.format == "toml" else "promptpack.yaml")

    if target.exists() and not args.force:
        print(f"Manifest already exists: {target} (use --force to overwrite)", file=sys.stderr)
        return EXIT_FAILED

    text = DEFAULT_MANIFEST_TOML if target.suffix == ".toml" else DEFAULT_MANIFEST_YAML
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    print(f"Wrote {target}")
    if _ensure_gitignore(target.parent):
        print(f"Added {paths.STATE_DIR_NAME}/ to .gitignore")
    return 0


def _print_report(report: SyncReport) -> None:
    prefix = "[dry-run] " if report.dry_run else ""
    for r in report.results:
        line = f"{prefix}{r.outcome.value:<18} {r.id:<24} {r.dest or ''}"
        if r.resolved_revision_id:
            line += f"  @{r.resolved_revision_id[:12]}"
        if r.reason:
            line += f"  ({r.reason})"
        print(line)
        for b in r.backups:
            print(f"{prefix}{'':<18} backup: {b}")
    for o in report.orphans:
        line = f"{prefix}orphan:{o.action.value:<11} {o.id:<24} {o.path}"
        if o.backup:
            line += f"  backup: {o.backup}"
        if o.reason:
            line += f"  ({o.reason})"
        print(line)

    counts: dict[str, int] = {}
    for r in report.results:
        counts[r.outcome.value] = counts.get(r.outcome.value, 0) + 1
    removed = sum(1 for o in report.orphans if o.action is OrphanAction.REMOVED)
    summary = ", ".join(f"{v} {k}" for k, v in sorted(counts.items())) or "nothing to do"
    if removed:
        summary += f", {removed} orphan(s) removed"
    print(f"{prefix}{summary}")


def _cmd_sync(args: argparse.Namespace, manifest_path: Path) -> int:
    from .confirm import TerminalConfirm
    from .sync import sync

    manifest = load_manifest(manifest_path)
    options = SyncOptions(
        auto_confirm=args.yes,
        dry_run=args.dry_run,
        only_ids=frozenset(args.only) if args.only else None,
        force_reinstall=args.force,
        strict=args.strict,
    )
    report = sync(manifest, manifest_path, options=options, confirmer=TerminalConfirm())
    _print_report(report)
    if any(r.outcome is Outcome.FAILED for r in report.results):
        return EXIT_FAILED
    return 0


def _cmd_validate(args: argparse.Namespace, manifest_path: Path) -> int:
    from .validate import validate_manifest

    manifest = load_manifest(manifest_path)
    try:
        report = validate_manifest(manifest, manifest_path, strict=args.strict)
    except ValidationFailed as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_FAILED

    for w in report.warnings:
        print(f"warning: {w}")
    print(f"{manifest_path}: {len(manifest.entries)} entries OK")
    return 0


def _cmd_status(manifest_path: Path) -> int:
    lock_path = paths.lockfile_path(manifest_path)
    lock = load_lock(lock_path)
    if not lock.entries:
        print(f"No entries recorded in {lock_path}")
        return 0
    for entry_id in sorted(lock.entries):
        e = lock.entries[entry_id]
        line = f"{entry_id:<24} {e.dest:<32} {e.checksum[:19]}"
        if e.commit:
            line += f"  @{e.commit[:12]}"
        if e.is_symlink:
            line += "  (symlink)"
        print(line)
        print(f"{'':<24} from {e.source}  updated {e.last_updated_at}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    if args.cmd == "init":
        return _cmd_init(args)

    manifest_path = _locate_manifest(args)
    if manifest_path is None:
        print("No promptpack manifest found (run `promptpack init`)", file=sys.stderr)
        return EXIT_USAGE

    try:
        if args.cmd == "sync":
            return _cmd_sync(args, manifest_path)
        if args.cmd == "validate":
            return _cmd_validate(args, manifest_path)
        if args.cmd == "status":
            return _cmd_status(manifest_path)
    except (PromptpackConfigError, LockfileCorrupt, UnknownEntryIds) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE

    raise AssertionError(f"unhandled command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
