from __future__ import annotations

import json
import os
import shutil
import stat
import subprocess
from pathlib import Path

import pytest

from promptpack.config import load_manifest
from promptpack.confirm import ScriptedConfirm
from promptpack.errors import BackupFailed, LockfileCorrupt, UnknownEntryIds
from promptpack.guard import ConflictGuard
from promptpack.lock import load_lock
from promptpack.models import AssetKind, OrphanAction, Outcome, SyncOptions, SyncReport
from promptpack.sync import sync


def _project(tmp_path: Path) -> tuple[Path, Path]:
    project = tmp_path / "project"
    src = tmp_path / "src"
    project.mkdir()
    src.mkdir()
    return project, src


def _manifest(project: Path, *entries: str) -> Path:
    p = project / "promptpack.yaml"
    body = "".join(f"  - {e}\n" for e in entries)
    p.write_text("entries:\n" + body if entries else "entries: []\n", encoding="utf-8")
    return p


def _sync(manifest_path: Path, confirmer: ScriptedConfirm | None = None, **opts) -> SyncReport:
    return sync(
        load_manifest(manifest_path),
        manifest_path,
        options=SyncOptions(**opts),
        confirmer=confirmer or ScriptedConfirm([]),
    )


def _by_id(report: SyncReport) -> dict:
    return {r.id: r for r in report.results}


AGENTS_COPY = "{id: a, kind: agents_md, source: {type: filesystem, root: ../src, path: a.md, symlink: false}}"
RULES_COPY = "{id: b, kind: cursor_rules, source: {type: filesystem, root: ../src/rules, symlink: false}}"


class TestLocalLifecycle:
    def test_install_then_skip_then_update_with_backup(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)

        first = _by_id(_sync(mp))["a"]
        assert first.outcome is Outcome.INSTALLED
        assert first.checksum is not None and first.checksum.startswith("sha256:")
        dest = project / "AGENTS.md"
        assert dest.read_text(encoding="utf-8") == "hello"
        assert not dest.is_symlink()

        lock_path = project / "promptpack.lock"
        lock_text = lock_path.read_text(encoding="utf-8")
        dest_mtime = dest.stat().st_mtime_ns
        lock_mtime = lock_path.stat().st_mtime_ns

        second = _by_id(_sync(mp))["a"]
        assert second.outcome is Outcome.SKIPPED_UNCHANGED
        assert second.checksum == first.checksum
        # Nothing was written on the second run.
        assert dest.stat().st_mtime_ns == dest_mtime
        assert lock_path.stat().st_mtime_ns == lock_mtime
        assert lock_path.read_text(encoding="utf-8") == lock_text
        assert not (project / ".promptpack").exists()

        (src / "a.md").write_text("hello!", encoding="utf-8")
        confirm = ScriptedConfirm([True])
        third = _by_id(_sync(mp, confirmer=confirm))["a"]
        assert third.outcome is Outcome.INSTALLED
        assert third.checksum != first.checksum
        assert dest.read_text(encoding="utf-8") == "hello!"
        assert len(third.backups) == 1
        assert Path(third.backups[0]).read_text(encoding="utf-8") == "hello"
        assert len(confirm.prompts) == 1
        assert load_lock(lock_path).entries["a"].checksum == third.checksum

    def test_declining_conflict_leaves_everything_alone(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)
        first = _by_id(_sync(mp))["a"]

        (project / "AGENTS.md").write_text("my local edits", encoding="utf-8")
        (src / "a.md").write_text("hello!", encoding="utf-8")
        result = _by_id(_sync(mp, confirmer=ScriptedConfirm([False])))["a"]

        assert result.outcome is Outcome.SKIPPED_BY_USER
        assert (project / "AGENTS.md").read_text(encoding="utf-8") == "my local edits"
        assert load_lock(project / "promptpack.lock").entries["a"].checksum == first.checksum
        assert not (project / ".promptpack").exists()

    def test_force_reinstalls_unchanged_entry(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)
        _sync(mp)

        (project / "AGENTS.md").unlink()
        (project / "AGENTS.md").write_text("hello", encoding="utf-8")
        again = _by_id(_sync(mp, force_reinstall=True))["a"]
        assert again.outcome is Outcome.INSTALLED
        assert again.backups == ()

    def test_dry_run_changes_nothing(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)

        report = _sync(mp, dry_run=True)
        assert report.dry_run is True
        assert _by_id(report)["a"].outcome is Outcome.INSTALLED
        assert not (project / "AGENTS.md").exists()
        assert not (project / "promptpack.lock").exists()

    def test_failed_entry_does_not_stop_the_batch(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(
            project,
            "{id: broken, kind: cursor_rules, source: {type: filesystem, root: ../missing}}",
            AGENTS_COPY,
        )
        report = _sync(mp)
        results = _by_id(report)
        assert results["broken"].outcome is Outcome.FAILED
        assert "not found" in (results["broken"].reason or "")
        assert results["a"].outcome is Outcome.INSTALLED
        assert report.ok is False
        assert set(load_lock(project / "promptpack.lock").entries) == {"a"}

    def test_backup_failure_fails_entry_and_keeps_destination(self, tmp_path: Path, monkeypatch):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)
        first = _by_id(_sync(mp))["a"]
        lock_text = (project / "promptpack.lock").read_text(encoding="utf-8")

        def broken_backup(self, path):
            raise BackupFailed(f"unable to back up {path}: disk full")

        monkeypatch.setattr(ConflictGuard, "backup", broken_backup)
        (src / "a.md").write_text("hello!", encoding="utf-8")
        result = _by_id(_sync(mp, auto_confirm=True))["a"]

        assert result.outcome is Outcome.FAILED
        assert "disk full" in (result.reason or "")
        assert (project / "AGENTS.md").read_text(encoding="utf-8") == "hello"
        assert (project / "promptpack.lock").read_text(encoding="utf-8") == lock_text
        assert load_lock(project / "promptpack.lock").entries["a"].checksum == first.checksum

    def test_unexpected_os_error_fails_only_that_entry(self, tmp_path: Path, monkeypatch):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        (src / "skills" / "one").mkdir(parents=True)
        (src / "skills" / "one" / "SKILL.md").write_text("one", encoding="utf-8")
        mp = _manifest(
            project,
            AGENTS_COPY,
            "{id: s, kind: cursor_skills_root, source: {type: filesystem, root: ../src/skills, symlink: false}}",
        )

        def unreadable(kind, path, *, strict=False):
            if kind is AssetKind.CURSOR_SKILLS_ROOT:
                raise PermissionError(13, "Permission denied", str(path))
            return []

        monkeypatch.setattr("promptpack.sync.check_content", unreadable)
        report = _sync(mp)
        results = _by_id(report)

        assert results["s"].outcome is Outcome.FAILED
        assert "Permission denied" in (results["s"].reason or "")
        assert results["a"].outcome is Outcome.INSTALLED
        assert report.ok is False
        # The entry installed before the failure is still recorded.
        assert set(load_lock(project / "promptpack.lock").entries) == {"a"}

    def test_corrupt_lockfile_aborts_before_any_entry(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)
        (project / "promptpack.lock").write_text("{broken", encoding="utf-8")

        with pytest.raises(LockfileCorrupt):
            _sync(mp)
        assert not (project / "AGENTS.md").exists()

    def test_unknown_only_id_is_rejected(self, tmp_path: Path):
        project, src = _project(tmp_path)
        mp = _manifest(project, AGENTS_COPY)
        with pytest.raises(UnknownEntryIds):
            _sync(mp, only_ids=frozenset({"zzz"}))


class TestOrphans:
    def _setup(self, tmp_path: Path) -> tuple[Path, Path]:
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        (src / "rules").mkdir()
        (src / "rules" / "py.md").write_text("py", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY, RULES_COPY)
        _sync(mp)
        assert (project / ".cursor" / "rules" / "py.md").exists()
        return project, mp

    def test_removed_entry_is_backed_up_then_deleted(self, tmp_path: Path):
        project, mp = self._setup(tmp_path)
        agents_mtime = (project / "AGENTS.md").stat().st_mtime_ns

        _manifest(project, AGENTS_COPY)
        report = _sync(mp, auto_confirm=True)

        (orphan,) = report.orphans
        assert orphan.id == "b"
        assert orphan.action is OrphanAction.REMOVED
        assert orphan.backup is not None
        assert (Path(orphan.backup) / "py.md").read_text(encoding="utf-8") == "py"
        assert not (project / ".cursor" / "rules").exists()
        assert (project / "AGENTS.md").stat().st_mtime_ns == agents_mtime
        assert set(load_lock(project / "promptpack.lock").entries) == {"a"}

    def test_restricted_run_skips_orphan_cleanup(self, tmp_path: Path):
        project, mp = self._setup(tmp_path)
        _manifest(project, AGENTS_COPY)

        report = _sync(mp, only_ids=frozenset({"a"}))
        assert report.orphans == []
        assert (project / ".cursor" / "rules" / "py.md").exists()
        assert set(load_lock(project / "promptpack.lock").entries) == {"a", "b"}

    def test_declined_orphan_keeps_record(self, tmp_path: Path):
        project, mp = self._setup(tmp_path)
        _manifest(project, AGENTS_COPY)

        report = _sync(mp, confirmer=ScriptedConfirm([False]))
        (orphan,) = report.orphans
        assert orphan.action is OrphanAction.DECLINED
        assert (project / ".cursor" / "rules" / "py.md").exists()
        assert "b" in load_lock(project / "promptpack.lock").entries

    def test_orphan_sharing_a_live_destination_is_not_deleted(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "rules").mkdir()
        (src / "rules" / "py.md").write_text("py", encoding="utf-8")
        (src / "extra.md").write_text("extra", encoding="utf-8")
        extra = (
            "{id: extra, kind: agents_md, dest: .cursor/rules/extra.md, "
            "source: {type: filesystem, root: ../src, path: extra.md, symlink: false}}"
        )
        mp = _manifest(project, RULES_COPY, extra)
        _sync(mp)

        _manifest(project, extra)
        report = _sync(mp)
        (orphan,) = report.orphans
        assert orphan.action is OrphanAction.KEPT_OVERLAP
        assert (project / ".cursor" / "rules" / "extra.md").read_text(encoding="utf-8") == "extra"
        assert (project / ".cursor" / "rules" / "py.md").exists()
        assert set(load_lock(project / "promptpack.lock").entries) == {"extra"}

    def test_changed_destination_cleans_up_old_path(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, AGENTS_COPY)
        _sync(mp)

        moved = AGENTS_COPY.replace("{id: a,", "{id: a, dest: docs/AGENTS.md,")
        _manifest(project, moved)
        report = _sync(mp, auto_confirm=True)

        assert _by_id(report)["a"].outcome is Outcome.INSTALLED
        assert (project / "docs" / "AGENTS.md").read_text(encoding="utf-8") == "hello"
        assert not (project / "AGENTS.md").exists()
        (orphan,) = report.orphans
        assert orphan.action is OrphanAction.REMOVED
        assert orphan.path == "AGENTS.md"
        assert load_lock(project / "promptpack.lock").entries["a"].dest == "docs/AGENTS.md"


class TestSymlinks:
    def test_directory_symlinks_are_per_file(self, tmp_path: Path):
        project, src = _project(tmp_path)
        rules = src / "rules"
        (rules / "sub").mkdir(parents=True)
        (rules / "a.md").write_text("a", encoding="utf-8")
        (rules / "sub" / "b.md").write_text("b", encoding="utf-8")
        mp = _manifest(project, "{id: r, kind: cursor_rules, source: {type: filesystem, root: ../src/rules}}")

        first = _by_id(_sync(mp))["r"]
        assert first.outcome is Outcome.INSTALLED
        dest = project / ".cursor" / "rules"
        assert not dest.is_symlink()
        assert (dest / "a.md").is_symlink()
        assert (dest / "sub" / "b.md").resolve() == (rules / "sub" / "b.md").resolve()

        locked = load_lock(project / "promptpack.lock").entries["r"]
        assert locked.is_symlink is True
        assert locked.symlinked_items == ("a.md", "sub/b.md")
        assert locked.target_path == "../src/rules"

        # Unrelated files at the destination survive reinstalls and removal.
        (dest / "mine.md").write_text("mine", encoding="utf-8")
        (rules / "sub" / "b.md").unlink()
        second = _by_id(_sync(mp))["r"]
        assert second.outcome is Outcome.INSTALLED
        assert not (dest / "sub").exists()
        assert (dest / "mine.md").read_text(encoding="utf-8") == "mine"
        assert load_lock(project / "promptpack.lock").entries["r"].symlinked_items == ("a.md",)

        _manifest(project)
        report = _sync(mp, auto_confirm=True)
        (orphan,) = report.orphans
        assert orphan.action is OrphanAction.REMOVED
        assert orphan.backup is None
        assert not (dest / "a.md").exists()
        assert (dest / "mine.md").exists()

    def test_single_file_symlink_follows_source(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "a.md").write_text("hello", encoding="utf-8")
        mp = _manifest(project, "{id: a, kind: agents_md, source: {type: filesystem, root: ../src, path: a.md}}")

        assert _by_id(_sync(mp))["a"].outcome is Outcome.INSTALLED
        dest = project / "AGENTS.md"
        assert dest.is_symlink()

        (src / "a.md").write_text("hello!", encoding="utf-8")
        assert dest.read_text(encoding="utf-8") == "hello!"
        # Our own link is not a conflict: no prompt, no backup.
        result = _by_id(_sync(mp))["a"]
        assert result.outcome is Outcome.INSTALLED
        assert result.backups == ()


class TestKinds:
    def test_include_filters_copied_items(self, tmp_path: Path):
        project, src = _project(tmp_path)
        for name in ("one", "two"):
            (src / "skills" / name).mkdir(parents=True)
            (src / "skills" / name / "SKILL.md").write_text(name, encoding="utf-8")
        mp = _manifest(
            project,
            "{id: s, kind: cursor_skills_root, include: [one], "
            "source: {type: filesystem, root: ../src/skills, symlink: false}}",
        )
        assert _by_id(_sync(mp))["s"].outcome is Outcome.INSTALLED
        dest = project / ".cursor" / "skills"
        assert (dest / "one" / "SKILL.md").exists()
        assert not (dest / "two").exists()

    def test_include_change_installs_newly_included_items(self, tmp_path: Path):
        project, src = _project(tmp_path)
        for name in ("one", "two"):
            (src / "skills" / name).mkdir(parents=True)
            (src / "skills" / name / "SKILL.md").write_text(name, encoding="utf-8")
        entry = (
            "{id: s, kind: cursor_skills_root, include: [%s], "
            "source: {type: filesystem, root: ../src/skills, symlink: false}}"
        )
        mp = _manifest(project, entry % "one")
        _sync(mp)
        before = load_lock(project / "promptpack.lock").entries["s"].declaration

        _manifest(project, entry % "one, two")
        result = _by_id(_sync(mp, auto_confirm=True))["s"]

        assert result.outcome is Outcome.INSTALLED
        assert (project / ".cursor" / "skills" / "two" / "SKILL.md").read_text(encoding="utf-8") == "two"
        after = load_lock(project / "promptpack.lock").entries["s"].declaration
        assert after is not None and after != before
        assert _by_id(_sync(mp))["s"].outcome is Outcome.SKIPPED_UNCHANGED

    def test_skill_validation_warns_or_fails_in_strict_mode(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "skills" / "bare").mkdir(parents=True)
        (src / "skills" / "bare" / "notes.md").write_text("x", encoding="utf-8")
        mp = _manifest(
            project,
            "{id: s, kind: cursor_skills_root, source: {type: filesystem, root: ../src/skills, symlink: false}}",
        )

        strict = _by_id(_sync(mp, strict=True))["s"]
        assert strict.outcome is Outcome.FAILED
        assert "SKILL.md" in (strict.reason or "")

        relaxed = _by_id(_sync(mp))["s"]
        assert relaxed.outcome is Outcome.INSTALLED
        assert any("SKILL.md" in w for w in relaxed.warnings)

    def test_hook_scripts_are_made_executable(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "hooks").mkdir()
        (src / "hooks.json").write_text(
            json.dumps({"version": 1, "hooks": {"stop": [{"command": "./hooks/run.sh"}]}}),
            encoding="utf-8",
        )
        script = src / "hooks" / "run.sh"
        script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        script.chmod(0o644)
        (src / "hooks" / "README.md").write_text("docs", encoding="utf-8")
        mp = _manifest(
            project,
            "{id: h, kind: cursor_hooks, source: {type: filesystem, root: ../src, path: hooks, symlink: false}}",
        )

        result = _by_id(_sync(mp, strict=True))["h"]
        assert result.outcome is Outcome.INSTALLED
        installed = project / ".cursor" / "hooks"
        assert os.access(installed / "run.sh", os.X_OK)
        assert not stat.S_IMODE((installed / "README.md").stat().st_mode) & stat.S_IXUSR
        # The source is untouched.
        assert stat.S_IMODE(script.stat().st_mode) == 0o644

    def test_composite_agents_md(self, tmp_path: Path):
        project, src = _project(tmp_path)
        (src / "base.md").write_text("base\n", encoding="utf-8")
        (src / "extra.md").write_text("extra\n", encoding="utf-8")
        mp = _manifest(
            project,
            "{id: c, kind: composite_agents_md, sources: ["
            "{type: filesystem, root: ../src, path: base.md}, "
            "{type: filesystem, root: ../src, path: extra.md}]}",
        )

        first = _by_id(_sync(mp))["c"]
        assert first.outcome is Outcome.INSTALLED
        text = (project / "AGENTS.md").read_text(encoding="utf-8")
        assert text.startswith("<!-- Generated by promptpack")
        assert text.endswith("base\n\nextra\n")
        assert not (project / "AGENTS.md").is_symlink()

        assert _by_id(_sync(mp))["c"].outcome is Outcome.SKIPPED_UNCHANGED


# ----------------------------------------------------------------------
# git sources
# ----------------------------------------------------------------------


def _git(repo: Path, *args: str) -> str:
    env = os.environ.copy()
    env.update(
        {
            "GIT_AUTHOR_NAME": "t",
            "GIT_AUTHOR_EMAIL": "t@example.com",
            "GIT_COMMITTER_NAME": "t",
            "GIT_COMMITTER_EMAIL": "t@example.com",
        }
    )
    cp = subprocess.run(["git", *args], cwd=repo, check=True, env=env, stdout=subprocess.PIPE, text=True)
    return cp.stdout.strip()


def _commit(repo: Path, message: str) -> str:
    _git(repo, "add", "-A")
    _git(repo, "-c", "commit.gpgsign=false", "commit", "-q", "-m", message)
    return _git(repo, "rev-parse", "HEAD")


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestRemote:
    def _repo(self, tmp_path: Path) -> tuple[Path, str]:
        repo = tmp_path / "upstream"
        (repo / "rules").mkdir(parents=True)
        _git(repo, "init", "-q")
        _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
        (repo / "rules" / "py.md").write_text("py", encoding="utf-8")
        return repo, _commit(repo, "init")

    def test_fast_path_skips_fetch_when_upstream_unchanged(self, tmp_path: Path, monkeypatch):
        project, _ = _project(tmp_path)
        repo, commit = self._repo(tmp_path)
        mp = _manifest(project, f"{{id: r, kind: cursor_rules, source: {{type: git, repo: '{repo}', path: rules}}}}")

        first = _by_id(_sync(mp))["r"]
        assert first.outcome is Outcome.INSTALLED
        assert first.resolved_revision_id == commit
        assert (project / ".cursor" / "rules" / "py.md").read_text(encoding="utf-8") == "py"
        assert not (project / ".cursor" / "rules" / "py.md").is_symlink()
        locked = load_lock(project / "promptpack.lock").entries["r"]
        assert (locked.resolved_ref, locked.commit, locked.is_symlink) == ("main", commit, False)

        clones: list[str] = []

        def no_clone(repo_arg, candidates, dest, *, shallow):
            clones.append(repo_arg)
            raise AssertionError("fetch should not happen")

        monkeypatch.setattr("promptpack.git.clone_first", no_clone)
        second = _by_id(_sync(mp))["r"]
        assert second.outcome is Outcome.SKIPPED_UNCHANGED
        assert second.resolved_revision_id == commit
        assert clones == []

    def test_upstream_change_is_fetched_and_installed(self, tmp_path: Path):
        project, _ = _project(tmp_path)
        repo, commit = self._repo(tmp_path)
        mp = _manifest(project, f"{{id: r, kind: cursor_rules, source: {{type: git, repo: '{repo}', path: rules}}}}")
        _sync(mp)

        (repo / "rules" / "py.md").write_text("py2", encoding="utf-8")
        newer = _commit(repo, "update")
        result = _by_id(_sync(mp, auto_confirm=True))["r"]
        assert result.outcome is Outcome.INSTALLED
        assert result.resolved_revision_id == newer != commit
        assert (project / ".cursor" / "rules" / "py.md").read_text(encoding="utf-8") == "py2"
        assert len(result.backups) == 1

    def test_subpath_change_reinstalls_at_same_commit(self, tmp_path: Path):
        project, _ = _project(tmp_path)
        repo, _ = self._repo(tmp_path)
        (repo / "other").mkdir()
        (repo / "other" / "py.md").write_text("other", encoding="utf-8")
        commit = _commit(repo, "add other")
        entry = "{{id: r, kind: cursor_rules, source: {{type: git, repo: '{repo}', path: {path}}}}}"
        mp = _manifest(project, entry.format(repo=repo, path="rules"))
        _sync(mp)

        _manifest(project, entry.format(repo=repo, path="other"))
        result = _by_id(_sync(mp, auto_confirm=True))["r"]

        assert result.outcome is Outcome.INSTALLED
        assert result.resolved_revision_id == commit
        assert (project / ".cursor" / "rules" / "py.md").read_text(encoding="utf-8") == "other"

    def test_missing_subpath_fails_and_releases_checkout(self, tmp_path: Path, monkeypatch):
        project, _ = _project(tmp_path)
        repo, _ = self._repo(tmp_path)
        mp = _manifest(project, f"{{id: r, kind: cursor_rules, source: {{type: git, repo: '{repo}', path: nope}}}}")

        tmpdirs = tmp_path / "tmpdirs"
        tmpdirs.mkdir()
        monkeypatch.setenv("TMPDIR", str(tmpdirs))
        monkeypatch.setattr("tempfile.tempdir", None)

        result = _by_id(_sync(mp))["r"]
        assert result.outcome is Outcome.FAILED
        assert "not found" in (result.reason or "")
        assert list(tmpdirs.iterdir()) == []
