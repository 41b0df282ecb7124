from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Sequence

from .errors import RemoteFetchFailed, RemoteRevisionNotFound


logger = logging.getLogger(__name__)

_SHA_RE = re.compile(r"^[0-9a-f]{40}$")
_NOT_FOUND_MARKERS = ("not found in upstream", "could not find remote branch", "did not match any")


def is_commit_sha(ref: str) -> bool:
    return bool(_SHA_RE.match(ref))


def _git(*args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    if shutil.which("git") is None:
        raise RemoteFetchFailed("git not available")
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    logger.debug("git %s", " ".join(args))
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


def ls_remote(repo: str, ref: str) -> str | None:
    """Commit id the remote currently has for `ref`, or None if unknown.

    Branches win over tags; annotated tags report the commit they point at.
    """

    if is_commit_sha(ref):
        return ref

    heads = f"refs/heads/{ref}"
    tag = f"refs/tags/{ref}"
    peeled = f"{tag}^{{}}"
    try:
        cp = _git("ls-remote", repo, heads, tag, peeled)
    except RemoteFetchFailed:
        return None
    if cp.returncode != 0:
        logger.debug("ls-remote failed for %s %s: %s", repo, ref, cp.stderr.strip())
        return None

    found: dict[str, str] = {}
    for line in cp.stdout.splitlines():
        parts = line.split("\t")
        if len(parts) == 2:
            found[parts[1].strip()] = parts[0].strip()
    for name in (heads, peeled, tag):
        if name in found:
            return found[name]
    return None


def probe_revision(repo: str, candidates: Sequence[str]) -> tuple[str, str] | None:
    """Return (ref, commit) for the first candidate the remote knows about."""

    for ref in candidates:
        commit = ls_remote(repo, ref)
        if commit is not None:
            return ref, commit
    return None


def rev_parse_head(checkout: Path) -> str:
    cp = _git("rev-parse", "HEAD", cwd=checkout)
    if cp.returncode != 0:
        raise RemoteFetchFailed(f"unable to read HEAD in {checkout}: {cp.stderr.strip()}")
    return cp.stdout.strip()


def _is_missing_ref(stderr: str) -> bool:
    low = stderr.lower()
    return any(m in low for m in _NOT_FOUND_MARKERS)


def _clone_commit(repo: str, sha: str, dest: Path) -> subprocess.CompletedProcess[str]:
    cp = _git("clone", "--quiet", "--no-checkout", repo, str(dest))
    if cp.returncode != 0:
        return cp
    return _git("checkout", "--quiet", sha, cwd=dest)


def clone_first(repo: str, candidates: Sequence[str], dest: Path, *, shallow: bool) -> str:
    """Clone `repo` into `dest` at the first candidate ref that exists.

    Returns the ref that was checked out. Raises RemoteRevisionNotFound with
    every attempted candidate when none exists, RemoteFetchFailed for any
    other git failure.
    """

    attempted: list[str] = []
    for ref in candidates:
        attempted.append(ref)
        if dest.exists():
            shutil.rmtree(dest)

        if is_commit_sha(ref):
            cp = _clone_commit(repo, ref, dest)
        else:
            args = ["clone", "--quiet", "--branch", ref]
            if shallow:
                args += ["--depth", "1"]
            cp = _git(*args, repo, str(dest))

        if cp.returncode == 0:
            logger.info("fetched %s at %s", repo, ref)
            return ref
        if _is_missing_ref(cp.stderr) or (is_commit_sha(ref) and dest.exists()):
            logger.debug("ref %s not found in %s", ref, repo)
            continue
        raise RemoteFetchFailed(f"git clone of {repo} failed: {cp.stderr.strip()}")

    raise RemoteRevisionNotFound(repo=repo, attempted=attempted)
