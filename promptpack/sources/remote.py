from __future__ import annotations

import logging
import re
import tempfile
from pathlib import Path

from .. import git
from ..models import AUTO_REF, AUTO_REF_CANDIDATES, ROOT_PATH, RemoteSource
from ..paths import expand_path, resolve_under
from .base import RemoteInfo, ResolvedSource


logger = logging.getLogger(__name__)

_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:")


class RemoteResolver:
    """Resolves git sources by cloning into a temporary directory."""

    def __init__(self, source: RemoteSource) -> None:
        self.source = source

    def supports_symlink(self) -> bool:
        # Temporary checkouts are not stable symlink targets.
        return False

    def display_name(self) -> str:
        return self.source.repo

    def target_spec(self) -> str | None:
        return None

    def candidates(self) -> tuple[str, ...]:
        if self.source.ref == AUTO_REF:
            return AUTO_REF_CANDIDATES
        return (self.source.ref,)

    def location(self, base_dir: Path) -> str:
        """Repository argument for git: URLs verbatim, local paths resolved."""

        repo = expand_path(self.source.repo)
        if "://" in repo or _SCP_LIKE.match(repo):
            return repo
        return str(resolve_under(base_dir, repo))

    def probe_remote_changed(self, previous_commit: str | None, *, base_dir: Path) -> bool | None:
        """Whether the remote moved away from `previous_commit`.

        None means the probe could not tell (no previous commit, or the
        remote could not be queried) and the caller must resolve normally.
        """

        if not previous_commit:
            return None
        probed = git.probe_revision(self.location(base_dir), self.candidates())
        if probed is None:
            return None
        _, commit = probed
        logger.debug("probe %s: locked=%s remote=%s", self.source.repo, previous_commit, commit)
        return commit != previous_commit

    def resolve(self, base_dir: Path) -> ResolvedSource:
        tmp = tempfile.TemporaryDirectory(prefix="promptpack-")
        try:
            checkout = Path(tmp.name) / "repo"
            ref = git.clone_first(
                self.location(base_dir),
                self.candidates(),
                checkout,
                shallow=self.source.shallow,
            )
            commit = git.rev_parse_head(checkout)
            content = checkout if self.source.path == ROOT_PATH else checkout / self.source.path
            return ResolvedSource(
                content_path=content,
                display_label=self.display_name(),
                allows_symlink=False,
                remote_info=RemoteInfo(ref=ref, commit=commit),
                handle=tmp,
            )
        except BaseException:
            tmp.cleanup()
            raise
