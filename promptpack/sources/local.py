from __future__ import annotations

from pathlib import Path

from ..models import ROOT_PATH, LocalSource
from ..paths import resolve_under
from .base import ResolvedSource


class LocalResolver:
    """Resolves filesystem sources in place; nothing is copied or fetched."""

    def __init__(self, source: LocalSource) -> None:
        self.source = source

    def supports_symlink(self) -> bool:
        return self.source.symlink

    def display_name(self) -> str:
        return f"filesystem:{self.source.root}"

    def target_spec(self) -> str:
        """Unexpanded location of the content, as recorded in the lockfile."""
        if self.source.path == ROOT_PATH:
            return self.source.root
        return f"{self.source.root.rstrip('/')}/{self.source.path}"

    def content_path(self, base_dir: Path) -> Path:
        root = resolve_under(base_dir, self.source.root)
        if self.source.path == ROOT_PATH:
            return root
        return root / self.source.path

    def resolve(self, base_dir: Path) -> ResolvedSource:
        return ResolvedSource(
            content_path=self.content_path(base_dir),
            display_label=self.display_name(),
            allows_symlink=self.supports_symlink(),
        )
