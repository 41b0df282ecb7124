from __future__ import annotations

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class RemoteInfo:
    ref: str
    commit: str


@dataclass
class ResolvedSource:
    """Materialized source content, ready to hash and install.

    Remote content lives in a temporary directory held by `handle`; use the
    object as a context manager so the directory is removed on every exit
    path once the entry is done with `content_path`.
    """

    content_path: Path
    display_label: str
    allows_symlink: bool
    remote_info: RemoteInfo | None = None
    handle: tempfile.TemporaryDirectory[str] | None = field(default=None, repr=False)

    def close(self) -> None:
        if self.handle is not None:
            self.handle.cleanup()
            self.handle = None

    def __enter__(self) -> "ResolvedSource":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
