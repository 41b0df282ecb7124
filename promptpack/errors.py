from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


class PromptpackError(Exception):
    """Base exception for promptpack."""


class PromptpackConfigError(PromptpackError):
    """Base exception for manifest parsing/validation errors."""


@dataclass(eq=False)
class ConfigParseError(PromptpackConfigError):
    """Raised when a manifest file cannot be parsed."""

    path: Path
    message: str
    lineno: int | None = None
    colno: int | None = None

    def __str__(self) -> str:
        loc = ""
        if self.lineno is not None and self.colno is not None:
            loc = f" (line {self.lineno}, column {self.colno})"
        return f"Invalid manifest {self.path}: {self.message}{loc}"


@dataclass(eq=False)
class ConfigValidationError(PromptpackConfigError):
    """Raised when a parsed manifest does not match the expected schema."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid manifest {self.path}: {self.message}"


class LockfileCorrupt(PromptpackError, ValueError):
    """Raised when a lockfile exists but cannot be parsed or validated.

    Aborts a whole sync run: there is no safe partial state to reason from.
    """


@dataclass(eq=False)
class UnknownEntryIds(PromptpackError):
    ids: list[str]

    def __str__(self) -> str:
        return f"Unknown entry id(s): {', '.join(sorted(self.ids))}"


class SyncError(PromptpackError):
    """Failure local to a single entry. Caught at the entry boundary."""


class SourceNotFound(SyncError):
    pass


class RemoteFetchFailed(SyncError):
    pass


@dataclass(eq=False)
class RemoteRevisionNotFound(SyncError):
    repo: str
    attempted: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"No matching revision in {self.repo} (tried: {', '.join(self.attempted)})"


class ChecksumIOError(SyncError, OSError):
    pass


class ConflictDeclined(SyncError):
    pass


class BackupFailed(SyncError):
    pass


class DestinationWriteFailed(SyncError):
    pass


class ValidationFailed(SyncError):
    pass


class UnexpectedConfirmation(PromptpackError):
    """A scripted confirmer was asked more questions than it has answers for."""
