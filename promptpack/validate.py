"""Content checks for skills and hooks, plus the `validate` command."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import overlapping_destinations
from .errors import SourceNotFound, ValidationFailed
from .models import AssetKind, LocalSource, Manifest
from .sources import LocalResolver


logger = logging.getLogger(__name__)

_SKILL_FILES = ("SKILL.md", "skill.md")
_SCRIPT_PREFIXES = ("hooks/", "scripts/")
_CURSOR_MARKER = ".cursor/"
_TRIM_CHARS = "\"';(),"


@dataclass
class ValidationReport:
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


def _warn_or_raise(warnings: list[str], strict: bool, message: str) -> None:
    if strict:
        raise ValidationFailed(message)
    warnings.append(message)


def _has_skill_file(d: Path) -> bool:
    return any((d / name).is_file() for name in _SKILL_FILES)


def check_skill_dir(path: Path, *, strict: bool = False) -> list[str]:
    warnings: list[str] = []
    if not _has_skill_file(path):
        _warn_or_raise(warnings, strict, f"skill directory {path} has no SKILL.md")
    return warnings


def check_skills_root(path: Path, *, strict: bool = False) -> list[str]:
    warnings: list[str] = []
    try:
        children = sorted(path.iterdir())
    except OSError as e:
        raise SourceNotFound(f"unable to list skills in {path}: {e}") from e
    for child in children:
        if child.is_dir() and not child.name.startswith(".") and not _has_skill_file(child):
            _warn_or_raise(warnings, strict, f"skill directory {child} has no SKILL.md")
    return warnings


def hooks_root(path: Path) -> Path:
    """Directory holding hooks.json: the parent of a `hooks`/`scripts` dir."""

    if path.name in ("hooks", "scripts"):
        return path.parent
    return path


def _collect_commands(value: Any, out: list[str]) -> None:
    if isinstance(value, dict):
        for k, v in value.items():
            if k == "command" and isinstance(v, str):
                out.append(v)
            else:
                _collect_commands(v, out)
    elif isinstance(value, list):
        for v in value:
            _collect_commands(v, out)


def _script_path(token: str) -> str | None:
    token = token.strip(_TRIM_CHARS)
    if not token:
        return None
    pos = token.find(_CURSOR_MARKER)
    if pos >= 0:
        rel = token[pos + len(_CURSOR_MARKER) :].strip(_TRIM_CHARS)
        return rel or None
    if token.startswith("./"):
        token = token[2:]
    if token.startswith(_SCRIPT_PREFIXES):
        return token
    return None


def referenced_scripts(config: Any) -> set[str]:
    """Relative script paths mentioned by `command` strings in a hooks config."""

    commands: list[str] = []
    _collect_commands(config, commands)
    scripts: set[str] = set()
    for command in commands:
        for token in command.split():
            rel = _script_path(token)
            if rel is not None:
                scripts.add(rel)
    return scripts


def check_hooks(path: Path, *, strict: bool = False) -> list[str]:
    warnings: list[str] = []
    root = hooks_root(path)
    config_path = root / "hooks.json"
    if not config_path.is_file():
        _warn_or_raise(warnings, strict, f"hooks config not found: {config_path}")
        return warnings

    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        _warn_or_raise(warnings, strict, f"unable to read hooks config {config_path}: {e}")
        return warnings

    section = config.get("hooks") if isinstance(config, dict) else None
    if not isinstance(section, (dict, list)):
        _warn_or_raise(warnings, strict, f"hooks config {config_path} has no 'hooks' section")
        return warnings

    for rel in sorted(referenced_scripts(section)):
        if not (root / rel).is_file():
            _warn_or_raise(warnings, strict, f"hook script not found: {root / rel}")
    return warnings


def check_content(kind: AssetKind, path: Path, *, strict: bool = False) -> list[str]:
    """Kind-specific checks on resolved source content."""

    if kind is AssetKind.CURSOR_SKILLS_ROOT and path.is_dir():
        return check_skills_root(path, strict=strict)
    if kind is AssetKind.AGENT_SKILL and path.is_dir():
        return check_skill_dir(path, strict=strict)
    if kind is AssetKind.CURSOR_HOOKS and path.is_dir():
        return check_hooks(path, strict=strict)
    return []


def validate_manifest(manifest: Manifest, manifest_path: Path, *, strict: bool = False) -> ValidationReport:
    """Check a loaded manifest without fetching or installing anything.

    Git sources are not fetched. Filesystem sources must exist and pass the
    kind-specific checks. In strict mode the first problem raises
    ValidationFailed.
    """

    base_dir = manifest_path.parent
    report = ValidationReport()

    for a, b in overlapping_destinations(manifest, base_dir):
        report.warnings.append(f"entries '{a}' and '{b}' have overlapping destinations")

    for entry in manifest.entries:
        for source in entry.all_sources:
            if not isinstance(source, LocalSource):
                continue
            content = LocalResolver(source).content_path(base_dir)
            if not content.exists():
                _warn_or_raise(report.warnings, strict, f"{entry.id}: source path not found: {content}")
                continue
            try:
                found = check_content(entry.kind, content, strict=strict)
            except SourceNotFound as e:
                _warn_or_raise(report.warnings, strict, f"{entry.id}: {e}")
                continue
            for w in found:
                report.warnings.append(f"{entry.id}: {w}")

    for w in report.warnings:
        logger.debug("validate: %s", w)
    return report
