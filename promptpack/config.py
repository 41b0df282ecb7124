from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from . import paths
from .errors import ConfigParseError, ConfigValidationError
from .models import AssetKind, Entry, LocalSource, Manifest, RemoteSource, Source


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover (dev envs < 3.11)
    import tomli as _tomllib  # type: ignore


_ENTRY_KEYS = {"id", "kind", "source", "sources", "dest", "include"}
_FILESYSTEM_KEYS = {"type", "root", "path", "symlink"}
_GIT_KEYS = {"type", "repo", "url", "ref", "shallow", "path"}


def find_manifest(start: Path) -> Path | None:
    """Walk upward from `start` and return the nearest manifest file.

    The search stops after the first directory containing `.git`.
    """

    cur = start.resolve()
    for p in (cur, *cur.parents):
        for name in paths.MANIFEST_NAMES:
            candidate = p / name
            if candidate.is_file():
                return candidate
        if (p / ".git").exists():
            return None
    return None


def _load_toml(path: Path, text: str) -> Any:
    try:
        return _tomllib.loads(text)
    except _tomllib.TOMLDecodeError as e:
        msg = getattr(e, "msg", str(e))
        lineno = getattr(e, "lineno", None)
        colno = getattr(e, "colno", None)
        raise ConfigParseError(path=path, message=str(msg), lineno=lineno, colno=colno) from e


def _load_yaml(path: Path, text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        lineno = mark.line + 1 if mark is not None else None
        colno = mark.column + 1 if mark is not None else None
        problem = getattr(e, "problem", None) or str(e)
        raise ConfigParseError(path=path, message=str(problem), lineno=lineno, colno=colno) from e


def _load_document(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(path=path, message="file not found") from e
    except OSError as e:
        raise ConfigValidationError(path=path, message=f"unable to read file: {e}") from e

    if path.suffix == ".toml":
        data = _load_toml(path, text)
    else:
        data = _load_yaml(path, text)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValidationError(path=path, message="top-level document must be a mapping")
    return data


def _unknown_keys_message(where: str, unknown: set[str]) -> str:
    keys = ", ".join(sorted(unknown))
    return f"{where}: unknown keys: {keys}"


def _require_table(path: Path, value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigValidationError(path=path, message=f"{where}: expected table")
    return value


def _require_str(path: Path, value: Any, where: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigValidationError(path=path, message=f"{where}: expected string")
    return value


def _optional_str(path: Path, value: Any, where: str) -> str | None:
    if value is None:
        return None
    return _require_str(path, value, where)


def _optional_bool(path: Path, value: Any, where: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigValidationError(path=path, message=f"{where}: expected bool")
    return value


def _require_str_list(path: Path, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(path=path, message=f"{where}: expected list of strings")
    return value


def _check_keys(path: Path, data: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ConfigValidationError(path=path, message=_unknown_keys_message(where, unknown))


def _parse_source(path: Path, raw: Any, where: str) -> Source:
    t = _require_table(path, raw, where)
    kind = _require_str(path, t.get("type"), f"{where}.type")

    if kind == "filesystem":
        _check_keys(path, t, _FILESYSTEM_KEYS, where)
        return LocalSource(
            root=_require_str(path, t.get("root"), f"{where}.root"),
            path=_optional_str(path, t.get("path"), f"{where}.path") or ".",
            symlink=_optional_bool(path, t.get("symlink"), f"{where}.symlink", True),
        )

    if kind == "git":
        _check_keys(path, t, _GIT_KEYS, where)
        if "repo" in t and "url" in t:
            raise ConfigValidationError(path=path, message=f"{where}: use either 'repo' or 'url', not both")
        repo = _require_str(path, t.get("repo", t.get("url")), f"{where}.repo")
        return RemoteSource(
            repo=repo,
            ref=_optional_str(path, t.get("ref"), f"{where}.ref") or "auto",
            path=_optional_str(path, t.get("path"), f"{where}.path") or ".",
            shallow=_optional_bool(path, t.get("shallow"), f"{where}.shallow", True),
        )

    raise ConfigValidationError(path=path, message=f"{where}.type: expected 'filesystem' or 'git'")


def _parse_entry(path: Path, raw: Any, where: str) -> Entry:
    t = _require_table(path, raw, where)
    _check_keys(path, t, _ENTRY_KEYS, where)

    entry_id = _require_str(path, t.get("id"), f"{where}.id")
    kind_raw = _require_str(path, t.get("kind"), f"{where}.kind")
    try:
        kind = AssetKind(kind_raw)
    except ValueError as e:
        allowed = ", ".join(k.value for k in AssetKind)
        raise ConfigValidationError(path=path, message=f"{where}.kind: expected one of {allowed}") from e

    source: Source | None = None
    sources: tuple[Source, ...] = ()
    if kind is AssetKind.COMPOSITE_AGENTS_MD:
        if "source" in t:
            raise ConfigValidationError(path=path, message=f"{where}: composite entries use 'sources'")
        raw_sources = t.get("sources")
        if not isinstance(raw_sources, list) or not raw_sources:
            raise ConfigValidationError(path=path, message=f"{where}.sources: expected non-empty list")
        sources = tuple(_parse_source(path, s, f"{where}.sources[{i}]") for i, s in enumerate(raw_sources))
    else:
        if "sources" in t:
            raise ConfigValidationError(path=path, message=f"{where}.sources: only valid for composite entries")
        source = _parse_source(path, t.get("source"), f"{where}.source")

    include: tuple[str, ...] = ()
    if t.get("include") is not None:
        if kind.is_single_file:
            raise ConfigValidationError(path=path, message=f"{where}.include: not valid for single-file kinds")
        include = tuple(_require_str_list(path, t.get("include"), f"{where}.include"))

    return Entry(
        id=entry_id,
        kind=kind,
        source=source,
        sources=sources,
        dest=_optional_str(path, t.get("dest"), f"{where}.dest"),
        include=include,
    )


def parse_manifest(path: Path, data: dict[str, Any]) -> Manifest:
    _check_keys(path, data, {"entries"}, "top-level")
    raw_entries = data.get("entries")
    if raw_entries is None:
        raw_entries = []
    if not isinstance(raw_entries, list):
        raise ConfigValidationError(path=path, message="entries: expected list")

    entries: list[Entry] = []
    seen: set[str] = set()
    reserved = paths.state_dir(path.parent)
    for i, raw in enumerate(raw_entries):
        entry = _parse_entry(path, raw, f"entries[{i}]")
        if entry.id in seen:
            raise ConfigValidationError(path=path, message=f"entries[{i}].id: duplicate id '{entry.id}'")
        seen.add(entry.id)

        dest = paths.resolve_under(path.parent, entry.dest_spec)
        if dest == reserved or reserved in dest.parents or dest in reserved.parents:
            raise ConfigValidationError(
                path=path,
                message=f"entries[{i}].dest: overlaps reserved directory {paths.STATE_DIR_NAME}/",
            )
        entries.append(entry)

    return Manifest(entries=tuple(entries))


def load_manifest(path: Path) -> Manifest:
    """Load + validate a manifest (YAML or TOML, chosen by suffix)."""

    data = _load_document(path)
    return parse_manifest(path, data)


def overlapping_destinations(manifest: Manifest, base_dir: Path) -> list[tuple[str, str]]:
    """Pairs of entry ids whose destinations are equal or nested."""

    resolved = [(e.id, paths.resolve_under(base_dir, e.dest_spec)) for e in manifest.entries]
    out: list[tuple[str, str]] = []
    for i, (a_id, a) in enumerate(resolved):
        for b_id, b in resolved[i + 1 :]:
            if paths.paths_overlap(a, b):
                out.append((a_id, b_id))
    return out


DEFAULT_MANIFEST_YAML = """\
# promptpack manifest
entries:
  - id: agents
    kind: agents_md
    source:
      type: filesystem
      root: $HOME/prompts
      path: AGENTS.md
      symlink: true
    dest: AGENTS.md
"""

DEFAULT_MANIFEST_TOML = """\
# promptpack manifest

[[entries]]
id = "agents"
kind = "agents_md"
dest = "AGENTS.md"

[entries.source]
type = "filesystem"
root = "$HOME/prompts"
path = "AGENTS.md"
symlink = true
"""
