from __future__ import annotations

import fnmatch
import os
from pathlib import Path

from .errors import ConfigError


def _has_magic(part: str) -> bool:
    return any(char in part for char in "*?[")


def _list_dir_names(parent: Path) -> list[str]:
    try:
        return sorted(os.listdir(parent))
    except OSError:
        return []


def _match_children(parent: Path, part: str) -> list[Path]:
    if part == "..":
        return [parent.parent]
    names = _list_dir_names(parent)
    if _has_magic(part):
        show_hidden = part.startswith(".")
        return [
            parent / name
            for name in names
            if (show_hidden or not name.startswith("."))
            and fnmatch.fnmatch(name, part)
            and (parent / name).is_dir()
        ]

    # Literal component: return it with its on-disk casing.
    if part in names:
        return [parent / part] if (parent / part).is_dir() else []
    if not (parent / part).is_dir():
        return []
    folded = part.casefold()
    for name in names:
        if name.casefold() == folded:
            return [parent / name]
    return [parent / part]


def _absolute_pattern(pattern: str, base: Path | None) -> Path:
    path = Path(os.path.expanduser(pattern))
    if not path.is_absolute():
        path = (base if base is not None else Path.cwd()) / path
    return path


def resolve_dirs(pattern: str, base: Path | None = None) -> list[Path]:
    """Expand a directory pattern against the filesystem.

    Each path component may hold shell wildcards. Matches keep the casing found
    on disk, so the result can be compared with what the scanner reports.
    """
    path = _absolute_pattern(pattern, base)
    anchor = path.anchor
    candidates = [Path(anchor.upper() if os.name == "nt" else anchor)]
    for part in path.parts[1:]:
        if part == ".":
            continue
        matched: list[Path] = []
        for parent in candidates:
            matched.extend(_match_children(parent, part))
        candidates = matched
        if not candidates:
            break
    unique: dict[str, Path] = {}
    for candidate in candidates:
        unique.setdefault(os.path.normpath(candidate), Path(os.path.normpath(candidate)))
    return list(unique.values())


def resolve_dir(pattern: str, base: Path | None = None) -> Path:
    matches = resolve_dirs(pattern, base)
    if not matches:
        raise ConfigError(f"Directory not found: {_absolute_pattern(pattern, base)}")
    return matches[0]


def resolve_or_create_dir(
    pattern: str, base: Path | None = None, *, create: bool = False
) -> Path:
    path = _absolute_pattern(pattern, base)
    if create and not _has_magic(str(path)) and not path.exists():
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"Cannot create directory {path}: {exc}") from exc
    return resolve_dir(str(path))


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True
