from __future__ import annotations

import logging
import os
from collections.abc import Collection
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .text_utils import normalize_relpath, parent_relpaths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrphanReport:
    files_deleted: list[str] = field(default_factory=list)
    dirs_deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _child_relpath(relpath: str, name: str) -> str:
    return str(PurePosixPath(relpath) / name) if relpath else name


def _list_dir(path: Path) -> list[os.DirEntry]:
    with os.scandir(path) as it:
        return sorted(it, key=lambda item: item.name)


def _delete_files(entries: list[os.DirEntry], relpath: str, report: OrphanReport) -> None:
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            os.unlink(entry.path)
            report.files_deleted.append(_child_relpath(relpath, entry.name))


def _clean_orphan(path: Path, relpath: str, report: OrphanReport) -> None:
    entries = _list_dir(path)
    _delete_files(entries, relpath, report)
    remaining = 0
    for entry in entries:
        if not entry.is_dir(follow_symlinks=False):
            continue
        # Empty leaves go; anything populated below is left alone.
        if _list_dir(Path(entry.path)):
            remaining += 1
            continue
        os.rmdir(entry.path)
        report.dirs_deleted.append(_child_relpath(relpath, entry.name))
    if remaining == 0:
        path.rmdir()
        report.dirs_deleted.append(relpath)


def cleanup_orphans(destination_root: Path, configured: Collection[str]) -> OrphanReport:
    """Empty destination directories that no configured source root maps to.

    Configured directories and their ancestors are descended into. Any other
    directory met there is an orphan: its files and empty subdirectories are
    removed, and then the directory itself when nothing is left. Populated
    subdirectories of an orphan are kept. Files directly inside an ancestor of a
    configured directory are removed too; the destination root and the
    configured directories keep theirs. Failures are logged per directory and
    cleanup moves on.
    """
    protected = {normalize_relpath(relpath) for relpath in configured}
    protected.add("")
    ancestors = {parent for relpath in protected for parent in parent_relpaths(relpath)}
    report = OrphanReport()
    if not destination_root.is_dir():
        return report

    stack = [(destination_root, "")]
    while stack:
        path, relpath = stack.pop()
        try:
            entries = _list_dir(path)
            if relpath not in protected:
                _delete_files(entries, relpath, report)
        except OSError as exc:
            logger.warning("Orphan cleanup skipped %s: %s", path, exc)
            report.errors.append(f"{relpath}: {exc}")
            continue

        for entry in reversed(entries):
            if not entry.is_dir(follow_symlinks=False):
                continue
            child = Path(entry.path)
            child_rel = _child_relpath(relpath, entry.name)
            if child_rel in protected or child_rel in ancestors:
                stack.append((child, child_rel))
                continue
            try:
                _clean_orphan(child, child_rel, report)
            except OSError as exc:
                logger.warning("Orphan cleanup skipped %s: %s", child, exc)
                report.errors.append(f"{child_rel}: {exc}")
    return report
