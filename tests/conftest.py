from __future__ import annotations

import os
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pytest

from zipsync.archive import ArchiveSegment
from zipsync.models import NS_PER_SECOND, ArchiveEntry, NodeType, PathEntry

T1 = 1_700_000_000
T2 = 1_700_000_100
T3 = 1_700_000_200


def mk_entry(
    relpath: str,
    *,
    node_type: NodeType = NodeType.FILE,
    size: int = 0,
    mtime_ns: int = 0,
) -> PathEntry:
    return PathEntry(relpath=relpath, node_type=node_type, size=size, mtime_ns=mtime_ns)


def mk_dir(relpath: str) -> PathEntry:
    return mk_entry(relpath, node_type=NodeType.DIR)


def mk_archive_entry(
    relpath: str,
    *,
    segment: ArchiveSegment | None = None,
    index: int = 0,
    node_type: NodeType = NodeType.FILE,
    size: int = 0,
    mtime_ns: int = 0,
    mtime_resolution_ns: int = NS_PER_SECOND,
) -> ArchiveEntry:
    return ArchiveEntry(
        segment=segment or ArchiveSegment(Path("Contents.2601.zip")),
        index=index,
        name=f"{relpath}/" if node_type == NodeType.DIR else relpath,
        relpath=relpath,
        node_type=node_type,
        size=size,
        mtime_ns=mtime_ns,
        mtime_resolution_ns=mtime_resolution_ns,
    )


def write_file(root: Path, relpath: str, content: bytes | str, mtime_s: int = T1) -> Path:
    path = root / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    os.utime(path, (mtime_s, mtime_s))
    return path


def write_tree(root: Path, files: dict[str, tuple[bytes | str, int]]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for relpath, (content, mtime_s) in files.items():
        write_file(root, relpath, content, mtime_s)
    return root


def zip_names(path: Path) -> list[str]:
    with zipfile.ZipFile(path) as zf:
        return sorted(zf.namelist())


def zip_read(path: Path, name: str) -> bytes:
    with zipfile.ZipFile(path) as zf:
        return zf.read(name)


@dataclass
class RecordingSink:
    scans: list[tuple[str, int, int]] = field(default_factory=list)
    saves: list[tuple[str, int, int, str]] = field(default_factory=list)
    summaries: list[tuple[str, object]] = field(default_factory=list)

    def scan_progress(self, root_label: str, dirs_scanned: int, files_seen: int) -> None:
        self.scans.append((root_label, dirs_scanned, files_seen))

    def save_progress(self, segment_name: str, saved: int, total: int, current: str) -> None:
        self.saves.append((segment_name, saved, total, current))

    def root_summary(self, root_label: str, summary: object) -> None:
        self.summaries.append((root_label, summary))


@pytest.fixture
def october() -> datetime:
    return datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture
def november() -> datetime:
    return datetime(2026, 11, 2, 9, 30, 0)
