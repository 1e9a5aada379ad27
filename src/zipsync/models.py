from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .archive import ArchiveSegment

NS_PER_SECOND = 1_000_000_000
# Range of the unsigned 32-bit mtime in the extended timestamp extra field.
MAX_STORED_MTIME_S = 0xFFFFFFFF


def clamp_mtime_s(mtime_s: int) -> int:
    return min(max(mtime_s, 0), MAX_STORED_MTIME_S)


class NodeType(str, Enum):
    FILE = "file"
    DIR = "dir"


class OpKind(str, Enum):
    DELETE = "delete"
    KEEP = "keep"


class DeleteReason(str, Enum):
    MISSING = "missing"
    CHANGED = "changed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class PathEntry:
    relpath: str
    node_type: NodeType
    size: int = 0
    mtime_ns: int = 0
    # Name as found on disk; `relpath` may differ after normalization.
    source_path: Path | None = field(default=None, compare=False, repr=False)

    @property
    def is_dir(self) -> bool:
        return self.node_type == NodeType.DIR


@dataclass(frozen=True)
class ArchiveEntry:
    """One entry of an existing segment, as listed by its central directory."""

    segment: ArchiveSegment = field(repr=False, compare=False)
    index: int
    name: str
    relpath: str
    node_type: NodeType
    size: int
    mtime_ns: int
    mtime_resolution_ns: int = NS_PER_SECOND

    @property
    def is_dir(self) -> bool:
        return self.node_type == NodeType.DIR


@dataclass(frozen=True)
class SyncOp:
    kind: OpKind
    relpath: str
    entry: ArchiveEntry | None = None
    reason: DeleteReason | None = None

    @classmethod
    def delete(cls, entry: ArchiveEntry, reason: DeleteReason) -> SyncOp:
        return cls(OpKind.DELETE, entry.relpath, entry, reason)

    @classmethod
    def keep(cls, entry: ArchiveEntry) -> SyncOp:
        return cls(OpKind.KEEP, entry.relpath, entry)
