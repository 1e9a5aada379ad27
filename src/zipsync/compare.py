from __future__ import annotations

import concurrent.futures
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .models import (
    NS_PER_SECOND,
    ArchiveEntry,
    DeleteReason,
    NodeType,
    OpKind,
    PathEntry,
    SyncOp,
    clamp_mtime_s,
)

PARALLEL_THRESHOLD = 2048


def _same_mtime(source_mtime_ns: int, entry: ArchiveEntry) -> bool:
    # Archive timestamps are whole seconds (or 2s for DOS-only entries) within
    # the stored range, so the source side is clamped and truncated the same way.
    resolution_s = max(entry.mtime_resolution_ns // NS_PER_SECOND, 1)
    source_s = clamp_mtime_s(source_mtime_ns // NS_PER_SECOND)
    return source_s // resolution_s == (entry.mtime_ns // NS_PER_SECOND) // resolution_s


def classify_entry(entry: ArchiveEntry, source: Mapping[str, PathEntry]) -> SyncOp:
    current = source.get(entry.relpath)
    if current is None:
        return SyncOp.delete(entry, DeleteReason.MISSING)
    if current.node_type != entry.node_type:
        return SyncOp.delete(entry, DeleteReason.CHANGED)
    if entry.node_type == NodeType.FILE and (
        current.size != entry.size or not _same_mtime(current.mtime_ns, entry)
    ):
        return SyncOp.delete(entry, DeleteReason.CHANGED)
    return SyncOp.keep(entry)


def _classify_chunk(
    entries: Sequence[ArchiveEntry], source: Mapping[str, PathEntry]
) -> list[SyncOp]:
    return [classify_entry(entry, source) for entry in entries]


@dataclass(frozen=True)
class DiffResult:
    ops: list[SyncOp]
    insertions: list[PathEntry]

    def _count(self, kind: OpKind, node_type: NodeType) -> int:
        return sum(
            1
            for op in self.ops
            if op.kind == kind
            and op.entry is not None
            and op.entry.node_type == node_type
        )

    @property
    def deletes(self) -> list[SyncOp]:
        return [op for op in self.ops if op.kind == OpKind.DELETE]

    @property
    def files_deleted(self) -> int:
        return self._count(OpKind.DELETE, NodeType.FILE)

    @property
    def dirs_deleted(self) -> int:
        return self._count(OpKind.DELETE, NodeType.DIR)

    @property
    def kept(self) -> int:
        return sum(1 for op in self.ops if op.kind == OpKind.KEEP)

    @property
    def files_to_add(self) -> int:
        return sum(1 for item in self.insertions if item.node_type == NodeType.FILE)

    @property
    def dirs_to_add(self) -> int:
        return sum(1 for item in self.insertions if item.node_type == NodeType.DIR)

    @property
    def is_noop(self) -> bool:
        return not self.insertions and not self.deletes


def diff_archive(
    source: Mapping[str, PathEntry],
    entries: Sequence[ArchiveEntry],
    *,
    workers: int = 1,
    chunk_size: int = 1024,
) -> DiffResult:
    """Classify every archive entry against the source state.

    Classification only reads `source`; consuming kept paths from the worklist
    happens afterwards in a single pass. A path kept twice (duplicate entries
    across or inside segments) keeps its first occurrence and deletes the rest.
    """
    if workers > 1 and len(entries) >= PARALLEL_THRESHOLD:
        chunks = [
            entries[start : start + chunk_size]
            for start in range(0, len(entries), chunk_size)
        ]
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="zipsync-diff"
        ) as pool:
            classified = [
                op
                for chunk_ops in pool.map(lambda chunk: _classify_chunk(chunk, source), chunks)
                for op in chunk_ops
            ]
    else:
        classified = _classify_chunk(entries, source)

    remaining = dict(source)
    ops: list[SyncOp] = []
    for op in classified:
        if op.kind == OpKind.KEEP:
            if op.relpath in remaining:
                del remaining[op.relpath]
                ops.append(op)
            else:
                assert op.entry is not None
                ops.append(SyncOp.delete(op.entry, DeleteReason.DUPLICATE))
        elif op.kind == OpKind.DELETE:
            ops.append(op)
        else:
            raise ValueError(f"unsupported operation kind: {op.kind}")

    insertions = [remaining[relpath] for relpath in sorted(remaining)]
    return DiffResult(ops=ops, insertions=insertions)
