from __future__ import annotations

import logging
import time
from typing import TypeAlias
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .archive import ArchiveSegment
from .archive_set import ArchiveSet
from .compare import DiffResult
from .errors import SegmentSaveError
from .models import NodeType, OpKind

logger = logging.getLogger(__name__)

SegmentProgressCallback: TypeAlias = Callable[[str, int, int, str], None]


@dataclass(frozen=True)
class ApplyResult:
    saved_segments: list[str] = field(default_factory=list)
    failed_segments: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    segment_seconds: dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def plan_segments(
    archive_set: ArchiveSet, diff: DiffResult, source_root: Path
) -> list[ArchiveSegment]:
    """Apply `diff` to the in-memory segments and return those needing a save.

    Older segments come first in their on-disk order; the current segment is
    always last so that its growth is the final change a run makes.
    """
    touched: set[int] = set()
    for op in diff.ops:
        if op.kind == OpKind.DELETE:
            assert op.entry is not None
            op.entry.segment.remove_entry(op.entry)
            touched.add(id(op.entry.segment))
        elif op.kind == OpKind.KEEP:
            continue
        else:
            raise ValueError(f"unsupported operation kind: {op.kind}")

    current = archive_set.current
    for item in diff.insertions:
        if item.node_type == NodeType.DIR:
            current.add_directory(item.relpath)
        else:
            current.add_file(item.source_path or source_root / item.relpath, item.relpath)
    if diff.insertions:
        touched.add(id(current))

    older = [
        segment
        for segment in archive_set.segments[:-1]
        if id(segment) in touched
    ]
    return older + ([current] if id(current) in touched else [])


def apply_sync(
    archive_set: ArchiveSet,
    diff: DiffResult,
    source_root: Path,
    progress_cb: SegmentProgressCallback | None = None,
) -> ApplyResult:
    """Persist the segments touched by `diff`; untouched ones are only closed.

    A failed save is reported and the remaining segments are still attempted.
    """
    result = ApplyResult()
    try:
        for segment in plan_segments(archive_set, diff, source_root):
            started = time.perf_counter()
            name = segment.name

            def _segment_progress(saved: int, total: int, current: str) -> None:
                if progress_cb is not None:
                    progress_cb(name, saved, total, current)

            try:
                segment.save(_segment_progress)
            except SegmentSaveError as exc:
                logger.error("Saving %s failed: %s", segment.path, exc)
                result.failed_segments.append(name)
                result.errors.append(str(exc))
            else:
                result.saved_segments.append(name)
            finally:
                result.segment_seconds[name] = time.perf_counter() - started
    finally:
        archive_set.close()
    return result

