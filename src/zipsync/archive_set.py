from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .archive import ArchiveSegment
from .config import (
    SEGMENT_GLOB,
    SEGMENT_PREFIX,
    SEGMENT_SUFFIX,
    SEGMENT_TIME_FORMAT,
)
from .errors import ArchiveReadError
from .models import ArchiveEntry

logger = logging.getLogger(__name__)


def segment_name_for(moment: datetime) -> str:
    """Name of the segment receiving insertions for runs started at `moment`."""
    return f"{SEGMENT_PREFIX}.{moment.strftime(SEGMENT_TIME_FORMAT)}{SEGMENT_SUFFIX}"


def discover_segments(destination: Path) -> list[Path]:
    if not destination.is_dir():
        return []
    return sorted(
        path
        for path in destination.iterdir()
        if path.is_file() and fnmatch.fnmatchcase(path.name, SEGMENT_GLOB)
    )


@dataclass
class ArchiveSet:
    destination: Path
    segments: list[ArchiveSegment]

    @property
    def current(self) -> ArchiveSegment:
        return self.segments[-1]

    @property
    def entries(self) -> list[ArchiveEntry]:
        return [entry for segment in self.segments for entry in segment.entries]

    def close(self) -> None:
        for segment in self.segments:
            segment.close()

    def __enter__(self) -> ArchiveSet:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()


def load_archive_set(
    destination: Path,
    moment: datetime,
    *,
    compression_level: int = 6,
    max_part_bytes: int = 0,
) -> ArchiveSet:
    """Open every segment of `destination`, the current one last.

    The current segment is opened in memory when it does not exist yet; nothing
    is written to disk here.
    """
    current_path = destination / segment_name_for(moment)
    paths = [path for path in discover_segments(destination) if path != current_path]
    paths.append(current_path)

    segments: list[ArchiveSegment] = []
    try:
        for path in paths:
            segments.append(
                ArchiveSegment.open(
                    path,
                    compression_level=compression_level,
                    max_part_bytes=max_part_bytes,
                )
            )
    except ArchiveReadError:
        for segment in segments:
            segment.close()
        raise

    logger.debug(
        "Loaded %d segment(s) from %s, current=%s",
        len(segments),
        destination,
        current_path.name,
    )
    return ArchiveSet(destination=destination, segments=segments)
