from __future__ import annotations


class ZipSyncError(Exception):
    """Base class for failures that abort a unit of work but not the whole run."""


class ConfigError(ZipSyncError):
    """A configuration record cannot be loaded or resolved."""


class ScanError(ZipSyncError):
    """The source tree could not be enumerated completely."""


class ArchiveReadError(ZipSyncError):
    """An existing segment is unreadable, so its true contents are unknown."""


class SegmentSaveError(ZipSyncError):
    """Writing a segment failed; the previously saved segment is still in place."""

    def __init__(self, segment_name: str, message: str) -> None:
        super().__init__(f"{segment_name}: {message}")
        self.segment_name = segment_name
