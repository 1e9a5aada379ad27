from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .engine import SyncSummary


class ProgressSink(Protocol):
    """Receives progress from the engine; display is entirely up to the sink."""

    def scan_progress(self, root_label: str, dirs_scanned: int, files_seen: int) -> None: ...

    def save_progress(
        self, segment_name: str, saved: int, total: int, current: str
    ) -> None: ...

    def root_summary(self, root_label: str, summary: SyncSummary) -> None: ...


class NullSink:
    def scan_progress(self, root_label: str, dirs_scanned: int, files_seen: int) -> None:
        return None

    def save_progress(
        self, segment_name: str, saved: int, total: int, current: str
    ) -> None:
        return None

    def root_summary(self, root_label: str, summary: SyncSummary) -> None:
        return None
