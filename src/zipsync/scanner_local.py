from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
import time
from typing import TypeAlias
from collections.abc import Callable, Collection, Mapping
from pathlib import Path

from .errors import ScanError
from .models import NodeType, PathEntry
from .text_utils import normalize_relpath, parent_relpaths

logger = logging.getLogger(__name__)

MAX_DEPTH = 256

ScanProgressCallback: TypeAlias = Callable[[str, int, int], None]


def _norm_key(path: Path | str) -> str:
    return os.path.normcase(os.path.normpath(os.fspath(path)))


def with_parent_dirs(records: Mapping[str, PathEntry]) -> dict[str, PathEntry]:
    """Return `records` plus a directory entry for every ancestor of a stored path."""
    merged = dict(records)
    for relpath in list(records):
        for parent in parent_relpaths(relpath):
            if parent not in merged:
                merged[parent] = PathEntry(relpath=parent, node_type=NodeType.DIR)
    return merged


class _ScanCounters:
    def __init__(self, progress_cb: ScanProgressCallback | None) -> None:
        self.progress_cb = progress_cb
        self.lock = threading.Lock()
        self.dirs_scanned = 0
        self.files_seen = 0
        self.last_progress = 0.0

    def visited(self, rel_dir: str, files: int) -> None:
        with self.lock:
            self.dirs_scanned += 1
            self.files_seen += files
            if self.progress_cb is None:
                return
            now = time.monotonic()
            if (now - self.last_progress) < 0.2:
                return
            self.last_progress = now
            dirs_scanned, files_seen = self.dirs_scanned, self.files_seen
        self.progress_cb(rel_dir, dirs_scanned, files_seen)


class SourceScanner:
    """Enumerate a source root into a relpath -> PathEntry mapping.

    Every subdirectory of the root is walked by its own worker; walks only read
    metadata and return private dicts that are merged once all of them finish.
    Any OSError aborts the scan: an incomplete state would look like deletions.
    """

    def __init__(
        self,
        root: Path,
        excluded: Collection[Path] = (),
        *,
        workers: int = 1,
    ) -> None:
        self.root = root.expanduser().absolute()
        self.excluded = frozenset(_norm_key(path) for path in excluded)
        self.workers = max(1, workers)

    def scan(
        self, progress_cb: ScanProgressCallback | None = None
    ) -> dict[str, PathEntry]:
        if not self.root.is_dir():
            raise ScanError(f"Source root not found: {self.root}")

        counters = _ScanCounters(progress_cb)
        records: dict[str, PathEntry] = {}
        subdirs = self._scan_dir(self.root, "", records, counters)

        if self.workers == 1 or len(subdirs) <= 1:
            for path, rel, depth in subdirs:
                records.update(self._walk(path, rel, depth, counters))
        else:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=self.workers, thread_name_prefix="zipsync-scan"
            ) as pool:
                futures = [
                    pool.submit(self._walk, path, rel, depth, counters)
                    for path, rel, depth in subdirs
                ]
                concurrent.futures.wait(futures)
            for future in futures:
                # Raises the first failure in submission order.
                records.update(future.result())

        if progress_cb is not None:
            progress_cb("", counters.dirs_scanned, counters.files_seen)
        return with_parent_dirs(records)

    def _walk(
        self, start: Path, start_rel: str, start_depth: int, counters: _ScanCounters
    ) -> dict[str, PathEntry]:
        records: dict[str, PathEntry] = {}
        stack = [(start, start_rel, start_depth)]
        while stack:
            path, rel, depth = stack.pop()
            stack.extend(reversed(self._scan_dir(path, rel, records, counters, depth)))
        return records

    def _scan_dir(
        self,
        path: Path,
        rel: str,
        records: dict[str, PathEntry],
        counters: _ScanCounters,
        depth: int = 0,
    ) -> list[tuple[Path, str, int]]:
        if depth > MAX_DEPTH:
            raise ScanError(
                f"Directory nesting deeper than {MAX_DEPTH} levels at {path} "
                "(symlink loop?)"
            )
        if rel:
            records[rel] = PathEntry(relpath=rel, node_type=NodeType.DIR)

        subdirs: list[tuple[Path, str, int]] = []
        files = 0
        try:
            with os.scandir(path) as it:
                dir_entries = sorted(it, key=lambda item: item.name)
            for dir_entry in dir_entries:
                child = Path(dir_entry.path)
                child_rel = normalize_relpath(f"{rel}/{dir_entry.name}")
                if dir_entry.is_dir():
                    if _norm_key(child) in self.excluded:
                        logger.debug("Skipping excluded directory %s", child)
                        continue
                    subdirs.append((child, child_rel, depth + 1))
                    continue
                if not dir_entry.is_file():
                    if dir_entry.is_symlink():
                        logger.debug("Skipping dangling symlink %s", child)
                    continue
                st = dir_entry.stat()
                records[child_rel] = PathEntry(
                    relpath=child_rel,
                    node_type=NodeType.FILE,
                    size=st.st_size,
                    mtime_ns=st.st_mtime_ns,
                    source_path=child,
                )
                files += 1
        except OSError as exc:
            raise ScanError(f"Cannot scan {exc.filename or path}: {exc.strerror or exc}") from exc

        counters.visited(rel, files)
        return subdirs
