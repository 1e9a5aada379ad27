from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from .archive_set import ArchiveSet, load_archive_set
from .compare import diff_archive
from .config import (
    DEFAULT_WORKERS,
    BackupConfig,
    ResolvedConfig,
    load_raw_configs,
    parse_config_item,
    resolve_config,
)
from .errors import ConfigError, ZipSyncError
from .models import PathEntry
from .orphans import OrphanReport, cleanup_orphans
from .paths import is_within
from .planner_apply import apply_sync
from .progress import NullSink, ProgressSink
from .scanner_local import SourceScanner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncSummary:
    source_root: Path
    destination: Path
    files_to_add: int = 0
    dirs_to_add: int = 0
    files_deleted: int = 0
    dirs_deleted: int = 0
    kept: int = 0
    segments_to_update: tuple[str, ...] = ()
    saved_segments: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    scan_seconds: float = 0.0
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class RunReport:
    summaries: list[SyncSummary] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    orphan_reports: list[OrphanReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and all(summary.ok for summary in self.summaries)


def _scan_and_load(
    source_root: Path,
    excluded: frozenset[Path],
    destination: Path,
    moment: datetime,
    config: ResolvedConfig,
    sink: ProgressSink,
    workers: int,
) -> tuple[dict[str, PathEntry], ArchiveSet, float]:
    label = source_root.name or str(source_root)

    def run_scan() -> tuple[dict[str, PathEntry], float]:
        started = time.perf_counter()
        records = SourceScanner(source_root, excluded, workers=workers).scan(
            progress_cb=lambda _rel, dirs, files: sink.scan_progress(label, dirs, files)
        )
        return records, time.perf_counter() - started

    def run_load() -> ArchiveSet:
        return load_archive_set(
            destination,
            moment,
            compression_level=config.compression_level,
            max_part_bytes=config.split_size,
        )

    with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
        future_scan = pool.submit(run_scan)
        future_load = pool.submit(run_load)
        concurrent.futures.wait([future_scan, future_load])

    try:
        records, scan_seconds = future_scan.result()
    except Exception:
        if future_load.exception() is None:
            future_load.result().close()
        raise
    return records, future_load.result(), scan_seconds


def sync_source_root(
    config: ResolvedConfig,
    source_root: Path,
    *,
    moment: datetime | None = None,
    sink: ProgressSink | None = None,
    workers: int = DEFAULT_WORKERS,
    dry_run: bool = False,
) -> SyncSummary:
    """Bring the segments for one source root in line with the tree on disk."""
    sink = sink or NullSink()
    moment = moment or datetime.now()
    destination = config.destination_for(source_root)
    excluded = set(config.excluded_under(source_root))
    if is_within(config.root_to, source_root):
        excluded.add(config.root_to)

    logger.info("Listing files in %s ...", source_root)
    records, archive_set, scan_seconds = _scan_and_load(
        source_root,
        frozenset(excluded),
        destination,
        moment,
        config,
        sink,
        workers,
    )

    try:
        diff = diff_archive(records, archive_set.entries, workers=workers)
    except Exception:
        archive_set.close()
        raise

    touched = {
        op.entry.segment.name for op in diff.deletes if op.entry is not None
    }
    if diff.insertions:
        touched.add(archive_set.current.name)
    segments_to_update = tuple(
        segment.name for segment in archive_set.segments if segment.name in touched
    )

    summary = SyncSummary(
        source_root=source_root,
        destination=destination,
        files_to_add=diff.files_to_add,
        dirs_to_add=diff.dirs_to_add,
        files_deleted=diff.files_deleted,
        dirs_deleted=diff.dirs_deleted,
        kept=diff.kept,
        segments_to_update=segments_to_update,
        scan_seconds=scan_seconds,
        dry_run=dry_run,
    )

    if dry_run:
        archive_set.close()
    else:
        result = apply_sync(
            archive_set, diff, source_root, progress_cb=sink.save_progress
        )
        summary = replace(
            summary,
            saved_segments=tuple(result.saved_segments),
            errors=tuple(result.errors),
        )

    sink.root_summary(source_root.name or str(source_root), summary)
    return summary


def run_config(
    config: ResolvedConfig,
    *,
    moment: datetime | None = None,
    sink: ProgressSink | None = None,
    workers: int = DEFAULT_WORKERS,
    dry_run: bool = False,
    report: RunReport | None = None,
    cleanup: bool = True,
) -> RunReport:
    """Sync every source root of one configuration, then clean up orphans."""
    report = report or RunReport()
    moment = moment or datetime.now()
    if not config.add:
        logger.warning("No source roots configured under %s", config.root_from)

    for source_root in config.add:
        try:
            summary = sync_source_root(
                config,
                source_root,
                moment=moment,
                sink=sink,
                workers=workers,
                dry_run=dry_run,
            )
        except ZipSyncError as exc:
            logger.error("Sync of %s failed: %s", source_root, exc)
            report.failures.append(f"{source_root}: {exc}")
            continue
        report.summaries.append(summary)

    if cleanup and not dry_run:
        report.orphan_reports.append(
            cleanup_orphans(config.root_to, config.configured_relpaths())
        )
    return report


def run_all(
    config_path: Path,
    *,
    moment: datetime | None = None,
    sink: ProgressSink | None = None,
    workers: int = DEFAULT_WORKERS,
    dry_run: bool = False,
) -> RunReport:
    """Run every record of a YAML config file; a bad record skips to the next."""
    report = RunReport()
    moment = moment or datetime.now()
    destinations: dict[Path, set[str]] = {}
    config_failed = False
    for index, raw in enumerate(load_raw_configs(config_path)):
        try:
            config: BackupConfig = parse_config_item(raw)
            resolved = resolve_config(config, config_path)
        except ConfigError as exc:
            logger.error("Config entry #%d in %s: %s", index + 1, config_path, exc)
            report.failures.append(f"config #{index + 1}: {exc}")
            config_failed = True
            continue
        logger.info(
            "Config #%d: %s -> %s (split=%d, level=%d)",
            index + 1,
            resolved.root_from,
            resolved.root_to,
            resolved.split_size,
            resolved.compression_level,
        )
        destinations.setdefault(resolved.root_to, set()).update(
            resolved.configured_relpaths()
        )
        run_config(
            resolved,
            moment=moment,
            sink=sink,
            workers=workers,
            dry_run=dry_run,
            report=report,
            cleanup=False,
        )

    if dry_run:
        return report
    if config_failed:
        # An unresolved record may own directories in a shared destination.
        logger.warning("Skipping orphan cleanup: some config entries were not loaded")
        return report
    for root_to, configured in destinations.items():
        report.orphan_reports.append(cleanup_orphans(root_to, configured))
    return report
