from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
)
from rich.table import Table

from .archive import ArchiveSegment, part_paths
from .archive_set import discover_segments
from .config import DEFAULT_WORKERS
from .engine import RunReport, SyncSummary, run_all
from .errors import ZipSyncError

app = typer.Typer(help="One-directional sync of directory trees into zip segments")
console = Console()


class RichProgressSink:
    """Renders engine progress with rich; one task per scan and per segment save."""

    def __init__(self, progress: Progress) -> None:
        self.progress = progress
        self.lock = threading.Lock()
        self.scan_tasks: dict[str, TaskID] = {}
        self.save_tasks: dict[str, TaskID] = {}
        self.last_rendered = 0.0

    def scan_progress(self, root_label: str, dirs_scanned: int, files_seen: int) -> None:
        with self.lock:
            task_id = self.scan_tasks.get(root_label)
            if task_id is None:
                task_id = self.progress.add_task(f"Listing {root_label}", total=None)
                self.scan_tasks[root_label] = task_id
            self.progress.update(
                task_id,
                description=f"Listing {root_label}  dirs={dirs_scanned} files={files_seen}",
            )

    def save_progress(
        self, segment_name: str, saved: int, total: int, current: str
    ) -> None:
        now = time.monotonic()
        with self.lock:
            task_id = self.save_tasks.get(segment_name)
            if task_id is None:
                task_id = self.progress.add_task(segment_name, total=total)
                self.save_tasks[segment_name] = task_id
            finished = saved >= total and not current
            if not finished and (now - self.last_rendered) < 0.12:
                return
            self.last_rendered = now
            label = current or "Done"
            self.progress.update(
                task_id,
                completed=saved,
                total=total,
                description=f"{segment_name}  {label}",
            )

    def root_summary(self, root_label: str, summary: SyncSummary) -> None:
        with self.lock:
            for task_id in self.scan_tasks.values():
                self.progress.remove_task(task_id)
            self.scan_tasks.clear()
        prefix = "[dim](dry run)[/dim] " if summary.dry_run else ""
        self.progress.console.print(
            f"{prefix}[bold]{root_label}[/bold] -> {summary.destination}\n"
            f"  - Files: {summary.files_to_add} to add/update, "
            f"{summary.files_deleted} to delete\n"
            f"  - Dirs: {summary.dirs_to_add} to add, {summary.dirs_deleted} to delete\n"
            f"  - Kept: {summary.kept}\n"
            f"  - Archives: {len(summary.segments_to_update)} to update"
        )
        for error in summary.errors:
            self.progress.console.print(f"  [red]Save failed:[/red] {error}")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _print_report(report: RunReport) -> None:
    console.print()
    total_added = sum(summary.files_to_add for summary in report.summaries)
    total_deleted = sum(summary.files_deleted for summary in report.summaries)
    console.print(
        f"Source roots: {len(report.summaries)}  "
        f"files added/updated: {total_added}  files deleted: {total_deleted}"
    )
    for orphans in report.orphan_reports:
        if orphans.files_deleted or orphans.dirs_deleted:
            console.print(
                f"Orphans removed: {len(orphans.files_deleted)} file(s), "
                f"{len(orphans.dirs_deleted)} dir(s)"
            )
    for failure in report.failures:
        console.print(f"[red]Failed:[/red] {failure}")


@app.command()
def run(
    config: Path = typer.Option(
        ...,
        "--config",
        "-c",
        help="YAML config file listing RootFrom/RootTo/Add/Ignore records",
    ),
    workers: int = typer.Option(
        DEFAULT_WORKERS,
        min=1,
        help="Worker threads for scanning and classification",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Report what would change without writing any archive",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Sync every configured source root into its destination segments."""
    _configure_logging(verbose)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            report = run_all(
                config,
                sink=RichProgressSink(progress),
                workers=workers,
                dry_run=dry_run,
            )
    except ZipSyncError as exc:
        console.print(f"[red]Cannot run:[/red] {exc}")
        raise typer.Exit(1)

    _print_report(report)
    if not report.ok:
        raise typer.Exit(1)


@app.command()
def status(
    destination: Path = typer.Argument(..., help="Destination directory of one source root"),
) -> None:
    """List the segments of a destination directory."""
    _configure_logging(False)
    paths = discover_segments(destination.expanduser().resolve())
    if not paths:
        console.print(f"No segments in {destination}")
        raise typer.Exit(0)

    table = Table("Segment", "Files", "Dirs", "Bytes (uncompressed)", "Bytes on disk")
    failed = False
    for path in paths:
        try:
            with ArchiveSegment.open(path) as segment:
                entries = segment.entries
        except ZipSyncError as exc:
            console.print(f"[red]Unreadable:[/red] {exc}")
            failed = True
            continue
        files = [entry for entry in entries if not entry.is_dir]
        table.add_row(
            path.name,
            str(len(files)),
            str(len(entries) - len(files)),
            str(sum(entry.size for entry in files)),
            str(sum(part.stat().st_size for part in [*part_paths(path), path])),
        )
    console.print(table)
    if failed:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
