from __future__ import annotations

from datetime import datetime

from typer.testing import CliRunner

from zipsync.archive import ArchiveSegment
from zipsync.archive_set import segment_name_for
from zipsync.cli import app

from conftest import T1, write_file, write_tree, zip_names

runner = CliRunner()


def _config(tmp_path):
    write_tree(tmp_path / "data" / "docs", {"a.txt": ("a", T1), "b/c.txt": ("c", T1)})
    path = tmp_path / "sync.yaml"
    path.write_text(
        "- RootFrom: data\n  RootTo: backup\n  Add: [docs]\n", encoding="utf-8"
    )
    return path


def test_run_syncs_and_prints_summary(tmp_path) -> None:
    config_path = _config(tmp_path)

    result = runner.invoke(app, ["run", "--config", str(config_path), "--workers", "2"])

    assert result.exit_code == 0, result.output
    assert "Files: 2 to add/update, 0 to delete" in result.output
    assert "Archives: 1 to update" in result.output
    segments = list((tmp_path / "backup" / "docs").glob("Contents.*.zip"))
    assert len(segments) == 1
    assert zip_names(segments[0]) == ["a.txt", "b/", "b/c.txt"]


def test_run_dry_run_writes_nothing(tmp_path) -> None:
    config_path = _config(tmp_path)

    result = runner.invoke(app, ["run", "-c", str(config_path), "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "dry run" in result.output
    assert list((tmp_path / "backup" / "docs").glob("*.zip")) == []


def test_run_with_broken_config_exits_nonzero(tmp_path) -> None:
    path = tmp_path / "sync.yaml"
    path.write_text("- RootFrom: [oops\n", encoding="utf-8")

    result = runner.invoke(app, ["run", "-c", str(path)])

    assert result.exit_code == 1
    assert "Cannot run" in result.output


def test_run_with_failed_record_exits_nonzero(tmp_path) -> None:
    path = tmp_path / "sync.yaml"
    path.write_text("- RootFrom: missing\n  RootTo: backup\n", encoding="utf-8")

    result = runner.invoke(app, ["run", "-c", str(path)])

    assert result.exit_code == 1
    assert "Failed" in result.output


def test_status_lists_segments(tmp_path) -> None:
    dest = tmp_path / "dest"
    name = segment_name_for(datetime(2026, 10, 1))
    segment = ArchiveSegment(dest / name)
    segment.add_directory("b")
    segment.add_file(write_file(tmp_path / "src", "b/c.txt", "hello", T1), "b/c.txt")
    segment.save()

    result = runner.invoke(app, ["status", str(dest)])

    assert result.exit_code == 0, result.output
    assert name in result.output


def test_status_without_segments(tmp_path) -> None:
    result = runner.invoke(app, ["status", str(tmp_path)])

    assert result.exit_code == 0
    assert "No segments" in result.output
