from __future__ import annotations

from datetime import datetime

import pytest

from zipsync.archive import ArchiveSegment
from zipsync.archive_set import discover_segments, load_archive_set, segment_name_for
from zipsync.errors import ArchiveReadError

from conftest import T1, write_file


def _make_segment(dest, name, relpath, tmp_path) -> None:
    src = write_file(tmp_path / "src", relpath, relpath, T1)
    segment = ArchiveSegment(dest / name)
    segment.add_file(src, relpath)
    segment.save()


def test_segment_name_uses_two_digit_year_and_month() -> None:
    assert segment_name_for(datetime(2026, 10, 19)) == "Contents.2610.zip"
    assert segment_name_for(datetime(2031, 1, 1)) == "Contents.3101.zip"


def test_discover_ignores_unrelated_files_and_parts(tmp_path) -> None:
    dest = tmp_path / "dest"
    dest.mkdir()
    for name in [
        "Contents.2609.zip",
        "Contents.2601.zip",
        "Contents.2609.z01",
        "__temp.Contents.2610.zip",
        "notes.txt",
        "contents.2602.zip",
    ]:
        (dest / name).write_bytes(b"")
    (dest / "Contents.2605.zip").mkdir()

    found = [path.name for path in discover_segments(dest)]

    assert found == ["Contents.2601.zip", "Contents.2609.zip"]


def test_discover_missing_destination_is_empty(tmp_path) -> None:
    assert discover_segments(tmp_path / "missing") == []


def test_current_segment_is_last_and_not_created(tmp_path, october) -> None:
    dest = tmp_path / "dest"
    _make_segment(dest, "Contents.2609.zip", "old.txt", tmp_path)
    _make_segment(dest, "Contents.2612.zip", "future.txt", tmp_path)

    with load_archive_set(dest, october) as archive_set:
        names = [segment.name for segment in archive_set.segments]
        assert names == ["Contents.2609.zip", "Contents.2612.zip", "Contents.2610.zip"]
        assert not archive_set.current.exists
        assert sorted(entry.relpath for entry in archive_set.entries) == [
            "future.txt",
            "old.txt",
        ]

    assert not (dest / "Contents.2610.zip").exists()


def test_existing_current_segment_is_not_listed_twice(tmp_path, october) -> None:
    dest = tmp_path / "dest"
    _make_segment(dest, "Contents.2609.zip", "old.txt", tmp_path)
    _make_segment(dest, "Contents.2610.zip", "new.txt", tmp_path)

    with load_archive_set(dest, october) as archive_set:
        names = [segment.name for segment in archive_set.segments]
        current_entries = [entry.relpath for entry in archive_set.current.entries]

    assert names == ["Contents.2609.zip", "Contents.2610.zip"]
    assert current_entries == ["new.txt"]


def test_unreadable_segment_fails_the_load(tmp_path, october) -> None:
    dest = tmp_path / "dest"
    _make_segment(dest, "Contents.2601.zip", "a.txt", tmp_path)
    (dest / "Contents.2605.zip").write_bytes(b"garbage")

    with pytest.raises(ArchiveReadError, match="Contents.2605.zip"):
        load_archive_set(dest, october)
