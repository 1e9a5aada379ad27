from __future__ import annotations

import os
import unicodedata

import pytest

from zipsync.errors import ScanError
from zipsync.models import NS_PER_SECOND, NodeType
from zipsync.scanner_local import SourceScanner, with_parent_dirs

from conftest import T1, T2, mk_entry, write_tree


def test_scan_records_files_and_directories(tmp_path) -> None:
    root = write_tree(
        tmp_path / "src",
        {
            "x.txt": (b"x" * 100, T1),
            "sub/y.txt": (b"y" * 50, T2),
        },
    )
    (root / "empty").mkdir()

    records = SourceScanner(root).scan()

    assert sorted(records) == ["empty", "sub", "sub/y.txt", "x.txt"]
    assert records["x.txt"].node_type == NodeType.FILE
    assert records["x.txt"].size == 100
    assert records["x.txt"].mtime_ns == T1 * NS_PER_SECOND
    assert records["sub/y.txt"].size == 50
    assert records["sub"].node_type == NodeType.DIR
    assert records["empty"].node_type == NodeType.DIR


def test_normalized_names_keep_their_on_disk_path(tmp_path) -> None:
    decomposed = unicodedata.normalize("NFD", "caf\u00e9.txt")
    root = write_tree(tmp_path / "src", {decomposed: ("accent", T1)})

    records = SourceScanner(root).scan()

    assert sorted(records) == ["caf\u00e9.txt"]
    assert records["caf\u00e9.txt"].source_path == root / decomposed
    assert records["caf\u00e9.txt"].source_path.read_bytes() == b"accent"


def test_excluded_subtree_is_skipped_entirely(tmp_path) -> None:
    root = write_tree(
        tmp_path / "src",
        {
            "keep/a.txt": ("a", T1),
            "nested/inner/b.txt": ("b", T1),
            "nested/c.txt": ("c", T1),
        },
    )

    records = SourceScanner(root, excluded=[root / "nested" / "inner"]).scan()

    assert "nested/c.txt" in records
    assert "nested" in records
    assert "nested/inner" not in records
    assert "nested/inner/b.txt" not in records


def test_parallel_scan_matches_sequential_scan(tmp_path) -> None:
    files = {
        f"d{index}/sub{inner}/f{inner}.txt": (f"{index}-{inner}", T1 + index)
        for index in range(6)
        for inner in range(3)
    }
    root = write_tree(tmp_path / "src", files)

    sequential = SourceScanner(root, workers=1).scan()
    parallel = SourceScanner(root, workers=4).scan()

    assert parallel == sequential
    assert len([e for e in parallel.values() if e.node_type == NodeType.FILE]) == 18


def test_progress_callback_reports_final_counts(tmp_path) -> None:
    root = write_tree(tmp_path / "src", {"a/b.txt": ("b", T1), "c.txt": ("c", T1)})
    calls = []

    SourceScanner(root).scan(progress_cb=lambda rel, dirs, files: calls.append((rel, dirs, files)))

    assert calls[-1] == ("", 2, 2)


def test_with_parent_dirs_synthesizes_ancestors() -> None:
    records = {"a/b/c.txt": mk_entry("a/b/c.txt", size=3)}

    merged = with_parent_dirs(records)

    assert sorted(merged) == ["a", "a/b", "a/b/c.txt"]
    assert merged["a"].node_type == NodeType.DIR
    assert merged["a/b"].node_type == NodeType.DIR


def test_missing_root_raises(tmp_path) -> None:
    with pytest.raises(ScanError):
        SourceScanner(tmp_path / "missing").scan()


def test_unreadable_directory_aborts_scan(tmp_path, monkeypatch) -> None:
    root = write_tree(
        tmp_path / "src",
        {"ok/a.txt": ("a", T1), "locked/b.txt": ("b", T1)},
    )
    locked = root / "locked"
    real_scandir = os.scandir

    def fake_scandir(path):
        if os.fspath(path) == os.fspath(locked):
            raise PermissionError(13, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", fake_scandir)

    with pytest.raises(ScanError, match="locked"):
        SourceScanner(root, workers=2).scan()


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlink_loop_fails_instead_of_hanging(tmp_path) -> None:
    root = write_tree(tmp_path / "src", {"a.txt": ("a", T1)})
    (root / "loop").symlink_to(root, target_is_directory=True)

    with pytest.raises(ScanError):
        SourceScanner(root).scan()


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_dangling_symlink_is_skipped(tmp_path) -> None:
    root = write_tree(tmp_path / "src", {"a.txt": ("a", T1)})
    (root / "broken").symlink_to(root / "nowhere")

    records = SourceScanner(root).scan()

    assert sorted(records) == ["a.txt"]
