from __future__ import annotations

from zipsync.text_utils import normalize_relpath, normalize_text, parent_relpaths


def test_normalize_relpath_uses_single_separator_without_trailing_slash() -> None:
    assert normalize_relpath("a\\b\\") == "a/b"
    assert normalize_relpath("./a//b/") == "a/b"
    assert normalize_relpath("sub/") == "sub"
    assert normalize_relpath("") == ""
    assert normalize_relpath(".") == ""


def test_normalize_text_canonicalizes_to_nfc() -> None:
    decomposed = "cafe\u0301.txt"
    assert normalize_text(decomposed) == "caf\u00e9.txt"
    assert normalize_relpath(f"docs/{decomposed}") == "docs/caf\u00e9.txt"


def test_normalize_text_replaces_surrogate_escapes() -> None:
    raw = b"bad\xff.txt".decode("utf-8", "surrogateescape")
    assert normalize_text(raw) == "bad\ufffd.txt"


def test_parent_relpaths_outermost_first() -> None:
    assert parent_relpaths("a/b/c.txt") == ["a", "a/b"]
    assert parent_relpaths("x.txt") == []
