from __future__ import annotations

import unicodedata


def normalize_text(value: str) -> str:
    """Name form used both as the archive entry name and as the diff key.

    Undecodable filename bytes (lone surrogates from `os.fsdecode`) become
    U+FFFD so the name can be stored with the zip UTF-8 flag. The result is
    NFC, which lets a decomposed name on disk match the entry already written
    for it. The file itself is still opened through its on-disk path.
    """
    safe = value.encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    return unicodedata.normalize("NFC", safe)


def normalize_relpath(value: str) -> str:
    """Canonical relative path shared by the scanner and the archive reader.

    Uses `/` as the only separator, drops empty and `.` components and any
    trailing separator. The source root itself normalizes to the empty string.
    """
    text = normalize_text(value).replace("\\", "/")
    parts = [part for part in text.split("/") if part not in {"", "."}]
    return "/".join(parts)


def parent_relpaths(relpath: str) -> list[str]:
    """Ancestors of `relpath`, outermost first, excluding the root."""
    parts = relpath.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]
