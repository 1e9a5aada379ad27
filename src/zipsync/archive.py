"""Zip segment handle: listing, in-memory edits, and crash-safe saving.

A segment is one `Contents.<YYMM>.zip` file. When a maximum part size is set
the saved archive is cut into `<stem>.<generation>.z01`, `.z02`, ... plus the
final part under the canonical `.zip` name; concatenating the parts in that
order yields a regular zip, and the reader opens them as one stream.

Every save picks a fresh generation token and records it in the archive
comment, which lives in the final part. New parts never overwrite old ones, so
replacing the canonical file is the single step that switches generations.
Parts without a token (`<stem>.z01`, ...) are read when the comment names none.
"""

from __future__ import annotations

import bisect
import io
import logging
import os
import re
import shutil
import stat
import struct
import time
import zipfile
from typing import TypeAlias
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import TEMP_PREFIX
from .errors import ArchiveReadError, SegmentSaveError
from .models import NS_PER_SECOND, ArchiveEntry, NodeType, clamp_mtime_s
from .text_utils import normalize_relpath

logger = logging.getLogger(__name__)

SaveProgressCallback: TypeAlias = Callable[[int, int, str], None]

EXTENDED_TIMESTAMP_ID = 0x5455
DOS_RESOLUTION_NS = 2 * NS_PER_SECOND
COPY_CHUNK_SIZE = 1024 * 1024
# Parts must be larger than the end-of-central-directory record plus comment.
MIN_PART_BYTES = 1024

_LOCAL_HEADER_SIZE = 30
_LOCAL_HEADER_SIGNATURE = b"PK\x03\x04"
_EOCD_SIGNATURE = b"PK\x05\x06"
_EOCD_SIZE = 22
_DATA_DESCRIPTOR_FLAG = 0x08
_GENERATION_RE = re.compile(rb"zipsync-parts:([0-9a-f]{8,32})")


def _extended_timestamp_extra(mtime_s: int) -> bytes:
    return struct.pack("<HHBL", EXTENDED_TIMESTAMP_ID, 5, 1, clamp_mtime_s(mtime_s))


def _read_extended_mtime(extra: bytes) -> int | None:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, size = struct.unpack_from("<HH", extra, offset)
        body = extra[offset + 4 : offset + 4 + size]
        if header_id == EXTENDED_TIMESTAMP_ID and len(body) >= 5 and body[0] & 1:
            return struct.unpack_from("<L", body, 1)[0]
        offset += 4 + size
    return None


def _dos_mtime_ns(date_time: tuple[int, int, int, int, int, int]) -> int:
    return int(time.mktime((*date_time, 0, 0, -1))) * NS_PER_SECOND


def _generation_comment(generation: str) -> bytes:
    return b"zipsync-parts:" + generation.encode("ascii")


def read_generation(path: Path) -> str | None:
    """Generation token stored in the archive comment of `path`, if any."""
    try:
        with open(path, "rb") as fh:
            size = fh.seek(0, os.SEEK_END)
            fh.seek(max(0, size - _EOCD_SIZE - 0xFFFF))
            tail = fh.read()
    except OSError:
        return None
    offset = tail.rfind(_EOCD_SIGNATURE)
    if offset < 0 or offset + _EOCD_SIZE > len(tail):
        return None
    (comment_length,) = struct.unpack_from("<H", tail, offset + 20)
    comment = tail[offset + _EOCD_SIZE : offset + _EOCD_SIZE + comment_length]
    match = _GENERATION_RE.fullmatch(comment)
    return match.group(1).decode("ascii") if match else None


def _numbered_parts(directory: Path, prefix: str) -> list[Path]:
    if not directory.is_dir():
        return []
    pattern = re.compile(re.escape(prefix) + r"\.z(\d{2,})")
    found: list[tuple[int, Path]] = []
    for candidate in directory.iterdir():
        match = pattern.fullmatch(candidate.name)
        if match:
            found.append((int(match.group(1)), candidate))
    return [candidate for _, candidate in sorted(found)]


def part_paths(path: Path) -> list[Path]:
    """Live split parts of the segment at `path`, in order, excluding `path`."""
    generation = read_generation(path) if path.is_file() else None
    prefix = f"{path.stem}.{generation}" if generation else path.stem
    return _numbered_parts(path.parent, prefix)


def _all_part_paths(path: Path) -> list[Path]:
    """Every part file of the segment at `path`, whatever its generation."""
    if not path.parent.is_dir():
        return []
    pattern = re.compile(re.escape(path.stem) + r"(\.[0-9a-f]{8,32})?\.z\d{2,}")
    return sorted(
        candidate
        for candidate in path.parent.iterdir()
        if pattern.fullmatch(candidate.name)
    )


def _part_name(stem: str, number: int) -> str:
    return f"{stem}.z{number:02d}"


def _leading_part_sizes(total: int, part_bytes: int, tail: int) -> list[int]:
    """Sizes of all parts but the last; the last keeps at least `tail` bytes."""
    sizes: list[int] = []
    remaining = total
    while remaining > part_bytes:
        take = part_bytes
        if remaining - take < tail:
            take = remaining - tail
        sizes.append(take)
        remaining -= take
    return sizes


def _data_offset(fp, info: zipfile.ZipInfo) -> int:
    fp.seek(info.header_offset)
    header = fp.read(_LOCAL_HEADER_SIZE)
    if len(header) != _LOCAL_HEADER_SIZE or header[:4] != _LOCAL_HEADER_SIGNATURE:
        raise zipfile.BadZipFile(f"Bad local header for {info.filename}")
    name_length, extra_length = struct.unpack_from("<HH", header, 26)
    return info.header_offset + _LOCAL_HEADER_SIZE + name_length + extra_length


def _write_raw_entry(zf_out: zipfile.ZipFile, info: zipfile.ZipInfo, src, offset: int) -> None:
    """Append an entry whose compressed bytes are copied from `src` unchanged.

    Follows the bookkeeping of `ZipFile.open(..., "w")`: header at `start_dir`,
    then data, then register the info so the central directory lists it.
    """
    zip64 = info.file_size > zipfile.ZIP64_LIMIT or info.compress_size > zipfile.ZIP64_LIMIT
    with zf_out._lock:
        fp = zf_out.fp
        fp.seek(zf_out.start_dir)
        info.header_offset = fp.tell()
        zf_out._didModify = True
        fp.write(info.FileHeader(zip64))
        src.seek(offset)
        copied = _copy_range(src, fp, info.compress_size)
        if copied != info.compress_size:
            raise zipfile.BadZipFile(f"Truncated data for {info.filename}")
        zf_out.filelist.append(info)
        zf_out.NameToInfo[info.filename] = info
        zf_out.start_dir = fp.tell()


class SpannedReader(io.RawIOBase):
    """Read-only, seekable view over several files laid end to end."""

    def __init__(self, paths: list[Path]) -> None:
        super().__init__()
        self._files = []
        try:
            for path in paths:
                self._files.append(open(path, "rb"))
        except OSError:
            for handle in self._files:
                handle.close()
            raise
        self._sizes = [os.fstat(handle.fileno()).st_size for handle in self._files]
        self._offsets: list[int] = []
        total = 0
        for size in self._sizes:
            self._offsets.append(total)
            total += size
        self._total = total
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._pos + offset
        elif whence == io.SEEK_END:
            position = self._total + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if position < 0:
            raise ValueError(f"negative seek position {position}")
        self._pos = position
        return position

    def readinto(self, buffer) -> int:
        view = memoryview(buffer).cast("B")
        written = 0
        while written < len(view) and self._pos < self._total:
            index = bisect.bisect_right(self._offsets, self._pos) - 1
            local = self._pos - self._offsets[index]
            handle = self._files[index]
            handle.seek(local)
            chunk = handle.read(min(len(view) - written, self._sizes[index] - local))
            if not chunk:
                break
            view[written : written + len(chunk)] = chunk
            written += len(chunk)
            self._pos += len(chunk)
        return written

    def close(self) -> None:
        for handle in self._files:
            handle.close()
        super().close()


@dataclass(frozen=True)
class _PendingEntry:
    relpath: str
    node_type: NodeType
    disk_path: Path | None = None

    @property
    def name(self) -> str:
        return f"{self.relpath}/" if self.node_type == NodeType.DIR else self.relpath


class ArchiveSegment:
    """One physical segment of a destination directory.

    Edits (`remove_entry`, `add_directory`, `add_file`) only touch in-memory
    state; nothing is written until `save`.
    """

    def __init__(
        self,
        path: Path,
        *,
        compression_level: int = 6,
        max_part_bytes: int = 0,
    ) -> None:
        self.path = path
        self.compression_level = compression_level
        self.max_part_bytes = max_part_bytes
        self._zip: zipfile.ZipFile | None = None
        self._infos: list[zipfile.ZipInfo] = []
        self._entries: list[ArchiveEntry] = []
        self._removed: set[int] = set()
        self._pending: list[_PendingEntry] = []

    @classmethod
    def open(
        cls,
        path: Path,
        *,
        compression_level: int = 6,
        max_part_bytes: int = 0,
    ) -> ArchiveSegment:
        segment = cls(
            path, compression_level=compression_level, max_part_bytes=max_part_bytes
        )
        if path.exists():
            segment._load()
        return segment

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def exists(self) -> bool:
        return self.path.exists()

    @property
    def changed(self) -> bool:
        return bool(self._removed or self._pending)

    @property
    def entries(self) -> list[ArchiveEntry]:
        return list(self._entries)

    def _load(self) -> None:
        parts = [*part_paths(self.path), self.path]
        reader: SpannedReader | None = None
        try:
            if len(parts) == 1:
                self._zip = zipfile.ZipFile(self.path, "r")
            else:
                reader = SpannedReader(parts)
                self._zip = zipfile.ZipFile(reader, "r")
            self._infos = self._zip.infolist()
        except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            self.close()
            if reader is not None:
                reader.close()
            raise ArchiveReadError(f"Cannot read segment {self.path}: {exc}") from exc

        for index, info in enumerate(self._infos):
            is_dir = info.filename.endswith(("/", "\\"))
            extended = _read_extended_mtime(info.extra)
            if extended is not None:
                mtime_ns = extended * NS_PER_SECOND
                resolution = NS_PER_SECOND
            else:
                mtime_ns = _dos_mtime_ns(info.date_time)
                resolution = DOS_RESOLUTION_NS
            self._entries.append(
                ArchiveEntry(
                    segment=self,
                    index=index,
                    name=info.filename,
                    relpath=normalize_relpath(info.filename),
                    node_type=NodeType.DIR if is_dir else NodeType.FILE,
                    size=0 if is_dir else info.file_size,
                    mtime_ns=mtime_ns,
                    mtime_resolution_ns=resolution,
                )
            )

    def remove_entry(self, entry: ArchiveEntry) -> None:
        if entry.segment is not self:
            raise ValueError(f"{entry.name} does not belong to {self.name}")
        self._removed.add(entry.index)

    def add_directory(self, relpath: str) -> None:
        self._pending.append(_PendingEntry(relpath=relpath, node_type=NodeType.DIR))

    def add_file(self, disk_path: Path, relpath: str) -> None:
        self._pending.append(
            _PendingEntry(relpath=relpath, node_type=NodeType.FILE, disk_path=disk_path)
        )

    def close(self) -> None:
        if self._zip is not None:
            zf, self._zip = self._zip, None
            fp = zf.fp
            zf.close()
            # ZipFile leaves caller-provided file objects open.
            if isinstance(fp, SpannedReader):
                fp.close()

    def __enter__(self) -> ArchiveSegment:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    # Saving

    def _temp_path(self) -> Path:
        return self.path.with_name(f"{TEMP_PREFIX}{self.path.name}")

    def _split_last_path(self) -> Path:
        temp = self._temp_path()
        return temp.with_name(f"{temp.name}.last")

    def _new_generation(self) -> str:
        current = read_generation(self.path) if self.path.is_file() else None
        while True:
            generation = os.urandom(4).hex()
            if generation != current:
                return generation

    def _new_info(self, name: str, mtime_s: int) -> zipfile.ZipInfo:
        date_time = time.localtime(clamp_mtime_s(mtime_s))[:6]
        if date_time[0] < 1980:
            date_time = (1980, 1, 1, 0, 0, 0)
        elif date_time[0] > 2107:
            date_time = (2107, 12, 31, 23, 59, 58)
        info = zipfile.ZipInfo(name, date_time)
        info.extra = _extended_timestamp_extra(mtime_s)
        if self.compression_level == 0:
            info.compress_type = zipfile.ZIP_STORED
        else:
            info.compress_type = zipfile.ZIP_DEFLATED
            # Same attribute ZipFile.writestr sets for per-entry levels.
            info._compresslevel = self.compression_level
        return info

    def _copy_existing(self, zf_out: zipfile.ZipFile, index: int) -> None:
        assert self._zip is not None
        source = self._infos[index]
        entry = self._entries[index]
        info = self._new_info(source.filename, entry.mtime_ns // NS_PER_SECOND)
        if entry.mtime_resolution_ns != NS_PER_SECOND:
            # No extended timestamp in the source entry: keep its DOS time as is.
            info.date_time = source.date_time
            info.extra = b""
        info.external_attr = source.external_attr
        if entry.is_dir:
            zf_out.writestr(info, b"")
            return
        # Kept entries move as compressed bytes, with their own method and CRC.
        info.compress_type = source.compress_type
        info.flag_bits = source.flag_bits & ~_DATA_DESCRIPTOR_FLAG
        info.CRC = source.CRC
        info.compress_size = source.compress_size
        info.file_size = source.file_size
        fp = self._zip.fp
        _write_raw_entry(zf_out, info, fp, _data_offset(fp, source))

    def _write_pending(self, zf_out: zipfile.ZipFile, pending: _PendingEntry) -> None:
        if pending.node_type == NodeType.DIR:
            info = self._new_info(pending.name, int(time.time()))
            info.external_attr = (0o40775 << 16) | 0x10
            zf_out.writestr(info, b"")
            return

        assert pending.disk_path is not None
        with open(pending.disk_path, "rb") as src:
            st = os.fstat(src.fileno())
            info = self._new_info(pending.name, st.st_mtime_ns // NS_PER_SECOND)
            info.external_attr = (stat.S_IMODE(st.st_mode) | stat.S_IFREG) << 16
            info.file_size = st.st_size
            with zf_out.open(
                info, "w", force_zip64=st.st_size > zipfile.ZIP64_LIMIT
            ) as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)

    def _remove_temp_files(self) -> None:
        temp = self._temp_path()
        for path in [*_numbered_parts(temp.parent, temp.stem), temp, self._split_last_path()]:
            path.unlink(missing_ok=True)

    def _split_temp(self, temp: Path, tail: int) -> None:
        if self.max_part_bytes <= 0:
            return
        part_bytes = max(self.max_part_bytes, MIN_PART_BYTES)
        size = temp.stat().st_size
        if size <= part_bytes:
            return
        last = self._split_last_path()
        with open(temp, "rb") as src:
            for number, length in enumerate(_leading_part_sizes(size, part_bytes, tail), 1):
                with open(temp.with_name(_part_name(temp.stem, number)), "wb") as dst:
                    _copy_range(src, dst, length)
            with open(last, "wb") as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
        os.replace(last, temp)

    def _commit_temp(self, temp: Path, generation: str) -> None:
        stale = _all_part_paths(self.path)
        placed: list[Path] = []
        try:
            for number, temp_part in enumerate(_numbered_parts(temp.parent, temp.stem), 1):
                target = self.path.with_name(
                    _part_name(f"{self.path.stem}.{generation}", number)
                )
                os.replace(temp_part, target)
                placed.append(target)
            os.replace(temp, self.path)
        except OSError:
            for target in placed:
                try:
                    target.unlink(missing_ok=True)
                except OSError as exc:
                    logger.warning("Could not remove unused part %s: %s", target, exc)
            raise

        # The canonical file now names the new generation; old parts are unused.
        for old_part in stale:
            try:
                old_part.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove stale part %s: %s", old_part, exc)

    def save(self, progress_cb: SaveProgressCallback | None = None) -> None:
        """Write kept and pending entries to a temp file, then swap it in.

        On failure the temp files are removed and the canonical files are left
        as they were; the segment is closed either way.
        """
        kept = [index for index in range(len(self._infos)) if index not in self._removed]
        pending = sorted(self._pending, key=lambda item: item.relpath)
        total = len(kept) + len(pending)
        temp = self._temp_path()
        saved = 0

        try:
            if total == 0:
                self.close()
                for path in [*_all_part_paths(self.path), self.path]:
                    path.unlink(missing_ok=True)
                logger.info("Removed emptied segment %s", self.path)
            else:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._remove_temp_files()
                generation = self._new_generation()
                comment = _generation_comment(generation)
                with zipfile.ZipFile(
                    temp, "w", allowZip64=True, strict_timestamps=False
                ) as zf_out:
                    zf_out.comment = comment
                    for index in kept:
                        if progress_cb is not None:
                            progress_cb(saved, total, self._infos[index].filename)
                        self._copy_existing(zf_out, index)
                        saved += 1
                    for item in pending:
                        if progress_cb is not None:
                            progress_cb(saved, total, item.name)
                        self._write_pending(zf_out, item)
                        saved += 1
                self.close()
                self._split_temp(temp, _EOCD_SIZE + len(comment))
                self._commit_temp(temp, generation)
        except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
            self.close()
            try:
                self._remove_temp_files()
            except OSError:
                logger.warning("Could not remove temp files for %s", self.path)
            raise SegmentSaveError(self.name, str(exc)) from exc

        if progress_cb is not None:
            progress_cb(saved, total, "")
        self._removed.clear()
        self._pending.clear()


def _copy_range(src, dst, length: int) -> int:
    remaining = length
    while remaining > 0:
        chunk = src.read(min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            break
        dst.write(chunk)
        remaining -= len(chunk)
    return length - remaining
