from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .paths import is_within, resolve_dir, resolve_dirs, resolve_or_create_dir

logger = logging.getLogger(__name__)

SEGMENT_PREFIX = "Contents"
SEGMENT_SUFFIX = ".zip"
SEGMENT_GLOB = f"{SEGMENT_PREFIX}.*{SEGMENT_SUFFIX}"
SEGMENT_TIME_FORMAT = "%y%m"
TEMP_PREFIX = "__temp."

DEFAULT_COMPRESSION_LEVEL = 6
DEFAULT_WORKERS = min(8, (os.cpu_count() or 1) + 4)

COMPRESSION_LEVEL_NAMES = {
    "none": 0,
    "bestspeed": 1,
    "default": DEFAULT_COMPRESSION_LEVEL,
    "bestcompression": 9,
} | {f"level{level}": level for level in range(10)}

_KEY_ALIASES = {
    "rootfrom": "root_from",
    "root_from": "root_from",
    "rootto": "root_to",
    "root_to": "root_to",
    "splitsize": "split_size",
    "split_size": "split_size",
    "compressionlevel": "compression_level",
    "compression_level": "compression_level",
    "add": "add",
    "ignore": "ignore",
}


@dataclass(frozen=True)
class BackupConfig:
    root_from: str
    root_to: str
    split_size: int = 0
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    add: tuple[str, ...] = ()
    ignore: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedConfig:
    root_from: Path
    root_to: Path
    split_size: int
    compression_level: int
    add: tuple[Path, ...]
    ignore: tuple[Path, ...]

    def destination_for(self, source_root: Path) -> Path:
        return self.root_to / source_root.relative_to(self.root_from)

    def excluded_under(self, source_root: Path) -> frozenset[Path]:
        """Configured roots nested strictly below `source_root`."""
        return frozenset(
            path
            for path in (*self.add, *self.ignore)
            if path != source_root and is_within(path, source_root)
        )

    def configured_relpaths(self) -> frozenset[str]:
        return frozenset(
            path.relative_to(self.root_from).as_posix()
            for path in (*self.add, *self.ignore)
        )


def parse_compression_level(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid compression level: {value!r}")
    if isinstance(value, int):
        level = value
    elif isinstance(value, str):
        key = value.strip().replace("_", "").replace("-", "").lower()
        if key.isdigit():
            level = int(key)
        elif key in COMPRESSION_LEVEL_NAMES:
            level = COMPRESSION_LEVEL_NAMES[key]
        else:
            raise ConfigError(f"Invalid compression level: {value!r}")
    else:
        raise ConfigError(f"Invalid compression level: {value!r}")
    if not 0 <= level <= 9:
        raise ConfigError(f"Compression level out of range 0-9: {level}")
    return level


def _as_patterns(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ConfigError(f"{key} must be a list of path patterns")


def parse_config_item(raw: Any) -> BackupConfig:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Config entry must be a mapping, got {type(raw).__name__}")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        canonical = _KEY_ALIASES.get(str(key).lower())
        if canonical is None:
            raise ConfigError(f"Unknown config key: {key}")
        values[canonical] = value

    for required in ("root_from", "root_to"):
        if not values.get(required):
            raise ConfigError(f"Missing required config key: {required}")

    split_size = values.get("split_size", 0) or 0
    if isinstance(split_size, bool) or not isinstance(split_size, int) or split_size < 0:
        raise ConfigError(f"SplitSize must be a non-negative integer: {split_size!r}")

    return BackupConfig(
        root_from=str(values["root_from"]),
        root_to=str(values["root_to"]),
        split_size=split_size,
        compression_level=parse_compression_level(
            values.get("compression_level", DEFAULT_COMPRESSION_LEVEL)
        ),
        add=_as_patterns(values.get("add"), "Add"),
        ignore=_as_patterns(values.get("ignore"), "Ignore"),
    )


def load_raw_configs(config_path: Path) -> list[Any]:
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return []
    if isinstance(data, Mapping):
        return [data]
    if not isinstance(data, list):
        raise ConfigError(f"{config_path} must contain a list of config entries")
    return data


def load_configs(config_path: Path) -> list[BackupConfig]:
    return [parse_config_item(item) for item in load_raw_configs(config_path)]


def resolve_config(config: BackupConfig, config_path: Path) -> ResolvedConfig:
    config_dir = config_path.expanduser().resolve().parent
    root_from = resolve_dir(config.root_from, config_dir)
    root_to = resolve_or_create_dir(config.root_to, config_dir, create=True)

    def _expand(patterns: tuple[str, ...], *, required: bool) -> tuple[Path, ...]:
        resolved: list[Path] = []
        for pattern in patterns:
            matches = resolve_dirs(pattern, root_from)
            if not matches:
                if required:
                    raise ConfigError(
                        f"No directory matches {pattern!r} under {root_from}"
                    )
                logger.warning("Ignore pattern %r matches nothing", pattern)
            for match in matches:
                if not is_within(match, root_from):
                    raise ConfigError(f"{match} is outside RootFrom {root_from}")
                if match not in resolved:
                    resolved.append(match)
        return tuple(resolved)

    return ResolvedConfig(
        root_from=root_from,
        root_to=root_to,
        split_size=config.split_size,
        compression_level=config.compression_level,
        add=_expand(config.add, required=True),
        ignore=_expand(config.ignore, required=False),
    )
