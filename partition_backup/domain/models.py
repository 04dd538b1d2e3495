"""Domain model for partition and whole-disk backups.

Type-safe value objects passed between the pipeline, integrity, retention and
orchestrator layers. Everything here is immutable; operations return new
values via ``dataclasses.replace`` instead of mutating.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from partition_backup.storage.exceptions import ConfigurationError


# ==============================================================================
# Device Domain
# ==============================================================================


class DeviceKind(Enum):
    """Backup mode and retention domain of a device."""

    PARTITION = "partition"
    WHOLE_DISK = "whole_disk"


@dataclass(frozen=True)
class DeviceRef:
    """A source or target block device.

    Obtained from device enumeration and re-validated right before use,
    since a device can be unplugged or mounted between selection and
    execution.
    """

    path: str  # e.g., "/dev/sda1"
    kind: DeviceKind
    size_bytes: Optional[int] = None  # None until queried
    mountpoints: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Device node name (e.g., sda1)."""
        return os.path.basename(self.path)

    @property
    def is_whole_disk(self) -> bool:
        return self.kind is DeviceKind.WHOLE_DISK

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoints)

    def with_size(self, size_bytes: int) -> DeviceRef:
        return replace(self, size_bytes=size_bytes)


# ==============================================================================
# Compression Domain
# ==============================================================================


class Algorithm(Enum):
    ZSTD = "zstd"
    GZIP = "gzip"
    XZ = "xz"


class Preset(Enum):
    FAST = "fast"
    BALANCED = "balanced"
    MAX = "max"


def parse_algorithm(value: Algorithm | str) -> Algorithm:
    if isinstance(value, Algorithm):
        return value
    try:
        return Algorithm(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(a.value for a in Algorithm)
        raise ConfigurationError(
            f"Unknown compression algorithm: {value!r} (expected one of {choices})"
        ) from None


def parse_preset(value: Preset | str) -> Preset:
    if isinstance(value, Preset):
        return value
    try:
        return Preset(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(p.value for p in Preset)
        raise ConfigurationError(
            f"Unknown compression preset: {value!r} (expected one of {choices})"
        ) from None


@dataclass(frozen=True)
class CompressionSpec:
    """Algorithm and preset pair selected for a backup."""

    algorithm: Algorithm
    preset: Preset

    @classmethod
    def parse(cls, algorithm: Algorithm | str, preset: Preset | str) -> CompressionSpec:
        """Build a spec from raw setting values.

        Raises:
            ConfigurationError: If either value is not recognised
        """
        return cls(parse_algorithm(algorithm), parse_preset(preset))

    def __str__(self) -> str:
        return f"{self.algorithm.value} ({self.preset.value} preset)"


# ==============================================================================
# Archive Domain
# ==============================================================================


@dataclass(frozen=True)
class Archive:
    """One completed compressed image plus its optional sidecars.

    Only created after a fully successful pipeline run. Sidecar paths are
    set only when the matching integrity step succeeded.
    """

    path: Path
    size_bytes: int
    created_at: datetime
    source_device: str  # sanitized identity, e.g. "_dev_sda1"
    algorithm: Algorithm
    kind: DeviceKind = DeviceKind.PARTITION
    preset: Optional[Preset] = None  # unknown for archives found on disk
    sequence: int = 0
    checksum_path: Optional[Path] = None
    signature_path: Optional[Path] = None
    report_dir: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def sort_key(self) -> tuple[datetime, int, str]:
        return (self.created_at, self.sequence, self.path.name)


@dataclass(frozen=True)
class ArchiveFamily:
    """Archives sharing one source identity, algorithm and backup mode.

    Archives are ordered newest first.
    """

    kind: DeviceKind
    identity: str
    algorithm: Optional[Algorithm]
    archives: tuple[Archive, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.archives, key=lambda a: a.sort_key, reverse=True))
        object.__setattr__(self, "archives", ordered)

    def __len__(self) -> int:
        return len(self.archives)

    def __iter__(self) -> Iterator[Archive]:
        return iter(self.archives)

    @property
    def newest(self) -> Optional[Archive]:
        return self.archives[0] if self.archives else None
