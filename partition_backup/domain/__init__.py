"""Domain models for backup and restore operations."""

from __future__ import annotations

from .models import (
    Algorithm,
    Archive,
    ArchiveFamily,
    CompressionSpec,
    DeviceKind,
    DeviceRef,
    Preset,
    parse_algorithm,
    parse_preset,
)


__all__ = [
    "Algorithm",
    "Archive",
    "ArchiveFamily",
    "CompressionSpec",
    "DeviceKind",
    "DeviceRef",
    "Preset",
    "parse_algorithm",
    "parse_preset",
]
