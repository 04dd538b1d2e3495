"""Compression codec registry.

Maps an algorithm to the command line that compresses or decompresses a
stream and to the archive file extension. Every registered codec must
cover every preset; a codec missing one is rejected when it is built, so
an unresolved (algorithm, preset) pair can never reach a device.

Preset arguments:

    algorithm  fast  balanced  max           threads  extension
    zstd       -1    -9        --ultra -22   -T0      img.zst
    gzip       -1    -6        -9            -        img.gz
    xz         -1    -6        -9e           -T0      img.xz
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Optional

from partition_backup.domain.models import (
    Algorithm,
    CompressionSpec,
    Preset,
    parse_algorithm,
    parse_preset,
)
from partition_backup.storage.exceptions import ConfigurationError

from .transforms import StreamTransform, SubprocessTransform


@dataclass(frozen=True)
class Codec:
    algorithm: Algorithm
    executable: str
    extension: str  # without leading dot, e.g. "img.zst"
    preset_args: Mapping[Preset, tuple[str, ...]]
    thread_args: tuple[str, ...] = ()
    decompress_args: tuple[str, ...] = ("-d", "-c")

    def __post_init__(self) -> None:
        missing = [preset.value for preset in Preset if not self.preset_args.get(preset)]
        if missing:
            raise ConfigurationError(
                f"Codec {self.algorithm.value} is missing presets: {', '.join(missing)}"
            )

    @property
    def suffix(self) -> str:
        return f".{self.extension}"

    def compress_args(self, preset: Preset) -> list[str]:
        return [*self.preset_args[preset], *self.thread_args, "-c"]

    def compress_command(self, preset: Preset, executable: Optional[str] = None) -> list[str]:
        return [executable or self.executable, *self.compress_args(preset)]

    def decompress_command(self, executable: Optional[str] = None) -> list[str]:
        return [executable or self.executable, *self.decompress_args]


CODECS: dict[Algorithm, Codec] = {
    Algorithm.ZSTD: Codec(
        algorithm=Algorithm.ZSTD,
        executable="zstd",
        extension="img.zst",
        preset_args={
            Preset.FAST: ("-1",),
            Preset.BALANCED: ("-9",),
            Preset.MAX: ("--ultra", "-22"),
        },
        thread_args=("-T0",),
    ),
    Algorithm.GZIP: Codec(
        algorithm=Algorithm.GZIP,
        executable="gzip",
        extension="img.gz",
        preset_args={
            Preset.FAST: ("-1",),
            Preset.BALANCED: ("-6",),
            Preset.MAX: ("-9",),
        },
    ),
    Algorithm.XZ: Codec(
        algorithm=Algorithm.XZ,
        executable="xz",
        extension="img.xz",
        preset_args={
            Preset.FAST: ("-1",),
            Preset.BALANCED: ("-6",),
            Preset.MAX: ("-9e",),
        },
        thread_args=("-T0",),
    ),
}


def get_codec(algorithm: Algorithm | str) -> Codec:
    """Look up the codec for an algorithm.

    Raises:
        ConfigurationError: If the algorithm is unknown or unregistered
    """
    algorithm = parse_algorithm(algorithm)
    codec = CODECS.get(algorithm)
    if codec is None:
        raise ConfigurationError(f"No codec registered for {algorithm.value}")
    return codec


def resolve_args(algorithm: Algorithm | str, preset: Preset | str) -> list[str]:
    """Compressor arguments for an (algorithm, preset) pair."""
    return get_codec(algorithm).compress_args(parse_preset(preset))


def resolve_extension(algorithm: Algorithm | str) -> str:
    """Canonical archive extension for an algorithm (e.g., "img.zst")."""
    return get_codec(algorithm).extension


def archive_extensions() -> tuple[str, ...]:
    return tuple(codec.extension for codec in CODECS.values())


def detect_algorithm(path: Path | str) -> Algorithm:
    """Pick the decompressor for an archive from its file extension.

    Raises:
        ConfigurationError: If no registered codec matches the extension
    """
    name = Path(path).name
    for codec in CODECS.values():
        if name.endswith(codec.suffix):
            return codec.algorithm
    raise ConfigurationError(f"Unsupported backup format: {name}")


def check_tool_available(tool: str, which: Callable[[str], Optional[str]] = shutil.which) -> str:
    """Resolve a codec executable on PATH.

    Raises:
        ConfigurationError: If the tool is not installed
    """
    resolved = which(tool)
    if not resolved:
        raise ConfigurationError(f"Compression tool not available: {tool}")
    return resolved


class CodecTransformFactory:
    """Build subprocess-backed compress/decompress stream filters.

    Tools are resolved when a filter is built, so a missing tool fails the
    operation before any device I/O starts.
    """

    def __init__(self, which: Callable[[str], Optional[str]] = shutil.which):
        self._which = which

    def compressor(self, spec: CompressionSpec) -> StreamTransform:
        codec = get_codec(spec.algorithm)
        executable = check_tool_available(codec.executable, self._which)
        return SubprocessTransform(
            codec.compress_command(spec.preset, executable),
            name=f"{codec.algorithm.value}-compress",
        )

    def decompressor(self, algorithm: Algorithm | str) -> StreamTransform:
        codec = get_codec(algorithm)
        executable = check_tool_available(codec.executable, self._which)
        return SubprocessTransform(
            codec.decompress_command(executable),
            name=f"{codec.algorithm.value}-decompress",
        )


def compress_stream(
    spec: CompressionSpec, which: Callable[[str], Optional[str]] = shutil.which
) -> StreamTransform:
    return CodecTransformFactory(which).compressor(spec)


def decompress_stream(
    algorithm: Algorithm | str, which: Callable[[str], Optional[str]] = shutil.which
) -> StreamTransform:
    return CodecTransformFactory(which).decompressor(algorithm)
