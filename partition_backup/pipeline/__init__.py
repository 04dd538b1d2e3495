"""Codec registry, archive naming, and the streaming pipeline."""

from .codecs import (
    CODECS,
    Codec,
    CodecTransformFactory,
    detect_algorithm,
    get_codec,
    resolve_args,
    resolve_extension,
)
from .naming import ArchiveName, BackupLayout, archive_basename, sanitize_device_id
from .progress import ProgressMeter, ProgressSnapshot, format_progress_lines
from .streaming import (
    PARTITION_BLOCK_SIZE,
    WHOLE_DISK_BLOCK_SIZE,
    PipelineResult,
    StreamPipeline,
)
from .transforms import PassthroughTransform, StreamTransform, SubprocessTransform

__all__ = [
    "CODECS",
    "PARTITION_BLOCK_SIZE",
    "WHOLE_DISK_BLOCK_SIZE",
    "ArchiveName",
    "BackupLayout",
    "Codec",
    "CodecTransformFactory",
    "PassthroughTransform",
    "PipelineResult",
    "ProgressMeter",
    "ProgressSnapshot",
    "StreamPipeline",
    "StreamTransform",
    "SubprocessTransform",
    "archive_basename",
    "detect_algorithm",
    "format_progress_lines",
    "get_codec",
    "resolve_args",
    "resolve_extension",
    "sanitize_device_id",
]
