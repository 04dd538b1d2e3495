"""Archive naming and on-disk layout.

Archive files are named ``{sanitizedId}-{YYYY-MM-DD_HH-MM-SS}.img.{zst|gz|xz}``
where the sanitized id is the device path with separators replaced by
underscores (``/dev/sda1`` -> ``_dev_sda1``). When a name is already taken,
for example two backups started within the same second, a ``-N`` sequence
suffix is appended to the timestamp.

Layout under a backup root:

    <root>/
        _dev_sda1-2024-05-01_10-00-00.img.zst
        _dev_sda1-2024-05-01_10-00-00.img.zst.sha256
        _dev_sda1-2024-05-01_10-00-00.img.zst.sig
        partition-backup.log
        disk_backup/
            _dev_sda-2024-05-01_11-00-00.img.zst
            _dev_sda-2024-05-01_11-00-00_reports/
            full-disk-backup.log
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from partition_backup.domain.models import Algorithm, DeviceKind
from partition_backup.storage.exceptions import ConfigurationError

from .codecs import CODECS, get_codec

TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
DISK_BACKUP_SUBDIR = "disk_backup"
PARTITION_LOG_NAME = "partition-backup.log"
DISK_LOG_NAME = "full-disk-backup.log"
CHECKSUM_SUFFIX = ".sha256"
SIGNATURE_SUFFIX = ".sig"
PARTIAL_SUFFIX = ".partial"
REPORT_DIR_SUFFIX = "_reports"

_EXTENSION_PATTERN = "|".join(re.escape(codec.extension) for codec in CODECS.values())
_ARCHIVE_NAME_RE = re.compile(
    r"^(?P<identity>.+)-(?P<timestamp>\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})"
    r"(?:-(?P<sequence>\d+))?\.(?P<extension>" + _EXTENSION_PATTERN + r")$"
)


def sanitize_device_id(device_path: str) -> str:
    """Make a device path safe to use as a filename segment."""
    if not device_path or not device_path.strip():
        raise ConfigurationError("Device path is empty")
    return device_path.strip().replace("/", "_").replace("\\", "_")


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def archive_basename(device_path: str, moment: datetime, sequence: int = 0) -> str:
    """``{sanitizedId}-{timestamp}``, plus ``-N`` for sequence > 0.

    Pure function of its arguments.
    """
    basename = f"{sanitize_device_id(device_path)}-{format_timestamp(moment)}"
    if sequence:
        basename = f"{basename}-{sequence}"
    return basename


@dataclass(frozen=True)
class ArchiveName:
    """Parsed components of an archive filename."""

    identity: str
    timestamp: datetime
    sequence: int
    algorithm: Algorithm

    @classmethod
    def parse(cls, filename: str) -> Optional[ArchiveName]:
        """Parse an archive filename, or return None if it is not one."""
        match = _ARCHIVE_NAME_RE.match(filename)
        if not match:
            return None
        try:
            timestamp = parse_timestamp(match.group("timestamp"))
        except ValueError:
            return None
        extension = match.group("extension")
        algorithm = next(c.algorithm for c in CODECS.values() if c.extension == extension)
        return cls(
            identity=match.group("identity"),
            timestamp=timestamp,
            sequence=int(match.group("sequence") or 0),
            algorithm=algorithm,
        )

    @property
    def basename(self) -> str:
        basename = f"{self.identity}-{format_timestamp(self.timestamp)}"
        if self.sequence:
            basename = f"{basename}-{self.sequence}"
        return basename

    @property
    def filename(self) -> str:
        return f"{self.basename}.{get_codec(self.algorithm).extension}"


def strip_archive_extension(path: Path) -> str:
    """Archive filename without its ``.img.<ext>`` suffix."""
    name = path.name
    for codec in CODECS.values():
        if name.endswith(codec.suffix):
            return name[: -len(codec.suffix)]
    return path.stem


def checksum_path(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + CHECKSUM_SUFFIX)


def signature_path(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + SIGNATURE_SUFFIX)


def partial_path(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)


def report_dir_path(archive_path: Path) -> Path:
    return archive_path.with_name(strip_archive_extension(archive_path) + REPORT_DIR_SUFFIX)


@dataclass(frozen=True)
class BackupLayout:
    """Directory layout of one backup root."""

    root: Path

    def family_dir(self, kind: DeviceKind) -> Path:
        if kind is DeviceKind.WHOLE_DISK:
            return self.root / DISK_BACKUP_SUBDIR
        return self.root

    def log_path(self, kind: DeviceKind) -> Path:
        name = DISK_LOG_NAME if kind is DeviceKind.WHOLE_DISK else PARTITION_LOG_NAME
        return self.family_dir(kind) / name

    def kind_of(self, archive_path: Path) -> DeviceKind:
        """Backup mode an archive belongs to, judged by its directory."""
        if archive_path.parent.name == DISK_BACKUP_SUBDIR:
            return DeviceKind.WHOLE_DISK
        return DeviceKind.PARTITION

    def new_archive_path(
        self,
        device_path: str,
        kind: DeviceKind,
        algorithm: Algorithm,
        moment: datetime,
    ) -> Path:
        """First unused archive path for a backup started at ``moment``.

        A candidate is taken if the archive, its partial output, or its
        report directory already exists.
        """
        directory = self.family_dir(kind)
        extension = get_codec(algorithm).extension
        sequence = 0
        while True:
            candidate = directory / f"{archive_basename(device_path, moment, sequence)}.{extension}"
            taken = (
                candidate.exists()
                or partial_path(candidate).exists()
                or report_dir_path(candidate).exists()
            )
            if not taken:
                return candidate
            sequence += 1

    def latest_report_dir(self) -> Optional[Path]:
        """Most recently modified whole-disk report directory, if any."""
        directory = self.family_dir(DeviceKind.WHOLE_DISK)
        if not directory.is_dir():
            return None
        reports = [
            path
            for path in directory.iterdir()
            if path.is_dir() and path.name.endswith(REPORT_DIR_SUFFIX)
        ]
        if not reports:
            return None
        return max(reports, key=lambda path: path.stat().st_mtime)
