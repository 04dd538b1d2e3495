"""Archive listing and rotation.

A family is every archive in one backup-mode directory that shares a
sanitized source identity and an algorithm. Listing never deletes;
prune() is only called by the orchestrator right after a successful
backup of that same family.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from partition_backup.domain.models import Algorithm, Archive, ArchiveFamily, DeviceKind
from partition_backup.logging import LoggerFactory
from partition_backup.pipeline.naming import (
    ArchiveName,
    BackupLayout,
    checksum_path,
    report_dir_path,
    signature_path,
)

from .exceptions import ConfigurationError, RetentionFailureError


def archive_from_path(path: Path, kind: DeviceKind) -> Optional[Archive]:
    """Describe an archive file found on disk, or None if the name does not parse."""
    parsed = ArchiveName.parse(path.name)
    if parsed is None or not path.is_file():
        return None
    checksum_file = checksum_path(path)
    signature_file = signature_path(path)
    report_dir = report_dir_path(path)
    return Archive(
        path=path,
        size_bytes=path.stat().st_size,
        created_at=parsed.timestamp,
        source_device=parsed.identity,
        algorithm=parsed.algorithm,
        kind=kind,
        sequence=parsed.sequence,
        checksum_path=checksum_file if checksum_file.exists() else None,
        signature_path=signature_file if signature_file.exists() else None,
        report_dir=report_dir if report_dir.is_dir() else None,
    )


def list_archives(layout: BackupLayout, kind: DeviceKind) -> list[Archive]:
    """Every archive of a backup mode, newest first. Read-only."""
    directory = layout.family_dir(kind)
    if not directory.is_dir():
        return []
    archives = [
        archive
        for archive in (archive_from_path(path, kind) for path in directory.iterdir())
        if archive is not None
    ]
    return sorted(archives, key=lambda a: a.sort_key, reverse=True)


def list_family(
    layout: BackupLayout,
    kind: DeviceKind,
    identity: str,
    algorithm: Optional[Algorithm] = None,
) -> ArchiveFamily:
    """Archives of one source identity (and algorithm, if given). Read-only."""
    members = tuple(
        archive
        for archive in list_archives(layout, kind)
        if archive.source_device == identity
        and (algorithm is None or archive.algorithm is algorithm)
    )
    return ArchiveFamily(kind=kind, identity=identity, algorithm=algorithm, archives=members)


@dataclass
class RetentionReport:
    kept: list[Archive] = field(default_factory=list)
    removed: list[Archive] = field(default_factory=list)
    failures: list[tuple[Path, str]] = field(default_factory=list)


class RetentionManager:
    """Delete archives beyond the newest ``limit`` members of a family."""

    def __init__(self, log=None):
        self.log = log or LoggerFactory.for_retention()

    def prune(
        self, family: ArchiveFamily, limit: int, keep: Optional[Path] = None, log=None
    ) -> RetentionReport:
        """Remove over-limit archives together with their sidecars.

        ``keep`` names an archive that survives wherever it sorts, such as the
        one just written after the clock went backwards; it counts toward
        ``limit``. Sidecars and report directories are removed best-effort; a
        missing one is not an error. A primary archive that cannot be deleted
        is collected and raised at the end.

        Raises:
            ConfigurationError: If ``limit`` is not a positive integer
            RetentionFailureError: If any over-limit archive could not be deleted
        """
        log = log or self.log
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ConfigurationError(f"Retention limit must be a positive integer, got {limit!r}")

        pinned = [archive for archive in family if archive.path == keep]
        others = [archive for archive in family if archive.path != keep]
        report = RetentionReport(kept=pinned + others[: limit - len(pinned)])
        kept_paths = {archive.path for archive in report.kept}
        log.info(f"Checking for old backups to remove (limit: {limit})")
        for archive in family:
            if archive.path in kept_paths:
                continue
            log.info(f"Removing old backup: {archive.path}")
            try:
                archive.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as error:
                log.error(f"Failed to remove {archive.path}: {error}")
                report.failures.append((archive.path, str(error)))
                continue
            self._remove_attachments(archive, log)
            report.removed.append(archive)

        if report.failures:
            raise RetentionFailureError(report.failures)
        return report

    @staticmethod
    def _remove_attachments(archive: Archive, log) -> None:
        for sidecar in (checksum_path(archive.path), signature_path(archive.path)):
            try:
                sidecar.unlink(missing_ok=True)
            except OSError as error:
                log.warning(f"Failed to remove sidecar {sidecar}: {error}")
        if archive.kind is DeviceKind.WHOLE_DISK:
            report_dir = report_dir_path(archive.path)
            if report_dir.is_dir():
                shutil.rmtree(report_dir, ignore_errors=True)
