"""Backup and restore operations.

The orchestrator is the only place that sequences devices, the streaming
pipeline, integrity sidecars and rotation. Each top-level call walks a
small state machine and always returns an OperationResult; fatal errors
never escape as exceptions and never leave partially applied side
effects behind.

Backup:
    Idle -> DeviceSelected -> BackupRunning [-> Confirming (whole disk)]
         -> Streaming -> Finalizing (checksum, signature, rotation) -> Idle

Restore:
    Idle -> DeviceSelected -> RestoreSelecting -> Verifying (checksum,
         signature) -> Confirming -> countdown -> Streaming -> Finalizing -> Idle

Example:
    from partition_backup.orchestrator import Orchestrator

    orchestrator = Orchestrator(load_configuration(), prompt=ConsolePrompt())
    result = orchestrator.backup(device)
    if not result.ok:
        print(result.error_kind, result.message)
"""

from __future__ import annotations

import os
import shutil
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from partition_backup.config.settings import Configuration
from partition_backup.domain.models import Archive, DeviceKind, DeviceRef
from partition_backup.integrity import IntegrityManager
from partition_backup.logging import family_log, get_logger, new_job_id, operation_context
from partition_backup.pipeline.codecs import CodecTransformFactory, detect_algorithm
from partition_backup.pipeline.naming import (
    ArchiveName,
    BackupLayout,
    checksum_path,
    partial_path,
    report_dir_path,
    signature_path,
)
from partition_backup.pipeline.progress import ProgressCallback, format_elapsed
from partition_backup.pipeline.streaming import (
    PARTITION_BLOCK_SIZE,
    WHOLE_DISK_BLOCK_SIZE,
    StreamPipeline,
)
from partition_backup.storage import retention
from partition_backup.storage.device_lock import backup_root_lock
from partition_backup.storage.devices import free_space, human_size
from partition_backup.storage.exceptions import (
    BackupToolError,
    DeviceUnavailableError,
    OperationCancelledError,
    RetentionFailureError,
    StreamFailureError,
)
from partition_backup.storage.retention import RetentionManager, archive_from_path
from partition_backup.storage.snapshot import MetadataSnapshotCollector
from partition_backup.storage.validation import (
    revalidate_source,
    revalidate_target,
    validate_backup_directory,
    validate_restore_kind,
)

OVERRIDE_PHRASE = "OVERRIDE"
DESTRUCTIVE_PHRASE = "I UNDERSTAND"


class OperationState(Enum):
    IDLE = "idle"
    DEVICE_SELECTED = "device_selected"
    BACKUP_RUNNING = "backup_running"
    RESTORE_SELECTING = "restore_selecting"
    VERIFYING = "verifying"
    CONFIRMING = "confirming"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


# Any state may also fall back to IDLE on a fatal error.
ALLOWED_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.IDLE: frozenset({OperationState.DEVICE_SELECTED}),
    OperationState.DEVICE_SELECTED: frozenset(
        {OperationState.BACKUP_RUNNING, OperationState.RESTORE_SELECTING}
    ),
    OperationState.BACKUP_RUNNING: frozenset(
        {OperationState.CONFIRMING, OperationState.STREAMING}
    ),
    OperationState.RESTORE_SELECTING: frozenset({OperationState.VERIFYING}),
    OperationState.VERIFYING: frozenset({OperationState.CONFIRMING}),
    OperationState.CONFIRMING: frozenset({OperationState.STREAMING}),
    OperationState.STREAMING: frozenset({OperationState.FINALIZING}),
    OperationState.FINALIZING: frozenset({OperationState.IDLE}),
}


class OperationStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    """Outcome of one backup or restore.

    ``warnings`` carries non-fatal problems (signing, rotation, a missing
    checksum sidecar); they never change ``status``.
    """

    operation: str
    status: OperationStatus
    archive: Optional[Archive] = None
    error_kind: Optional[str] = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    compression_ratio: Optional[float] = None  # percent of source size
    elapsed_seconds: Optional[float] = None
    bytes_processed: int = 0
    job_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS


class ConfirmationKind(Enum):
    RETYPE_DEVICE = "retype_device"
    MOUNTED_OVERRIDE = "mounted_override"
    DESTRUCTIVE_ACK = "destructive_ack"


@dataclass(frozen=True)
class ConfirmationRequest:
    kind: ConfirmationKind
    device_path: str
    message: str
    expected_response: str


class ConfirmationPrompt(Protocol):
    """Ask the operator to affirm an action; True means go ahead."""

    def confirm(self, request: ConfirmationRequest) -> bool:
        ...


def compression_ratio(compressed_bytes: int, source_bytes: int) -> float:
    """Archive size as a percentage of the source, to two decimals."""
    if source_bytes <= 0:
        return 0.0
    return round(compressed_bytes / source_bytes * 100, 2)


class Orchestrator:
    """Run backups and restores against one Configuration.

    Collaborators are injected so tests can swap in in-process transforms,
    fake signers and scripted prompts.
    """

    def __init__(
        self,
        config: Configuration,
        *,
        prompt: ConfirmationPrompt,
        integrity: Optional[IntegrityManager] = None,
        retention_manager: Optional[RetentionManager] = None,
        snapshot_collector: Optional[MetadataSnapshotCollector] = None,
        transform_factory: Optional[CodecTransformFactory] = None,
        progress_callback: Optional[ProgressCallback] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.layout = BackupLayout(Path(config.backup_root))
        self.prompt = prompt
        self.integrity = integrity or IntegrityManager()
        self.retention = retention_manager or RetentionManager()
        self.snapshot_collector = snapshot_collector or MetadataSnapshotCollector()
        self.transform_factory = transform_factory or CodecTransformFactory()
        self.progress_callback = progress_callback
        self._clock = clock
        self._sleep = sleep
        self.state = OperationState.IDLE
        self.history: list[OperationState] = [OperationState.IDLE]

    # -- public operations ----------------------------------------------------

    def backup(self, device: DeviceRef) -> OperationResult:
        """Image ``device`` into a new archive, seal it and rotate its family."""
        return self._execute("backup", device.kind, lambda log, job_id: self._backup(device, log, job_id))

    def restore(self, archive: Archive | Path | str, target: DeviceRef) -> OperationResult:
        """Verify ``archive`` and write it onto ``target`` after confirmation."""
        if isinstance(archive, Archive):
            archive_path, kind = archive.path, archive.kind
        else:
            archive_path = Path(archive)
            kind = self.layout.kind_of(archive_path)
        return self._execute(
            "restore", kind, lambda log, job_id: self._restore(archive_path, kind, target, log, job_id)
        )

    def list_archives(self, kind: DeviceKind = DeviceKind.PARTITION) -> list[Archive]:
        """Archives available for restore, newest first. Never deletes."""
        return retention.list_archives(self.layout, kind)

    # -- state machine --------------------------------------------------------

    def _transition(self, new_state: OperationState) -> None:
        if new_state is not OperationState.IDLE and new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def _execute(self, operation: str, kind: DeviceKind, body) -> OperationResult:
        job_id = new_job_id(operation)
        log = get_logger(job_id=job_id, source="orchestrator", tags=[operation])
        if self.state is not OperationState.IDLE:
            raise RuntimeError(f"Another operation is in progress ({self.state.value})")
        self.history = [OperationState.IDLE]

        with ExitStack() as stack:
            self._open_family_log(stack, kind, job_id, log)
            try:
                with operation_context(operation, job_id=job_id):
                    result = body(log, job_id)
            except OperationCancelledError as error:
                log.warning(f"{operation.capitalize()} cancelled: {error}")
                result = OperationResult(
                    operation, OperationStatus.CANCELLED, error_kind=error.kind, message=str(error)
                )
            except KeyboardInterrupt:
                message = f"{operation.capitalize()} interrupted by operator"
                log.warning(message)
                result = OperationResult(
                    operation,
                    OperationStatus.CANCELLED,
                    error_kind=OperationCancelledError.kind,
                    message=message,
                )
            except BackupToolError as error:
                log.error(f"{operation.capitalize()} failed: [{error.kind}] {error}")
                result = OperationResult(
                    operation, OperationStatus.FAILED, error_kind=error.kind, message=str(error)
                )
            finally:
                self._transition(OperationState.IDLE)

        result.job_id = job_id
        return result

    def _open_family_log(self, stack: ExitStack, kind: DeviceKind, job_id: str, log) -> None:
        log_path = self.layout.log_path(kind)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            stack.enter_context(family_log(log_path, job_id))
        except OSError as error:
            log.warning(f"Cannot write log file {log_path}: {error}")

    def _confirm(self, request: ConfirmationRequest, log) -> None:
        log.debug(f"Waiting for confirmation: {request.kind.value} on {request.device_path}")
        if not self.prompt.confirm(request):
            raise OperationCancelledError(f"Confirmation declined for {request.device_path}")
        log.info(f"Confirmed: {request.message}")

    # -- backup -----------------------------------------------------------------

    def _backup(self, device: DeviceRef, log, job_id: str) -> OperationResult:
        config = self.config
        config.validate()
        spec = config.compression
        limit = config.retention_for(device.kind)
        transform = self.transform_factory.compressor(spec)
        family_dir = validate_backup_directory(self.layout.family_dir(device.kind))

        with backup_root_lock(self.layout.root):
            source = revalidate_source(device)
            self._transition(OperationState.DEVICE_SELECTED)
            log.info(
                f"Starting backup of {source.path} ({human_size(source.size_bytes)}) "
                f"using {spec}"
            )
            log.info(f"Destination: {family_dir} ({human_size(free_space(family_dir))} free)")
            self._transition(OperationState.BACKUP_RUNNING)

            if source.is_whole_disk:
                self._transition(OperationState.CONFIRMING)
                self._confirm_disk_backup(source, log)

            moment = self._clock()
            archive_path = self.layout.new_archive_path(source.path, source.kind, spec.algorithm, moment)
            self._transition(OperationState.STREAMING)
            archive, elapsed = self._stream_backup(source, archive_path, transform, log, job_id)

            self._transition(OperationState.FINALIZING)
            try:
                archive, warnings = self.integrity.seal(archive, config, log=log)
            except BaseException:
                self._discard_backup(archive_path, log)
                raise

            ratio = compression_ratio(archive.size_bytes, source.size_bytes)
            log.info(f"Backup completed: {archive.path} ({human_size(archive.size_bytes)})")
            log.info(f"Compression ratio: {ratio:.2f}% of {human_size(source.size_bytes)}")
            log.info(f"Elapsed time: {format_elapsed(elapsed)}")

            warnings.extend(self._rotate(archive, limit, log))

        return OperationResult(
            "backup",
            OperationStatus.SUCCESS,
            archive=archive,
            warnings=warnings,
            compression_ratio=ratio,
            elapsed_seconds=elapsed,
            bytes_processed=source.size_bytes,
        )

    def _rotate(self, archive: Archive, limit: int, log) -> list[str]:
        """Prune the family of a sealed archive, never removing that archive.

        The archive is complete at this point, so rotation problems and an
        operator interrupt only produce warnings.
        """
        try:
            family = retention.list_family(
                self.layout, archive.kind, archive.source_device, archive.algorithm
            )
            self.retention.prune(family, limit, keep=archive.path, log=log)
        except RetentionFailureError as error:
            log.warning(str(error))
            return [str(error)]
        except KeyboardInterrupt:
            message = f"Rotation interrupted; the family may hold more than {limit} archives"
            log.warning(message)
            return [message]
        return []

    def _confirm_disk_backup(self, source: DeviceRef, log) -> None:
        if source.is_mounted:
            log.warning(f"Partitions of {source.path} are mounted: {', '.join(source.mountpoints)}")
            self._confirm(
                ConfirmationRequest(
                    ConfirmationKind.MOUNTED_OVERRIDE,
                    source.path,
                    f"{source.path} has mounted partitions; the image may be inconsistent. "
                    f"Type {OVERRIDE_PHRASE} to continue.",
                    OVERRIDE_PHRASE,
                ),
                log,
            )
        self._confirm(
            ConfirmationRequest(
                ConfirmationKind.RETYPE_DEVICE,
                source.path,
                f"Type the disk path to confirm a full backup of {source.path}",
                source.path,
            ),
            log,
        )

    def _stream_backup(
        self, source: DeviceRef, archive_path: Path, transform, log, job_id: str
    ) -> tuple[Archive, float]:
        partial = partial_path(archive_path)
        try:
            report_dir = None
            if source.is_whole_disk:
                report_dir = report_dir_path(archive_path)
                self.snapshot_collector.collect(source.path, report_dir, log=log)

            pipeline = StreamPipeline(
                source.path,
                partial,
                transform,
                total_bytes=source.size_bytes,
                block_size=WHOLE_DISK_BLOCK_SIZE if source.is_whole_disk else PARTITION_BLOCK_SIZE,
                progress_callback=self.progress_callback,
                fsync=True,
                job_id=job_id,
                name="backup",
            )
            result = pipeline.run()
            try:
                os.replace(partial, archive_path)
            except OSError as error:
                raise StreamFailureError(
                    f"Failed to finalize {archive_path.name}: {error}", stage="finalize"
                ) from error
        except BaseException:
            self._discard_backup(archive_path, log)
            raise

        parsed = ArchiveName.parse(archive_path.name)
        archive = Archive(
            path=archive_path,
            size_bytes=archive_path.stat().st_size,
            created_at=parsed.timestamp,
            source_device=parsed.identity,
            algorithm=parsed.algorithm,
            kind=source.kind,
            preset=self.config.compression.preset,
            sequence=parsed.sequence,
            report_dir=report_dir,
        )
        return archive, result.elapsed_seconds

    def _discard_backup(self, archive_path: Path, log) -> None:
        """Remove everything a failed backup may have produced."""
        for path in (
            partial_path(archive_path),
            archive_path,
            checksum_path(archive_path),
            signature_path(archive_path),
        ):
            try:
                if path.exists():
                    path.unlink()
                    log.info(f"Cleaned up partial backup: {path}")
            except OSError as error:
                log.error(f"Failed to clean up partial backup {path}: {error}")
        report_dir = report_dir_path(archive_path)
        if report_dir.is_dir():
            shutil.rmtree(report_dir, ignore_errors=True)

    # -- restore ----------------------------------------------------------------

    def _restore(
        self, archive_path: Path, kind: DeviceKind, target: DeviceRef, log, job_id: str
    ) -> OperationResult:
        config = self.config
        config.validate()
        algorithm = detect_algorithm(archive_path)
        transform = self.transform_factory.decompressor(algorithm)
        if not archive_path.is_file():
            raise DeviceUnavailableError(str(archive_path), "archive not found")

        with backup_root_lock(self.layout.root):
            target = revalidate_target(target)
            self._transition(OperationState.DEVICE_SELECTED)
            self._transition(OperationState.RESTORE_SELECTING)
            validate_restore_kind(kind, target)
            archive = archive_from_path(archive_path, kind)
            archive_size = archive_path.stat().st_size
            log.info(
                f"Restoring {archive_path.name} ({human_size(archive_size)}) "
                f"to {target.path} ({human_size(target.size_bytes)})"
            )

            self._transition(OperationState.VERIFYING)
            warnings = self.integrity.verify(archive_path, config, log=log)

            self._transition(OperationState.CONFIRMING)
            self._confirm_restore(kind, target, log)
            self._countdown(log)

            self._transition(OperationState.STREAMING)
            whole_disk = kind is DeviceKind.WHOLE_DISK
            pipeline = StreamPipeline(
                archive_path,
                target.path,
                transform,
                total_bytes=archive_size,
                block_size=WHOLE_DISK_BLOCK_SIZE if whole_disk else PARTITION_BLOCK_SIZE,
                progress_callback=self.progress_callback,
                sink_capacity=target.size_bytes,
                fsync=True,
                sync_filesystems=whole_disk,
                job_id=job_id,
                name="restore",
            )
            result = pipeline.run()

            self._transition(OperationState.FINALIZING)
            log.info(f"Restore completed: {target.path} ({human_size(result.bytes_written)} written)")
            log.info(f"Elapsed time: {format_elapsed(result.elapsed_seconds)}")
            if whole_disk:
                self._log_uefi_hint(log)

        return OperationResult(
            "restore",
            OperationStatus.SUCCESS,
            archive=archive,
            warnings=warnings,
            elapsed_seconds=result.elapsed_seconds,
            bytes_processed=result.bytes_written,
        )

    def _confirm_restore(self, kind: DeviceKind, target: DeviceRef, log) -> None:
        if kind is DeviceKind.WHOLE_DISK:
            request = ConfirmationRequest(
                ConfirmationKind.DESTRUCTIVE_ACK,
                target.path,
                f"All data on {target.path} will be overwritten. "
                f"Type {DESTRUCTIVE_PHRASE} to continue.",
                DESTRUCTIVE_PHRASE,
            )
        else:
            request = ConfirmationRequest(
                ConfirmationKind.RETYPE_DEVICE,
                target.path,
                f"Type the partition path to confirm overwriting {target.path}",
                target.path,
            )
        self._confirm(request, log)

    def _countdown(self, log) -> None:
        delay = self.config.restore_delay_seconds
        if delay <= 0:
            return
        log.info(f"Starting restore in {delay:g} seconds. Press Ctrl+C to cancel.")
        try:
            self._sleep(delay)
        except KeyboardInterrupt:
            raise OperationCancelledError("Restore cancelled during countdown") from None

    def _log_uefi_hint(self, log) -> None:
        report_dir = self.layout.latest_report_dir()
        saved = report_dir / "efibootmgr.txt" if report_dir else None
        if saved and saved.exists():
            log.info(f"If this disk boots with UEFI, review the boot order; saved entries: {saved}")
        else:
            log.info("If this disk boots with UEFI, review the boot order with efibootmgr.")
