"""Tests for backup and restore orchestration."""

import shutil
import subprocess
import zlib
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from conftest import (
    MIB,
    FakeSigner,
    FakeTransformFactory,
    RecordingPrompt,
    TickingClock,
    write_synthetic_image,
)
from partition_backup.domain.models import DeviceKind, DeviceRef
from partition_backup.integrity import IntegrityManager
from partition_backup.orchestrator import (
    DESTRUCTIVE_PHRASE,
    OVERRIDE_PHRASE,
    ConfirmationKind,
    OperationState,
    OperationStatus,
    compression_ratio,
)
from partition_backup.pipeline.codecs import CodecTransformFactory
from partition_backup.storage.device_lock import backup_root_lock
from partition_backup.storage.exceptions import RetentionFailureError


def archives_in(directory, pattern="*.img.*"):
    return sorted(
        path
        for path in directory.glob(pattern)
        if not path.name.endswith((".sha256", ".sig", ".partial"))
    )


def make_target(tmp_path, name="sdb1", size=8 * MIB, kind=DeviceKind.PARTITION):
    path = tmp_path / "dev" / name
    path.parent.mkdir(exist_ok=True)
    path.write_bytes(bytes(size))
    return DeviceRef(path=str(path), kind=kind, size_bytes=size)


class TestBackup:
    """Test partition backups."""

    def test_backup_creates_archive_and_checksum(self, make_orchestrator, source_device, backup_root):
        """Test a successful backup leaves exactly one archive and one checksum."""
        result = make_orchestrator().backup(source_device)

        assert result.status is OperationStatus.SUCCESS
        assert result.ok
        assert archives_in(backup_root) == [result.archive.path]
        assert list(backup_root.glob("*.sha256")) == [result.archive.checksum_path]
        assert result.archive.path.name.endswith("_dev_sda1-2024-05-01_10-00-00.img.zst")
        assert not list(backup_root.glob("*.partial"))

    def test_archive_decompresses_to_source(self, make_orchestrator, source_device):
        """Test the archive holds the full source extent."""
        result = make_orchestrator().backup(source_device)

        restored = zlib.decompress(result.archive.path.read_bytes(), 31)
        with open(source_device.path, "rb") as handle:
            assert restored == handle.read()

    def test_compression_ratio_reported(self, make_orchestrator, source_device):
        """Test ratio is compressed/source*100 to two decimals."""
        result = make_orchestrator().backup(source_device)

        expected = round(result.archive.path.stat().st_size / source_device.size_bytes * 100, 2)
        assert result.compression_ratio == expected
        assert result.bytes_processed == source_device.size_bytes

    def test_backup_state_sequence(self, make_orchestrator, source_device):
        """Test a partition backup skips the confirmation gate."""
        orchestrator = make_orchestrator()
        orchestrator.backup(source_device)

        assert orchestrator.history == [
            OperationState.IDLE,
            OperationState.DEVICE_SELECTED,
            OperationState.BACKUP_RUNNING,
            OperationState.STREAMING,
            OperationState.FINALIZING,
            OperationState.IDLE,
        ]
        assert orchestrator.state is OperationState.IDLE

    def test_partition_backup_asks_no_confirmation(self, make_orchestrator, source_device, prompt):
        make_orchestrator().backup(source_device)
        assert prompt.requests == []

    def test_family_log_records_operation(self, make_orchestrator, source_device, backup_root):
        """Test the family log gets the start and completion lines."""
        make_orchestrator().backup(source_device)

        content = (backup_root / "partition-backup.log").read_text()
        assert "Starting backup of" in content
        assert "Backup completed" in content
        assert "Compression ratio" in content

    def test_family_log_is_appended(self, make_orchestrator, source_device, backup_root):
        orchestrator = make_orchestrator()
        orchestrator.backup(source_device)
        orchestrator.backup(source_device)

        content = (backup_root / "partition-backup.log").read_text()
        assert content.count("Backup completed") == 2

    def test_seven_backups_keep_five_newest(self, make_orchestrator, source_device, backup_root):
        """Test rotation keeps only the newest archives of the family."""
        orchestrator = make_orchestrator()
        created = [orchestrator.backup(source_device).archive.path for _ in range(7)]

        assert archives_in(backup_root) == sorted(created[-5:])
        assert len(list(backup_root.glob("*.sha256"))) == 5
        for removed in created[:2]:
            assert not removed.exists()
            assert not removed.with_name(removed.name + ".sha256").exists()

    def test_rotation_is_per_device(self, make_orchestrator, make_device, backup_root, config):
        """Test rotating one device never touches another device's archives."""
        other = make_device("sdb1", 1 * MIB)
        orchestrator = make_orchestrator(replace(config, retention_limit=1))
        orchestrator.backup(other)
        source = make_device("sda1", 1 * MIB)
        orchestrator.backup(source)
        orchestrator.backup(source)

        names = [path.name for path in archives_in(backup_root)]
        assert len(names) == 2
        assert any(name.startswith(other.path.replace("/", "_")) for name in names)

    def test_rotation_keeps_new_archive_after_clock_rollback(
        self, make_orchestrator, source_device, backup_root, config
    ):
        """Test a backup stamped earlier than its predecessor survives rotation."""
        clock = TickingClock(datetime(2024, 5, 1, 10, 0, 0), step=timedelta(hours=-1))
        orchestrator = make_orchestrator(replace(config, retention_limit=1), clock=clock)

        first = orchestrator.backup(source_device)
        second = orchestrator.backup(source_device)

        assert second.status is OperationStatus.SUCCESS
        assert second.archive.path.name.endswith("2024-05-01_09-00-00.img.zst")
        assert second.archive.path.exists()
        assert second.archive.checksum_path.exists()
        assert not first.archive.path.exists()
        assert archives_in(backup_root) == [second.archive.path]

    def test_interrupted_rotation_keeps_success(self, make_orchestrator, source_device, mocker):
        """Test Ctrl+C while rotating still reports the sealed archive."""
        orchestrator = make_orchestrator()
        mocker.patch.object(orchestrator.retention, "prune", side_effect=KeyboardInterrupt)

        result = orchestrator.backup(source_device)

        assert result.status is OperationStatus.SUCCESS
        assert result.archive.path.exists()
        assert result.archive.checksum_path.exists()
        assert any("Rotation interrupted" in warning for warning in result.warnings)
        assert orchestrator.state is OperationState.IDLE

    def test_retention_failure_is_warning(self, make_orchestrator, source_device, mocker):
        """Test a rotation failure does not fail the backup."""
        orchestrator = make_orchestrator()
        stuck = orchestrator.layout.root / "_dev_sda1-2024-01-01_00-00-00.img.zst"
        mocker.patch.object(
            orchestrator.retention, "prune", side_effect=RetentionFailureError([(stuck, "busy")])
        )
        result = orchestrator.backup(source_device)

        assert result.status is OperationStatus.SUCCESS
        assert any(stuck.name in warning for warning in result.warnings)

    def test_compressor_failure_leaves_nothing(self, make_orchestrator, source_device, backup_root):
        """Test a failed compressor yields StreamFailure and no archive or sidecars."""
        orchestrator = make_orchestrator(transform_factory=FakeTransformFactory(fail_compress=True))
        result = orchestrator.backup(source_device)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "StreamFailure"
        assert archives_in(backup_root) == []
        assert not list(backup_root.glob("*.sha256"))
        assert not list(backup_root.glob("*.sig"))
        assert not list(backup_root.glob("*.partial"))
        assert orchestrator.list_archives() == []
        assert orchestrator.state is OperationState.IDLE

    def test_failure_is_written_to_family_log(self, make_orchestrator, source_device, backup_root):
        make_orchestrator(transform_factory=FakeTransformFactory(fail_compress=True)).backup(source_device)

        content = (backup_root / "partition-backup.log").read_text()
        assert "Backup failed: [StreamFailure]" in content

    def test_compressor_failure_does_not_rotate(self, make_orchestrator, source_device, backup_root, config):
        """Test a failed backup never prunes the existing family."""
        orchestrator = make_orchestrator(replace(config, retention_limit=1))
        first = orchestrator.backup(source_device).archive.path
        orchestrator.transform_factory = FakeTransformFactory(fail_compress=True)
        orchestrator.backup(source_device)

        assert archives_in(backup_root) == [first]

    def test_interrupted_backup_is_cancelled_and_cleaned(
        self, make_orchestrator, source_device, backup_root, mocker
    ):
        """Test Ctrl+C during streaming cancels and removes partial output."""
        mocker.patch(
            "partition_backup.orchestrator.StreamPipeline.run", side_effect=KeyboardInterrupt
        )
        result = make_orchestrator().backup(source_device)

        assert result.status is OperationStatus.CANCELLED
        assert archives_in(backup_root) == []
        assert not list(backup_root.glob("*.partial"))

    def test_missing_source_is_device_unavailable(self, make_orchestrator, tmp_path, fake_factory):
        """Test a vanished source fails before streaming."""
        device = DeviceRef(path=str(tmp_path / "missing"), kind=DeviceKind.PARTITION)
        result = make_orchestrator().backup(device)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "DeviceUnavailable"

    def test_invalid_preset_is_configuration_error(
        self, make_orchestrator, source_device, config, backup_root
    ):
        """Test an unknown preset aborts before any device I/O."""
        orchestrator = make_orchestrator(replace(config, preset="turbo"))
        result = orchestrator.backup(source_device)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "ConfigurationError"
        assert orchestrator.history == [OperationState.IDLE, OperationState.IDLE]
        assert archives_in(backup_root) == []

    def test_missing_compressor_tool_fails_preflight(self, make_orchestrator, source_device):
        """Test a missing compression tool fails before reading the source."""
        orchestrator = make_orchestrator(transform_factory=CodecTransformFactory(which=lambda tool: None))
        result = orchestrator.backup(source_device)

        assert result.error_kind == "ConfigurationError"
        assert "zstd" in result.message

    def test_locked_root_is_refused(self, make_orchestrator, source_device, backup_root):
        """Test a second operation on a locked backup root fails fast."""
        with backup_root_lock(backup_root):
            result = make_orchestrator().backup(source_device)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "LockHeld"


class TestBackupSigning:
    """Test detached signatures on backup."""

    def test_signature_written_when_configured(self, make_orchestrator, source_device, config, fake_signer):
        config = replace(config, signing_enabled=True, signing_key_id="ABCDEF12")
        result = make_orchestrator(config).backup(source_device)

        assert result.archive.signature_path.exists()
        assert fake_signer.signed == [result.archive.path]

    def test_signing_skipped_without_key(self, make_orchestrator, source_device, config, fake_signer):
        config = replace(config, signing_enabled=True, signing_key_id="")
        result = make_orchestrator(config).backup(source_device)

        assert result.ok
        assert result.archive.signature_path is None
        assert fake_signer.signed == []

    def test_signing_failure_is_warning(self, make_orchestrator, source_device, config, backup_root):
        """Test a signing failure keeps the backup successful."""
        config = replace(config, signing_enabled=True, signing_key_id="ABCDEF12")
        orchestrator = make_orchestrator(config, integrity=IntegrityManager(signer=FakeSigner(fail_sign=True)))
        result = orchestrator.backup(source_device)

        assert result.status is OperationStatus.SUCCESS
        assert result.archive.signature_path is None
        assert not list(backup_root.glob("*.sig"))
        assert any("GPG signing failed" in warning for warning in result.warnings)


class TestWholeDiskBackup:
    """Test whole-disk backups."""

    def test_disk_backup_requires_retyped_path(self, make_orchestrator, disk_device, prompt):
        result = make_orchestrator().backup(disk_device)

        assert result.ok
        assert len(prompt.requests) == 1
        request = prompt.requests[0]
        assert request.kind is ConfirmationKind.RETYPE_DEVICE
        assert request.expected_response == disk_device.path

    def test_disk_archive_lives_in_disk_backup(self, make_orchestrator, disk_device, backup_root):
        result = make_orchestrator().backup(disk_device)

        assert result.archive.path.parent == backup_root / "disk_backup"
        assert result.archive.kind is DeviceKind.WHOLE_DISK
        assert (backup_root / "disk_backup" / "full-disk-backup.log").exists()

    def test_disk_backup_collects_snapshot(self, make_orchestrator, disk_device, mocker):
        """Test the metadata snapshot is taken into the archive's report directory."""
        collector = mocker.Mock()
        result = make_orchestrator(snapshot_collector=collector).backup(disk_device)

        report_dir = result.archive.path.with_name(
            result.archive.path.name.replace(".img.zst", "_reports")
        )
        collector.collect.assert_called_once_with(disk_device.path, report_dir, log=mocker.ANY)

    def test_disk_backup_state_sequence(self, make_orchestrator, disk_device):
        orchestrator = make_orchestrator()
        orchestrator.backup(disk_device)

        assert OperationState.CONFIRMING in orchestrator.history
        confirming = orchestrator.history.index(OperationState.CONFIRMING)
        assert orchestrator.history[confirming + 1] is OperationState.STREAMING

    def test_mounted_disk_requires_override(self, make_orchestrator, disk_device, prompt, mocker):
        """Test mounted partitions need OVERRIDE before the re-type gate."""
        mocker.patch(
            "partition_backup.storage.validation.active_mountpoints", return_value=["/mnt/data"]
        )
        result = make_orchestrator().backup(disk_device)

        assert result.ok
        assert [request.kind for request in prompt.requests] == [
            ConfirmationKind.MOUNTED_OVERRIDE,
            ConfirmationKind.RETYPE_DEVICE,
        ]
        assert prompt.requests[0].expected_response == OVERRIDE_PHRASE

    def test_declined_override_cancels(self, make_orchestrator, disk_device, backup_root, mocker):
        """Test declining the override writes nothing and takes no snapshot."""
        mocker.patch(
            "partition_backup.storage.validation.active_mountpoints", return_value=["/mnt/data"]
        )
        collector = mocker.Mock()
        result = make_orchestrator(prompt=RecordingPrompt(False), snapshot_collector=collector).backup(
            disk_device
        )

        assert result.status is OperationStatus.CANCELLED
        assert result.error_kind == "Cancelled"
        assert archives_in(backup_root / "disk_backup") == []
        collector.collect.assert_not_called()

    def test_failed_disk_backup_removes_report_dir(self, make_orchestrator, disk_device, backup_root):
        """Test the report directory of a failed backup is cleaned up.

        The disk fits in one 16 MiB read, so the compressor must fail on the
        first chunk.
        """

        class WritingCollector:
            def __init__(self):
                self.written = []

            def collect(self, device_path, report_dir, log=None):
                report_dir.mkdir(parents=True)
                (report_dir / "blkid.txt").write_text("blkid")
                self.written.append(report_dir)

        collector = WritingCollector()
        orchestrator = make_orchestrator(
            snapshot_collector=collector,
            transform_factory=FakeTransformFactory(fail_compress=True, fail_after=0),
        )
        result = orchestrator.backup(disk_device)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "StreamFailure"
        assert len(collector.written) == 1
        assert not collector.written[0].exists()
        assert archives_in(backup_root / "disk_backup") == []
        assert not list((backup_root / "disk_backup").glob("*_reports"))


class TestRestore:
    """Test restores."""

    @pytest.fixture
    def archive(self, make_orchestrator, source_device):
        return make_orchestrator().backup(source_device).archive

    def test_restore_writes_source_content(self, make_orchestrator, archive, source_device, tmp_path):
        """Test a restore reproduces the original partition bytes."""
        target = make_target(tmp_path)
        result = make_orchestrator().restore(archive.path, target)

        assert result.status is OperationStatus.SUCCESS
        with open(source_device.path, "rb") as handle:
            assert (tmp_path / "dev" / "sdb1").read_bytes() == handle.read()
        assert result.bytes_processed == source_device.size_bytes

    def test_restore_requires_retyped_target(self, make_orchestrator, archive, tmp_path, prompt):
        target = make_target(tmp_path)
        make_orchestrator().restore(archive.path, target)

        assert prompt.requests[-1].kind is ConfirmationKind.RETYPE_DEVICE
        assert prompt.requests[-1].expected_response == target.path

    def test_restore_waits_for_countdown(self, make_orchestrator, archive, tmp_path, config, mocker):
        sleep = mocker.Mock()
        make_orchestrator(replace(config, restore_delay_seconds=5), sleep=sleep).restore(
            archive.path, make_target(tmp_path)
        )
        sleep.assert_called_once_with(5)

    def test_restore_state_sequence(self, make_orchestrator, archive, tmp_path):
        orchestrator = make_orchestrator()
        orchestrator.restore(archive.path, make_target(tmp_path))

        assert orchestrator.history == [
            OperationState.IDLE,
            OperationState.DEVICE_SELECTED,
            OperationState.RESTORE_SELECTING,
            OperationState.VERIFYING,
            OperationState.CONFIRMING,
            OperationState.STREAMING,
            OperationState.FINALIZING,
            OperationState.IDLE,
        ]

    def test_restore_never_rotates(self, make_orchestrator, archive, tmp_path, mocker):
        orchestrator = make_orchestrator()
        prune = mocker.patch.object(orchestrator.retention, "prune")
        orchestrator.restore(archive.path, make_target(tmp_path))
        prune.assert_not_called()

    def test_tampered_checksum_blocks_restore(self, make_orchestrator, archive, tmp_path, prompt, mocker):
        """Test a modified digest fails with IntegrityMismatch and writes nothing."""
        checksum = archive.checksum_path
        content = checksum.read_text()
        flipped = "0" if content[0] != "0" else "1"
        checksum.write_text(flipped + content[1:])
        target = make_target(tmp_path)
        pipeline = mocker.patch("partition_backup.orchestrator.StreamPipeline")
        prompt.requests.clear()

        result = make_orchestrator().restore(archive.path, target)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "IntegrityMismatch"
        pipeline.assert_not_called()
        assert prompt.requests == []
        assert (tmp_path / "dev" / "sdb1").read_bytes() == bytes(8 * MIB)

    def test_tampered_archive_blocks_restore(self, make_orchestrator, archive, tmp_path):
        with open(archive.path, "r+b") as handle:
            handle.seek(10)
            handle.write(b"\xff")
        result = make_orchestrator().restore(archive.path, make_target(tmp_path))

        assert result.error_kind == "IntegrityMismatch"

    def test_missing_checksum_is_warning(self, make_orchestrator, archive, tmp_path):
        """Test an archive without a checksum sidecar stays restorable."""
        archive.checksum_path.unlink()
        result = make_orchestrator().restore(archive.path, make_target(tmp_path))

        assert result.status is OperationStatus.SUCCESS
        assert any("Checksum file not found" in warning for warning in result.warnings)

    def test_missing_signature_blocks_restore(self, make_orchestrator, archive, tmp_path, config, mocker):
        """Test signing enabled with no .sig fails and leaves the target untouched."""
        target = make_target(tmp_path)
        pipeline = mocker.patch("partition_backup.orchestrator.StreamPipeline")
        config = replace(config, signing_enabled=True, signing_key_id="ABCDEF12")
        result = make_orchestrator(config).restore(archive.path, target)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "IntegrityMismatch"
        assert "signature" in result.message
        pipeline.assert_not_called()
        assert (tmp_path / "dev" / "sdb1").read_bytes() == bytes(8 * MIB)

    def test_signed_archive_is_verified(self, make_orchestrator, source_device, tmp_path, config, fake_signer):
        config = replace(config, signing_enabled=True, signing_key_id="ABCDEF12")
        orchestrator = make_orchestrator(config)
        archive = orchestrator.backup(source_device).archive
        result = orchestrator.restore(archive.path, make_target(tmp_path))

        assert result.ok
        assert fake_signer.verified == [archive.path]

    def test_bad_signature_blocks_restore(self, make_orchestrator, source_device, tmp_path, config):
        config = replace(config, signing_enabled=True, signing_key_id="ABCDEF12")
        orchestrator = make_orchestrator(config)
        archive = orchestrator.backup(source_device).archive
        archive.signature_path.write_bytes(b"forged")
        result = orchestrator.restore(archive.path, make_target(tmp_path))

        assert result.error_kind == "IntegrityMismatch"

    def test_declined_confirmation_cancels(self, make_orchestrator, archive, tmp_path):
        target = make_target(tmp_path)
        result = make_orchestrator(prompt=RecordingPrompt(False)).restore(archive.path, target)

        assert result.status is OperationStatus.CANCELLED
        assert (tmp_path / "dev" / "sdb1").read_bytes() == bytes(8 * MIB)

    def test_interrupted_countdown_cancels(self, make_orchestrator, archive, tmp_path, config, mocker):
        """Test Ctrl+C during the countdown cancels before writing."""
        sleep = mocker.Mock(side_effect=KeyboardInterrupt)
        result = make_orchestrator(replace(config, restore_delay_seconds=5), sleep=sleep).restore(
            archive.path, make_target(tmp_path)
        )

        assert result.status is OperationStatus.CANCELLED
        assert (tmp_path / "dev" / "sdb1").read_bytes() == bytes(8 * MIB)

    def test_unsupported_extension_fails_preflight(self, make_orchestrator, tmp_path, prompt):
        """Test an unknown archive format is refused before the target is checked."""
        bogus = tmp_path / "backup.img.bz2"
        bogus.write_bytes(b"data")
        result = make_orchestrator().restore(bogus, make_target(tmp_path))

        assert result.error_kind == "ConfigurationError"
        assert "Unsupported backup format" in result.message
        assert prompt.requests == []

    def test_missing_archive_fails(self, make_orchestrator, tmp_path):
        result = make_orchestrator().restore(tmp_path / "gone.img.zst", make_target(tmp_path))
        assert result.error_kind == "DeviceUnavailable"

    def test_too_small_target_is_stream_failure(self, make_orchestrator, archive, tmp_path):
        """Test a target smaller than the image fails mid-stream."""
        target = make_target(tmp_path, size=1 * MIB)
        result = make_orchestrator().restore(archive.path, target)

        assert result.status is OperationStatus.FAILED
        assert result.error_kind == "StreamFailure"

    def test_mounted_target_is_refused(self, make_orchestrator, archive, tmp_path, mocker):
        mocker.patch(
            "partition_backup.storage.validation.active_mountpoints", return_value=["/media/usb"]
        )
        result = make_orchestrator().restore(archive.path, make_target(tmp_path))

        assert result.error_kind == "DeviceUnavailable"
        assert "mounted" in result.message


class TestWholeDiskRestore:
    """Test whole-disk restores."""

    @pytest.fixture
    def disk_archive(self, make_orchestrator, disk_device):
        return make_orchestrator().backup(disk_device).archive

    def test_disk_restore_requires_acknowledgement(self, make_orchestrator, disk_archive, tmp_path, prompt):
        target = make_target(tmp_path, "sdb", kind=DeviceKind.WHOLE_DISK)
        prompt.requests.clear()
        result = make_orchestrator().restore(disk_archive, target)

        assert result.ok
        assert prompt.requests[0].kind is ConfirmationKind.DESTRUCTIVE_ACK
        assert prompt.requests[0].expected_response == DESTRUCTIVE_PHRASE

    def test_disk_restore_syncs_filesystems(self, make_orchestrator, disk_archive, tmp_path, mocker):
        sync = mocker.patch("partition_backup.pipeline.streaming.os.sync")
        target = make_target(tmp_path, "sdb", kind=DeviceKind.WHOLE_DISK)
        make_orchestrator().restore(disk_archive.path, target)
        sync.assert_called_once()

    def test_disk_restore_logs_uefi_hint(self, make_orchestrator, disk_archive, tmp_path, backup_root):
        target = make_target(tmp_path, "sdb", kind=DeviceKind.WHOLE_DISK)
        make_orchestrator().restore(disk_archive.path, target)

        content = (backup_root / "disk_backup" / "full-disk-backup.log").read_text()
        assert "UEFI" in content

    def test_disk_archive_onto_partition_is_refused(self, make_orchestrator, disk_archive, tmp_path):
        result = make_orchestrator().restore(disk_archive.path, make_target(tmp_path))

        assert result.error_kind == "DeviceUnavailable"
        assert "whole disk" in result.message


class TestListArchives:
    """Test archive browsing."""

    def test_lists_newest_first(self, make_orchestrator, source_device):
        orchestrator = make_orchestrator()
        created = [orchestrator.backup(source_device).archive.path for _ in range(3)]

        assert [archive.path for archive in orchestrator.list_archives()] == created[::-1]

    def test_listing_never_deletes(self, make_orchestrator, source_device, config, backup_root):
        orchestrator = make_orchestrator()
        for _ in range(3):
            orchestrator.backup(source_device)
        strict = make_orchestrator(replace(config, retention_limit=1))
        strict.list_archives()

        assert len(archives_in(backup_root)) == 3

    def test_lists_disk_archives_separately(self, make_orchestrator, source_device, disk_device):
        orchestrator = make_orchestrator()
        orchestrator.backup(source_device)
        orchestrator.backup(disk_device)

        assert len(orchestrator.list_archives(DeviceKind.PARTITION)) == 1
        assert len(orchestrator.list_archives(DeviceKind.WHOLE_DISK)) == 1


class TestCompressionRatio:
    def test_two_decimals(self):
        assert compression_ratio(1234, 10000) == 12.34
        assert compression_ratio(1, 3) == 33.33

    def test_zero_source(self):
        assert compression_ratio(10, 0) == 0.0


@pytest.mark.skipif(shutil.which("zstd") is None, reason="zstd not installed")
class TestRealZstd:
    """End-to-end run through the real zstd binary."""

    def test_hundred_mib_backup_round_trips(self, make_orchestrator, make_device, backup_root):
        """Test a 100 MiB zstd/fast backup into an empty family."""
        device = make_device("sdc1", 100 * MIB)
        result = make_orchestrator(transform_factory=CodecTransformFactory()).backup(device)

        assert result.ok
        assert archives_in(backup_root) == [result.archive.path]
        assert len(list(backup_root.glob("*.sha256"))) == 1
        decompressed = subprocess.run(
            ["zstd", "-d", "-c", str(result.archive.path)], capture_output=True, check=True
        ).stdout
        with open(device.path, "rb") as handle:
            assert decompressed == handle.read()
        expected = round(result.archive.path.stat().st_size / (100 * MIB) * 100, 2)
        assert result.compression_ratio == expected

    def test_restore_through_real_zstd(self, make_orchestrator, source_device, tmp_path):
        orchestrator = make_orchestrator(transform_factory=CodecTransformFactory())
        archive = orchestrator.backup(source_device).archive
        target = make_target(tmp_path)
        result = orchestrator.restore(archive.path, target)

        assert result.ok
        with open(source_device.path, "rb") as handle:
            assert (tmp_path / "dev" / "sdb1").read_bytes() == handle.read()


class TestHundredMibScenario:
    def test_hundred_mib_backup_with_fake_compressor(self, make_orchestrator, tmp_path, backup_root):
        """Test the 100 MiB scenario through the in-process compressor."""
        path = write_synthetic_image(tmp_path / "disk.img", 100 * MIB)
        device = DeviceRef(path=str(path), kind=DeviceKind.PARTITION)
        result = make_orchestrator().backup(device)

        assert result.ok
        assert len(archives_in(backup_root)) == 1
        assert len(list(backup_root.glob("*.sha256"))) == 1
        assert zlib.decompress(result.archive.path.read_bytes(), 31) == path.read_bytes()
        assert result.compression_ratio == round(
            result.archive.path.stat().st_size / (100 * MIB) * 100, 2
        )
