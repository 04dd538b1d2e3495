"""Tests for whole-disk metadata capture."""

import subprocess
from unittest.mock import Mock

from partition_backup.storage.snapshot import DEFAULT_STEPS, MetadataSnapshotCollector, SnapshotStep


def completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


class TestMetadataSnapshotCollector:
    """Test best-effort report capture."""

    def test_captures_stdout_to_files(self, tmp_path):
        runner = Mock(return_value=completed(stdout=b"label: gpt\n"))
        collector = MetadataSnapshotCollector(runner=runner, which=lambda tool: f"/sbin/{tool}")
        report_dir = tmp_path / "_dev_sda-2024-05-01_10-00-00_reports"

        report = collector.collect("/dev/sda", report_dir)

        assert (report_dir / "partition-table.sfdisk").read_bytes() == b"label: gpt\n"
        assert (report_dir / "lsblk.txt").exists()
        assert (report_dir / "blkid.txt").exists()
        assert (report_dir / "efibootmgr.txt").exists()
        assert report.skipped == {}
        assert len(report.captured) == len(DEFAULT_STEPS)

    def test_device_and_output_substituted(self, tmp_path):
        runner = Mock(return_value=completed())
        MetadataSnapshotCollector(runner=runner, which=lambda tool: tool).collect("/dev/sda", tmp_path)

        commands = [call.args[0] for call in runner.call_args_list]
        assert ["sfdisk", "-d", "/dev/sda"] in commands
        assert ["sgdisk", f"--backup={tmp_path / 'gpt-backup.bin'}", "/dev/sda"] in commands

    def test_missing_tool_is_skipped(self, tmp_path):
        runner = Mock(return_value=completed())
        collector = MetadataSnapshotCollector(
            runner=runner, which=lambda tool: None if tool == "efibootmgr" else tool
        )
        report = collector.collect("/dev/sda", tmp_path)

        assert "efi boot entries" in report.skipped
        assert not (tmp_path / "efibootmgr.txt").exists()
        assert all(call.args[0][0] != "efibootmgr" for call in runner.call_args_list)

    def test_failing_command_is_skipped(self, tmp_path):
        """Test a failing tool never raises and leaves no partial file."""
        steps = (SnapshotStep("raid descriptors", "mdadm.conf", ("mdadm", "--detail", "--scan")),)
        runner = Mock(return_value=completed(returncode=1, stderr=b"mdadm: No arrays found"))
        report = MetadataSnapshotCollector(steps, runner=runner, which=lambda tool: tool).collect(
            "/dev/sda", tmp_path
        )

        assert report.skipped == {"raid descriptors": "exit status 1"}
        assert not (tmp_path / "mdadm.conf").exists()

    def test_timeout_is_skipped(self, tmp_path):
        runner = Mock(side_effect=subprocess.TimeoutExpired(["blkid"], 30))
        steps = (SnapshotStep("filesystem ids", "blkid.txt", ("blkid",)),)
        report = MetadataSnapshotCollector(steps, runner=runner, which=lambda tool: tool).collect(
            "/dev/sda", tmp_path
        )
        assert "filesystem ids" in report.skipped

    def test_unwritable_report_dir(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        report = MetadataSnapshotCollector(runner=Mock(), which=lambda tool: tool).collect(
            "/dev/sda", blocker / "reports"
        )
        assert set(report.skipped) == {step.name for step in DEFAULT_STEPS}
