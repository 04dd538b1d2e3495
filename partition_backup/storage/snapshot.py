"""Best-effort metadata capture alongside whole-disk images.

Before a whole-disk image is streamed, a report directory named after the
archive (``<basename>_reports``) receives text dumps of the partition
table, block device and filesystem listings, firmware boot entries, a
binary GPT header backup, and software RAID descriptors. Every step is
optional: a missing tool or a failing command is logged and skipped.
These files are informational only and are not part of the integrity
chain.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from partition_backup.logging import LoggerFactory

CAPTURE_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class SnapshotStep:
    """One capture command.

    ``{device}`` and ``{output}`` in the command are replaced with the disk
    path and the output file path. When ``stdout_to_file`` is set the
    command's stdout is written to the output file; otherwise the command
    writes the file itself.
    """

    name: str
    filename: str
    command: tuple[str, ...]
    stdout_to_file: bool = True

    @property
    def tool(self) -> str:
        return self.command[0]

    def render(self, device: str, output: Path) -> list[str]:
        return [part.format(device=device, output=output) for part in self.command]


DEFAULT_STEPS: tuple[SnapshotStep, ...] = (
    SnapshotStep("partition table", "partition-table.sfdisk", ("sfdisk", "-d", "{device}")),
    SnapshotStep(
        "block devices",
        "lsblk.txt",
        ("lsblk", "-e7", "-o", "NAME,TYPE,SIZE,FSTYPE,LABEL,UUID,MOUNTPOINT"),
    ),
    SnapshotStep("filesystem ids", "blkid.txt", ("blkid",)),
    SnapshotStep("efi boot entries", "efibootmgr.txt", ("efibootmgr", "-v")),
    SnapshotStep(
        "gpt header backup",
        "gpt-backup.bin",
        ("sgdisk", "--backup={output}", "{device}"),
        stdout_to_file=False,
    ),
    SnapshotStep("raid descriptors", "mdadm.conf", ("mdadm", "--detail", "--scan")),
)


@dataclass
class SnapshotReport:
    report_dir: Path
    captured: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


class MetadataSnapshotCollector:
    def __init__(
        self,
        steps: Sequence[SnapshotStep] = DEFAULT_STEPS,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.steps = tuple(steps)
        self._runner = runner
        self._which = which

    def collect(self, device_path: str, report_dir: Path, log=None) -> SnapshotReport:
        """Run every capture step into ``report_dir``. Never raises."""
        log = log or LoggerFactory.for_devices()
        report = SnapshotReport(report_dir=report_dir)
        try:
            report_dir.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            log.warning(f"Could not create report directory {report_dir}: {error}")
            report.skipped.update({step.name: str(error) for step in self.steps})
            return report

        for step in self.steps:
            reason = self._capture(step, device_path, report_dir, log)
            if reason is None:
                report.captured.append(step.filename)
            else:
                report.skipped[step.name] = reason
        log.info(f"Reports saved to: {report_dir}")
        return report

    def _capture(self, step: SnapshotStep, device_path: str, report_dir: Path, log) -> Optional[str]:
        if not self._which(step.tool):
            log.debug(f"Skipping {step.name}: {step.tool} not installed")
            return f"{step.tool} not installed"

        output = report_dir / step.filename
        command = step.render(device_path, output)
        log.debug(f"Running command: {' '.join(command)}")
        try:
            result = self._runner(
                command,
                capture_output=True,
                timeout=CAPTURE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            log.warning(f"Skipping {step.name}: {error}")
            output.unlink(missing_ok=True)
            return str(error)

        if result.returncode != 0:
            stderr = (result.stderr or b"").decode("utf-8", errors="replace").strip()
            log.warning(f"Skipping {step.name}: {step.tool} exited {result.returncode} {stderr}".rstrip())
            output.unlink(missing_ok=True)
            return f"exit status {result.returncode}"

        if step.stdout_to_file:
            try:
                output.write_bytes(result.stdout or b"")
            except OSError as error:
                log.warning(f"Skipping {step.name}: {error}")
                return str(error)
        return None
