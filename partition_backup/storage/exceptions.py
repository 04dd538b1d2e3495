"""Custom exceptions for backup and restore operations.

This module defines a hierarchy of exceptions so the orchestrator can tell
fatal failures apart from the ones that only produce a warning.

Exception Hierarchy:
    BackupToolError (base)
        ├── ConfigurationError        fatal, raised before any device I/O
        ├── DeviceUnavailableError    fatal, raised before any device I/O
        ├── StreamFailureError        fatal, aborts the running pipeline
        ├── IntegrityMismatchError    fatal, blocks a restore before writing
        ├── SigningFailureError       non-fatal, backup still succeeds
        ├── RetentionFailureError     non-fatal, surfaced as a warning
        ├── OperationCancelledError   operator declined or interrupted
        └── LockHeldError             another run holds the backup root

Usage:
    from partition_backup.storage.exceptions import DeviceUnavailableError

    if not os.path.exists(device.path):
        raise DeviceUnavailableError(device.path, "device not present")
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class BackupToolError(Exception):
    """Base exception for all backup and restore operations."""

    kind = "BackupToolError"
    fatal = True


class ConfigurationError(BackupToolError):
    """Unresolvable algorithm/preset, invalid retention limit or bad setting."""

    kind = "ConfigurationError"


class DeviceUnavailableError(BackupToolError):
    """Source or target is missing, mounted, or not accessible."""

    kind = "DeviceUnavailable"

    def __init__(self, device: str, reason: str):
        self.device = device
        self.reason = reason
        super().__init__(f"Device {device} unavailable: {reason}")


class StreamFailureError(BackupToolError):
    """A pipeline stage failed while bytes were in flight."""

    kind = "StreamFailure"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        returncode: Optional[int] = None,
    ):
        self.stage = stage
        self.returncode = returncode
        super().__init__(message)


class IntegrityMismatchError(BackupToolError):
    """Checksum or signature verification failed for an archive."""

    kind = "IntegrityMismatch"

    def __init__(self, archive: Path | str, check: str, reason: str):
        self.archive = Path(archive)
        self.check = check
        self.reason = reason
        super().__init__(f"{check} verification failed for {self.archive.name}: {reason}")


class SigningFailureError(BackupToolError):
    """The signing tool could not produce a detached signature."""

    kind = "SigningFailure"
    fatal = False


class RetentionFailureError(BackupToolError):
    """One or more over-limit archives could not be deleted."""

    kind = "RetentionFailure"
    fatal = False

    def __init__(self, failures: Sequence[tuple[Path, str]]):
        self.failures = list(failures)
        names = ", ".join(path.name for path, _ in self.failures)
        super().__init__(f"Failed to remove old archives: {names}")


class OperationCancelledError(BackupToolError):
    """The operator declined a confirmation gate or interrupted the run."""

    kind = "Cancelled"


class LockHeldError(BackupToolError):
    """Another process holds the advisory lock on the backup root."""

    kind = "LockHeld"

    def __init__(self, root: Path | str):
        self.root = Path(root)
        super().__init__(f"Backup root {self.root} is locked by another operation")
