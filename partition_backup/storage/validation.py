"""Pre-flight validation for backup and restore.

Every check runs immediately before the step that needs it, not when the
device was picked: a device can disappear, get mounted, or change size in
between. All functions raise DeviceUnavailableError instead of returning
booleans so the orchestrator can stop before any device I/O.

Example:
    from partition_backup.storage.validation import revalidate_source

    device = revalidate_source(selected_device)
    # device.size_bytes is now the current size
"""

import os
from dataclasses import replace
from pathlib import Path

from partition_backup.domain.models import DeviceKind, DeviceRef

from .devices import active_mountpoints, get_device_size
from .exceptions import DeviceUnavailableError


def validate_device_present(device: DeviceRef) -> None:
    if not device.path:
        raise DeviceUnavailableError("(empty path)", "no device selected")
    if not os.path.exists(device.path):
        raise DeviceUnavailableError(device.path, "device not present")


def _measure(device: DeviceRef) -> int:
    try:
        size = get_device_size(device.path)
    except OSError as error:
        raise DeviceUnavailableError(device.path, f"cannot determine size: {error}") from error
    if size <= 0:
        raise DeviceUnavailableError(device.path, "device reports zero size")
    return size


def revalidate_source(device: DeviceRef) -> DeviceRef:
    """Confirm a backup source is present and readable; refresh size and mounts.

    Raises:
        DeviceUnavailableError: If the source is missing or unreadable
    """
    validate_device_present(device)
    if not os.access(device.path, os.R_OK):
        raise DeviceUnavailableError(device.path, "no read permission")
    return replace(
        device,
        size_bytes=_measure(device),
        mountpoints=tuple(active_mountpoints(device.path)),
    )


def revalidate_target(device: DeviceRef) -> DeviceRef:
    """Confirm a restore target is present, writable and unmounted.

    A mounted target is refused, which also rules out the device that holds
    the archive being restored.

    Raises:
        DeviceUnavailableError: If any check fails
    """
    validate_device_present(device)
    if not device.path.startswith("/dev/") and not os.path.isfile(device.path):
        raise DeviceUnavailableError(device.path, "not a device node")
    if not os.access(device.path, os.W_OK):
        raise DeviceUnavailableError(device.path, "no write permission")
    mountpoints = active_mountpoints(device.path)
    if mountpoints:
        raise DeviceUnavailableError(device.path, f"mounted at {', '.join(mountpoints)}")
    return replace(device, size_bytes=_measure(device), mountpoints=())


def validate_restore_kind(archive_kind: DeviceKind, target: DeviceRef) -> None:
    """Whole-disk images only go to whole disks, partition images to partitions."""
    if archive_kind is not target.kind:
        expected = "whole disk" if archive_kind is DeviceKind.WHOLE_DISK else "partition"
        raise DeviceUnavailableError(target.path, f"target must be a {expected}")


def validate_backup_directory(directory: Path) -> Path:
    """Create the archive directory if needed and check it is writable.

    Raises:
        DeviceUnavailableError: If it cannot be created or written
    """
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise DeviceUnavailableError(str(directory), f"cannot create backup folder: {error}") from error
    if not os.access(directory, os.W_OK):
        raise DeviceUnavailableError(str(directory), "no write permission")
    return directory
