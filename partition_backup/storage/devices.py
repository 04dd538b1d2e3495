"""Block device discovery and sizing using lsblk and blockdev.

Device Detection:
    Uses lsblk with JSON output (``lsblk -J -b -p``) to enumerate block
    devices and flattens the tree into DeviceRef values:
    - Full device path (e.g., /dev/sda1)
    - Size in bytes
    - Kind: whole disk or partition
    - Mountpoints of the device and, for disks, of all its partitions

Sizing:
    get_device_size() asks ``blockdev --getsize64`` for block device nodes
    and falls back to seeking to the end of the file, which also works for
    regular image files used in place of a device.

Mount State:
    active_mountpoints() reads /proc/mounts at call time, so it reflects the
    current state rather than the state at enumeration time.

Example:
    >>> from partition_backup.storage.devices import list_partitions
    >>> for device in list_partitions():
    ...     print(device.path, human_size(device.size_bytes))
    /dev/sda1 256.0MB
"""

from __future__ import annotations

import json
import os
import re
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Callable, Iterable, Optional

import psutil

from partition_backup.domain.models import DeviceKind, DeviceRef
from partition_backup.logging import LoggerFactory

log = LoggerFactory.for_devices()

PROC_MOUNTS = Path("/proc/mounts")
LSBLK_COLUMNS = "NAME,SIZE,TYPE,MOUNTPOINT"

Runner = Callable[..., subprocess.CompletedProcess]


def run_command(command, runner: Runner = subprocess.run, check=True):
    log.debug(f"Running command: {' '.join(command)}")
    result = runner(command, check=check, text=True, capture_output=True)
    if result.stderr:
        log.debug(f"stderr: {result.stderr.strip()}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_device_label(device: DeviceRef) -> str:
    size_label = re.sub(r"\.0([A-Z])", r"\1", human_size(device.size_bytes))
    label = f"{device.path} {size_label}"
    if device.mountpoints:
        label = f"{label} {','.join(device.mountpoints)}"
    return label


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def _collect_mountpoints(device: dict) -> list[str]:
    mountpoints: list[str] = []
    mountpoint = device.get("mountpoint")
    if mountpoint:
        mountpoints.append(mountpoint)
    for child in get_children(device):
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


def parse_lsblk_output(output: str) -> list[DeviceRef]:
    """Flatten ``lsblk -J -b -p`` output into disks and partitions."""
    data = json.loads(output)
    refs: list[DeviceRef] = []

    def visit(device: dict) -> None:
        device_type = device.get("type")
        path = device.get("name") or ""
        size = device.get("size")
        if device_type in ("disk", "part") and path:
            kind = DeviceKind.WHOLE_DISK if device_type == "disk" else DeviceKind.PARTITION
            if kind is DeviceKind.WHOLE_DISK:
                mountpoints = _collect_mountpoints(device)
            else:
                mountpoints = [device["mountpoint"]] if device.get("mountpoint") else []
            refs.append(
                DeviceRef(
                    path=path if path.startswith("/dev/") else f"/dev/{path}",
                    kind=kind,
                    size_bytes=int(size) if size is not None else None,
                    mountpoints=tuple(mountpoints),
                )
            )
        for child in get_children(device):
            visit(child)

    for device in data.get("blockdevices", []):
        visit(device)
    return refs


def list_block_devices(runner: Runner = subprocess.run) -> list[DeviceRef]:
    """Return every disk and partition reported by lsblk.

    lsblk failures are logged and yield an empty list.
    """
    try:
        result = run_command(["lsblk", "-J", "-b", "-p", "-o", LSBLK_COLUMNS], runner=runner)
        return parse_lsblk_output(result.stdout)
    except (OSError, subprocess.CalledProcessError, json.JSONDecodeError) as error:
        log.warning(f"lsblk failed: {error}")
        return []


def list_partitions(runner: Runner = subprocess.run) -> list[DeviceRef]:
    return [d for d in list_block_devices(runner) if d.kind is DeviceKind.PARTITION]


def list_disks(runner: Runner = subprocess.run) -> list[DeviceRef]:
    return [d for d in list_block_devices(runner) if d.kind is DeviceKind.WHOLE_DISK]


def find_device(path: str, devices: Iterable[DeviceRef]) -> Optional[DeviceRef]:
    for device in devices:
        if device.path == path:
            return device
    return None


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def get_device_size(path: str, runner: Runner = subprocess.run) -> int:
    """Size of a device node or image file in bytes.

    Raises:
        OSError: If the path cannot be opened or measured
    """
    if is_block_device(path) and shutil.which("blockdev"):
        try:
            result = run_command(["blockdev", "--getsize64", path], runner=runner)
            return int(result.stdout.strip())
        except (subprocess.CalledProcessError, ValueError) as error:
            log.debug(f"blockdev failed for {path}: {error}")
    with open(path, "rb") as handle:
        return handle.seek(0, os.SEEK_END)


def _partition_of(source: str, device_path: str) -> bool:
    if source == device_path:
        return True
    if not source.startswith(device_path):
        return False
    return re.fullmatch(r"p?\d+", source[len(device_path):]) is not None


def active_mountpoints(device_path: str, mounts_file: Path = PROC_MOUNTS) -> list[str]:
    """Mountpoints currently backed by a device or any of its partitions."""
    try:
        lines = mounts_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    real_path = os.path.realpath(device_path)
    mountpoints = []
    for line in lines:
        parts = line.split()
        if len(parts) < 2:
            continue
        source = parts[0]
        if _partition_of(source, device_path) or _partition_of(source, real_path):
            mountpoints.append(parts[1].replace("\\040", " "))
    return mountpoints


def free_space(path: Path) -> int:
    return psutil.disk_usage(str(path)).free
