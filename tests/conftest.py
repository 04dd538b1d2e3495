"""
Pytest configuration and shared fixtures for partition-backup tests.

Regular files under ``tmp_path`` stand in for block devices: every check the
tool performs (existence, permissions, size, /proc/mounts) works on them.
Compression runs in-process through zlib-backed fakes of the StreamTransform
protocol unless a test explicitly asks for the real tools.
"""

import json
import os
import zlib
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List

import pytest

from partition_backup.config.settings import Configuration
from partition_backup.domain.models import DeviceKind, DeviceRef
from partition_backup.integrity import IntegrityManager
from partition_backup.orchestrator import ConfirmationRequest, Orchestrator
from partition_backup.storage.exceptions import IntegrityMismatchError, SigningFailureError, StreamFailureError

MIB = 1024 * 1024
GZIP_WBITS = 31


# ==============================================================================
# Capability Fakes
# ==============================================================================


class ZlibTransform:
    """In-process gzip stream filter implementing StreamTransform."""

    def __init__(self, mode: str = "compress", level: int = 1):
        self.mode = mode
        self.level = level
        self.name = f"zlib-{mode}"
        self.cancelled = False
        self.chunks_seen = 0

    def run(self, chunks, emit) -> None:
        if self.mode == "compress":
            codec = zlib.compressobj(self.level, zlib.DEFLATED, GZIP_WBITS)
            process = codec.compress
        else:
            codec = zlib.decompressobj(GZIP_WBITS)
            process = codec.decompress
        for chunk in chunks:
            self.chunks_seen += 1
            output = process(chunk)
            if output:
                emit(output)
        tail = codec.flush()
        if tail:
            emit(tail)

    def cancel(self) -> None:
        self.cancelled = True


class FailingTransform:
    """Pass ``fail_after`` chunks through, then fail like a crashed compressor."""

    name = "failing-compress"

    def __init__(self, fail_after: int = 1):
        self.fail_after = fail_after
        self.cancelled = False

    def run(self, chunks, emit) -> None:
        for index, chunk in enumerate(chunks):
            if index >= self.fail_after:
                raise StreamFailureError(
                    "failing-compress exited with status 1: simulated crash",
                    stage=self.name,
                    returncode=1,
                )
            emit(chunk)

    def cancel(self) -> None:
        self.cancelled = True


class FakeTransformFactory:
    """Hands out zlib transforms; can be told to make compression fail."""

    def __init__(self, fail_compress: bool = False, fail_after: int = 1):
        self.fail_compress = fail_compress
        self.fail_after = fail_after
        self.built: List[Any] = []

    def compressor(self, spec):
        transform = FailingTransform(self.fail_after) if self.fail_compress else ZlibTransform("compress")
        self.built.append(transform)
        return transform

    def decompressor(self, algorithm):
        transform = ZlibTransform("decompress")
        self.built.append(transform)
        return transform


class FakeSigner:
    """Signer writing a fixed marker; verify accepts only that marker."""

    MARKER = b"fake-signature"

    def __init__(self, fail_sign: bool = False):
        self.fail_sign = fail_sign
        self.signed: List[Path] = []
        self.verified: List[Path] = []

    def sign(self, archive_path: Path, signature_path: Path, key_id: str) -> None:
        if self.fail_sign:
            raise SigningFailureError("GPG signing failed: no secret key")
        signature_path.write_bytes(self.MARKER)
        self.signed.append(archive_path)

    def verify(self, archive_path: Path, signature_path: Path) -> None:
        self.verified.append(archive_path)
        if signature_path.read_bytes() != self.MARKER:
            raise IntegrityMismatchError(archive_path, "signature", "BAD signature")


class RecordingPrompt:
    """ConfirmationPrompt answering from a script and recording every request."""

    def __init__(self, *answers: bool, default: bool = True):
        self.answers = list(answers)
        self.default = default
        self.requests: List[ConfirmationRequest] = []

    def confirm(self, request: ConfirmationRequest) -> bool:
        self.requests.append(request)
        if self.answers:
            return self.answers.pop(0)
        return self.default


class TickingClock:
    """datetime.now replacement advancing one minute per call."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 10, 0, 0), step=timedelta(minutes=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        moment = self.current
        self.current = moment + self.step
        return moment


# ==============================================================================
# Device Fixtures
# ==============================================================================


def write_synthetic_image(path: Path, size: int) -> Path:
    """Write ``size`` bytes that compress well but are not all zeros."""
    block = (os.urandom(4096) + bytes(60 * 1024)) * 16  # 1 MiB
    with open(path, "wb") as handle:
        remaining = size
        while remaining > 0:
            piece = block[: min(len(block), remaining)]
            handle.write(piece)
            remaining -= len(piece)
    return path


@pytest.fixture
def make_device(tmp_path):
    """Factory creating a synthetic partition or disk backed by a regular file."""

    def factory(name: str = "sda1", size: int = 4 * MIB, kind: DeviceKind = DeviceKind.PARTITION):
        devices_dir = tmp_path / "dev"
        devices_dir.mkdir(exist_ok=True)
        path = write_synthetic_image(devices_dir / name, size)
        return DeviceRef(path=str(path), kind=kind, size_bytes=size)

    return factory


@pytest.fixture
def source_device(make_device) -> DeviceRef:
    return make_device("sda1", 4 * MIB)


@pytest.fixture
def disk_device(make_device) -> DeviceRef:
    return make_device("sda", 4 * MIB, DeviceKind.WHOLE_DISK)


@pytest.fixture
def mock_lsblk_output() -> str:
    """lsblk -J -b -p output for one USB disk with a mounted partition."""
    return json.dumps(
        {
            "blockdevices": [
                {
                    "name": "/dev/sda",
                    "size": 16106127360,
                    "type": "disk",
                    "mountpoint": None,
                    "children": [
                        {
                            "name": "/dev/sda1",
                            "size": 268435456,
                            "type": "part",
                            "mountpoint": "/boot/firmware",
                        },
                        {
                            "name": "/dev/sda2",
                            "size": 15837691904,
                            "type": "part",
                            "mountpoint": None,
                        },
                    ],
                },
                {"name": "/dev/loop0", "size": 1024, "type": "loop", "mountpoint": None},
            ]
        }
    )


# ==============================================================================
# Configuration & Orchestrator Fixtures
# ==============================================================================


@pytest.fixture
def backup_root(tmp_path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def config(backup_root) -> Configuration:
    return Configuration(
        backup_root=backup_root,
        algorithm="zstd",
        preset="fast",
        retention_limit=5,
        disk_retention_limit=5,
        restore_delay_seconds=0,
    )


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    return tmp_path / "config" / "settings.json"


@pytest.fixture
def sample_settings_data(tmp_path) -> Dict[str, Any]:
    return {
        "backup_root": str(tmp_path / "backups"),
        "algorithm": "xz",
        "preset": "balanced",
        "signing_enabled": True,
        "signing_key_id": "ABCDEF12",
        "retention_limit": 3,
        "disk_retention_limit": 2,
        "restore_delay_seconds": 1.5,
    }


@pytest.fixture
def fake_factory() -> FakeTransformFactory:
    return FakeTransformFactory()


@pytest.fixture
def fake_signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def prompt() -> RecordingPrompt:
    return RecordingPrompt()


@pytest.fixture
def make_orchestrator(config, fake_factory, fake_signer, prompt, mocker):
    """Factory building an Orchestrator wired to in-process fakes."""

    def factory(config_override: Configuration = None, **overrides):
        options = {
            "prompt": prompt,
            "integrity": IntegrityManager(signer=fake_signer),
            "transform_factory": fake_factory,
            "snapshot_collector": mocker.Mock(),
            "clock": TickingClock(),
            "sleep": mocker.Mock(),
        }
        options.update(overrides)
        return Orchestrator(config_override or config, **options)

    return factory
