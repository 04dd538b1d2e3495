"""SHA-256 digests of archive files and their ``.sha256`` sidecars.

The sidecar holds one line in the format written by ``sha256sum``:
``<64 lowercase hex digits><two spaces><archive filename>``.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Protocol

from partition_backup.storage.exceptions import IntegrityMismatchError

HASH_CHUNK_SIZE = 4 * 1024 * 1024
_CHECKSUM_LINE_RE = re.compile(r"^(?P<digest>[0-9a-f]{64}) [ *](?P<filename>[^\n]+)\n?$")


class Digester(Protocol):
    name: str

    def hexdigest(self, path: Path) -> str:
        """Digest of a file's full contents as lowercase hex."""


class Sha256Digester:
    name = "sha256"

    def __init__(self, chunk_size: int = HASH_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def hexdigest(self, path: Path) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(self.chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()


def format_checksum_line(digest: str, filename: str) -> str:
    return f"{digest}  {filename}\n"


def write_checksum_file(archive_path: Path, digest: str, checksum_file: Path) -> Path:
    checksum_file.write_text(format_checksum_line(digest, archive_path.name), encoding="utf-8")
    return checksum_file


def read_checksum_file(checksum_file: Path, archive_path: Path) -> str:
    """Parse a checksum sidecar and return the recorded digest.

    Raises:
        IntegrityMismatchError: If the file is malformed or names a different archive
    """
    try:
        content = checksum_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise IntegrityMismatchError(archive_path, "checksum", f"unreadable sidecar: {error}") from error
    match = _CHECKSUM_LINE_RE.match(content)
    if not match:
        raise IntegrityMismatchError(archive_path, "checksum", "malformed checksum file")
    if match.group("filename") != archive_path.name:
        raise IntegrityMismatchError(
            archive_path,
            "checksum",
            f"checksum file is for {match.group('filename')!r}",
        )
    return match.group("digest")
