"""Detached GPG signatures for archive files."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Protocol

from partition_backup.logging import LoggerFactory
from partition_backup.storage.exceptions import IntegrityMismatchError, SigningFailureError

log = LoggerFactory.for_integrity()


class Signer(Protocol):
    def sign(self, archive_path: Path, signature_path: Path, key_id: str) -> None:
        """Write a detached signature.

        Raises:
            SigningFailureError: If no signature could be produced
        """

    def verify(self, archive_path: Path, signature_path: Path) -> None:
        """Check a detached signature.

        Raises:
            IntegrityMismatchError: If the signature does not verify
        """


class GpgSigner:
    """Sign and verify with the ``gpg`` command line tool."""

    def __init__(
        self,
        gpg: str = "gpg",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.gpg = gpg
        self._runner = runner

    def _run(self, command: list[str]) -> subprocess.CompletedProcess:
        log.debug(f"Running command: {' '.join(command)}")
        return self._runner(command, text=True, capture_output=True)

    def sign(self, archive_path: Path, signature_path: Path, key_id: str) -> None:
        command = [
            self.gpg,
            "--batch",
            "--yes",
            "--local-user",
            key_id,
            "--output",
            str(signature_path),
            "--detach-sign",
            str(archive_path),
        ]
        try:
            result = self._run(command)
        except OSError as error:
            raise SigningFailureError(f"GPG signing failed: {error}") from error
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "gpg failed"
            raise SigningFailureError(f"GPG signing failed: {message}")

    def verify(self, archive_path: Path, signature_path: Path) -> None:
        command = [self.gpg, "--batch", "--verify", str(signature_path), str(archive_path)]
        try:
            result = self._run(command)
        except OSError as error:
            raise IntegrityMismatchError(archive_path, "signature", str(error)) from error
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or "gpg failed"
            raise IntegrityMismatchError(archive_path, "signature", message.splitlines()[-1])
