"""Attach and check archive sidecars.

After a backup: the checksum sidecar is mandatory; the signature is
attempted only when signing is configured, and a signing failure is a
warning. Before a restore: checksum first, then signature; either failure
stops the restore before the confirmation gate is reached.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Optional

from partition_backup.config.settings import Configuration
from partition_backup.domain.models import Archive
from partition_backup.logging import LoggerFactory
from partition_backup.pipeline.naming import checksum_path, signature_path
from partition_backup.storage.exceptions import (
    IntegrityMismatchError,
    SigningFailureError,
    StreamFailureError,
)

from .digest import Digester, Sha256Digester, read_checksum_file, write_checksum_file
from .signing import GpgSigner, Signer


class IntegrityManager:
    def __init__(self, digester: Optional[Digester] = None, signer: Optional[Signer] = None):
        self.digester = digester or Sha256Digester()
        self.signer = signer or GpgSigner()

    def seal(self, archive: Archive, config: Configuration, log=None) -> tuple[Archive, list[str]]:
        """Write the checksum and optional signature sidecars.

        Returns:
            The archive with sidecar paths set, and any non-fatal warnings

        Raises:
            StreamFailureError: If the checksum sidecar cannot be written
        """
        log = log or LoggerFactory.for_integrity()
        warnings: list[str] = []

        checksum_file = checksum_path(archive.path)
        try:
            digest = self.digester.hexdigest(archive.path)
            write_checksum_file(archive.path, digest, checksum_file)
        except OSError as error:
            checksum_file.unlink(missing_ok=True)
            raise StreamFailureError(
                f"Failed to write checksum for {archive.name}: {error}", stage="checksum"
            ) from error
        archive = replace(archive, checksum_path=checksum_file)
        log.info(f"Checksum created: {checksum_file}")

        if config.signing_enabled and not config.signing_key_id.strip():
            log.debug("Signing enabled but no key configured; skipping signature")
        if config.signing_configured:
            signature_file = signature_path(archive.path)
            try:
                self.signer.sign(archive.path, signature_file, config.signing_key_id.strip())
            except SigningFailureError as error:
                signature_file.unlink(missing_ok=True)
                message = f"{error}; no signature written for {archive.name}"
                log.warning(message)
                warnings.append(message)
            else:
                archive = replace(archive, signature_path=signature_file)
                log.info(f"GPG signature created: {signature_file}")

        return archive, warnings

    def verify(self, archive_path: Path, config: Configuration, log=None) -> list[str]:
        """Check the archive's sidecars before a restore.

        Returns:
            Non-fatal warnings (e.g., no checksum sidecar)

        Raises:
            IntegrityMismatchError: On a digest mismatch, a bad signature, or a
                missing signature while signing is enabled
        """
        log = log or LoggerFactory.for_integrity()
        warnings: list[str] = []

        checksum_file = checksum_path(archive_path)
        if checksum_file.exists():
            expected = read_checksum_file(checksum_file, archive_path)
            try:
                actual = self.digester.hexdigest(archive_path)
            except OSError as error:
                raise IntegrityMismatchError(archive_path, "checksum", str(error)) from error
            if actual != expected:
                raise IntegrityMismatchError(
                    archive_path, "checksum", f"expected {expected}, got {actual}"
                )
            log.info("Checksum verified.")
        else:
            message = f"Checksum file not found: {checksum_file}"
            log.warning(message)
            warnings.append(message)

        if config.signing_enabled:
            signature_file = signature_path(archive_path)
            if not signature_file.exists():
                raise IntegrityMismatchError(
                    archive_path, "signature", f"signature file not found: {signature_file.name}"
                )
            self.signer.verify(archive_path, signature_file)
            log.info("GPG signature verified.")

        return warnings
