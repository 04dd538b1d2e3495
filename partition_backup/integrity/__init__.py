"""Checksums and detached signatures for archive files."""

from .digest import Digester, Sha256Digester, read_checksum_file, write_checksum_file
from .manager import IntegrityManager
from .signing import GpgSigner, Signer

__all__ = [
    "Digester",
    "GpgSigner",
    "IntegrityManager",
    "Sha256Digester",
    "Signer",
    "read_checksum_file",
    "write_checksum_file",
]
