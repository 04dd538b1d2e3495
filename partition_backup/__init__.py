"""Partition and whole-disk image backup with compression, integrity and rotation."""

from .__version__ import __version__

__all__ = ["__version__"]
