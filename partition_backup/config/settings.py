"""Settings storage for backup configuration.

The configuration is an explicit, immutable value that callers pass into the
orchestrator. This module only loads and saves it as JSON; no other module
reads settings on its own.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from partition_backup.domain.models import CompressionSpec, DeviceKind
from partition_backup.storage.exceptions import ConfigurationError


SETTINGS_PATH = Path(
    os.environ.get(
        "PARTITION_BACKUP_SETTINGS_PATH",
        Path.home() / ".config" / "partition-backup" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BACKUP_ROOT = Path.home() / "Boot-Partition-backup"
DEFAULT_RETENTION_LIMIT = 5
DEFAULT_RESTORE_DELAY_SECONDS = 5.0
BACKUP_SUBDIR = "partition_backup"

DEFAULT_SETTINGS: dict[str, Any] = {
    "backup_root": str(DEFAULT_BACKUP_ROOT),
    "algorithm": "zstd",
    "preset": "max",
    "signing_enabled": False,
    "signing_key_id": "",
    "retention_limit": DEFAULT_RETENTION_LIMIT,
    "disk_retention_limit": DEFAULT_RETENTION_LIMIT,
    "restore_delay_seconds": DEFAULT_RESTORE_DELAY_SECONDS,
}


@dataclass(frozen=True)
class Configuration:
    backup_root: Path
    algorithm: str = "zstd"
    preset: str = "max"
    signing_enabled: bool = False
    signing_key_id: str = ""
    retention_limit: int = DEFAULT_RETENTION_LIMIT
    disk_retention_limit: int = DEFAULT_RETENTION_LIMIT
    restore_delay_seconds: float = DEFAULT_RESTORE_DELAY_SECONDS

    @property
    def compression(self) -> CompressionSpec:
        return CompressionSpec.parse(self.algorithm, self.preset)

    @property
    def signing_configured(self) -> bool:
        """True when signing is on and there is a key to sign with."""
        return self.signing_enabled and bool(self.signing_key_id.strip())

    def retention_for(self, kind: DeviceKind) -> int:
        if kind is DeviceKind.WHOLE_DISK:
            return self.disk_retention_limit
        return self.retention_limit

    def validate(self) -> None:
        """Check every value before any device is touched.

        Raises:
            ConfigurationError: On the first invalid value
        """
        CompressionSpec.parse(self.algorithm, self.preset)
        for key in ("retention_limit", "disk_retention_limit"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{key} must be a positive integer, got {value!r}")
        if self.restore_delay_seconds < 0:
            raise ConfigurationError(
                f"restore_delay_seconds must not be negative, got {self.restore_delay_seconds!r}"
            )
        if not str(self.backup_root).strip():
            raise ConfigurationError("backup_root is not set")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["backup_root"] = str(self.backup_root)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Configuration:
        values = dict(DEFAULT_SETTINGS)
        values.update({key: value for key, value in data.items() if key in DEFAULT_SETTINGS})
        try:
            return cls(
                backup_root=Path(values["backup_root"]).expanduser(),
                algorithm=str(values["algorithm"]),
                preset=str(values["preset"]),
                signing_enabled=_coerce_bool(values["signing_enabled"]),
                signing_key_id=str(values["signing_key_id"] or ""),
                retention_limit=int(values["retention_limit"]),
                disk_retention_limit=int(values["disk_retention_limit"]),
                restore_delay_seconds=float(values["restore_delay_seconds"]),
            )
        except (TypeError, ValueError) as error:
            raise ConfigurationError(f"Invalid settings value: {error}") from error


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_configuration(path: Optional[Path] = None) -> Configuration:
    """Load settings from JSON, falling back to defaults.

    A missing or unreadable file yields the defaults; invalid values inside
    a readable file raise ConfigurationError.
    """
    path = path or SETTINGS_PATH
    if not path.exists():
        return Configuration.from_dict({})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return Configuration.from_dict({})
    if not isinstance(data, dict):
        return Configuration.from_dict({})
    return Configuration.from_dict(data)


def save_configuration(config: Configuration, path: Optional[Path] = None) -> None:
    path = path or SETTINGS_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(config.to_dict(), indent=2, sort_keys=True),
        encoding="utf-8",
    )


def update_configuration(
    config: Configuration, path: Optional[Path] = None, **changes: Any
) -> Configuration:
    """Return a validated copy with ``changes`` applied and persist it."""
    unknown = set(changes) - set(DEFAULT_SETTINGS)
    if unknown:
        raise ConfigurationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    merged = config.to_dict()
    merged.update(changes)
    updated = Configuration.from_dict(merged)
    updated.validate()
    save_configuration(updated, path)
    return updated


def set_backup_root(
    config: Configuration, directory: Path | str, path: Optional[Path] = None
) -> Configuration:
    """Point backups at ``<directory>/partition_backup``, creating it.

    Raises:
        ConfigurationError: If the directory is not writable or cannot be created
    """
    base = Path(directory).expanduser()
    if not os.access(base, os.W_OK):
        raise ConfigurationError(f"No write permission in {base}")
    backup_root = base / BACKUP_SUBDIR
    try:
        backup_root.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise ConfigurationError(f"Failed to create backup folder {backup_root}: {error}") from error
    return update_configuration(config, path, backup_root=str(backup_root))
