"""Configuration loading from environment variables and pvault.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from pvault.errors import ConfigError

_HOME_DIR = Path.home() / ".pvault"
_DEFAULT_DATA_DIR = _HOME_DIR / "data"
_DEFAULT_BACKUP_DIR = _HOME_DIR / "backups"
_CONFIG_FILENAME = "pvault.toml"

DEFAULT_MAX_FILE_SIZE = 1_048_576  # 1 MiB
DEFAULT_ITERATIONS = 10_000
DEFAULT_KEY_SIZE = 256

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class StorageConfig:
    """Where records live and how they are guarded on disk."""

    data_dir: Path = _DEFAULT_DATA_DIR
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    backup_enabled: bool = True
    backup_dir: Path = _DEFAULT_BACKUP_DIR


@dataclass
class EncryptionConfig:
    """At-rest encryption settings."""

    enabled: bool = False
    key: str | None = None
    iterations: int = DEFAULT_ITERATIONS
    key_size: int = DEFAULT_KEY_SIZE
    migrate_legacy: bool = True


@dataclass
class ScopeConfig:
    """Scope selector resolved once at startup into the session allow-list."""

    allowed: str = "public"


@dataclass
class VaultConfig:
    """Top-level vault configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    scopes: ScopeConfig = field(default_factory=ScopeConfig)
    log_level: str = "INFO"

    def validate(self) -> None:
        """Reject combinations the vault cannot run with."""
        if self.storage.max_file_size <= 0:
            raise ConfigError("max_file_size must be positive")
        if not 1000 <= self.encryption.iterations <= 100_000:
            raise ConfigError("encryption iterations must be between 1000 and 100000")
        if self.encryption.key_size not in (128, 192, 256):
            raise ConfigError("encryption key_size must be 128, 192 or 256")
        if self.encryption.enabled and not self.encryption.key:
            raise ConfigError(
                "Encryption is enabled but no encryption key is configured "
                "(set PVAULT_ENCRYPTION_KEY or [encryption] key)"
            )


def _as_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {name}: {value!r}")


def _as_int(value: object, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid integer for {name}: {value!r}") from None


def _resolve(path: str | Path) -> Path:
    p = Path(path).expanduser()
    return p if p.is_absolute() else (Path.cwd() / p).resolve()


def load_config(config_path: Path | None = None) -> VaultConfig:
    """Load configuration from environment variables and optional pvault.toml.

    Priority: environment variables > pvault.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.pvault/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _HOME_DIR / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    encryption_data = file_data.get("encryption", {})
    scopes_data = file_data.get("scopes", {})

    config = VaultConfig(
        storage=StorageConfig(
            data_dir=_resolve(
                os.getenv("PVAULT_DATA_DIR", storage_data.get("data_dir", str(_DEFAULT_DATA_DIR)))
            ),
            max_file_size=_as_int(
                os.getenv(
                    "PVAULT_MAX_FILE_SIZE",
                    storage_data.get("max_file_size", DEFAULT_MAX_FILE_SIZE),
                ),
                "max_file_size",
            ),
            backup_enabled=_as_bool(
                os.getenv("PVAULT_BACKUP_ENABLED", storage_data.get("backup_enabled", True)),
                "backup_enabled",
            ),
            backup_dir=_resolve(
                os.getenv(
                    "PVAULT_BACKUP_DIR", storage_data.get("backup_dir", str(_DEFAULT_BACKUP_DIR))
                )
            ),
        ),
        encryption=EncryptionConfig(
            enabled=_as_bool(
                os.getenv("PVAULT_ENCRYPTION_ENABLED", encryption_data.get("enabled", False)),
                "encryption.enabled",
            ),
            key=os.getenv("PVAULT_ENCRYPTION_KEY", encryption_data.get("key")),
            iterations=_as_int(
                encryption_data.get("iterations", DEFAULT_ITERATIONS), "encryption.iterations"
            ),
            key_size=_as_int(
                encryption_data.get("key_size", DEFAULT_KEY_SIZE), "encryption.key_size"
            ),
            migrate_legacy=_as_bool(
                encryption_data.get("migrate_legacy", True), "encryption.migrate_legacy"
            ),
        ),
        scopes=ScopeConfig(
            allowed=os.getenv("PVAULT_SCOPES", scopes_data.get("allowed", "public")),
        ),
        log_level=os.getenv("PVAULT_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
