"""Process configuration for VaultZip.

The configuration is built once at startup (normally from the environment via
:func:`load_config`) and then passed explicitly to every component that needs
it. It is frozen so the master secret can never be swapped mid-process.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .exceptions import ConfigError

ENV_APP_KEY = "VAULTZIP_APP_KEY"
ENV_STORAGE_ROOT = "VAULTZIP_STORAGE_ROOT"
ENV_DB_PATH = "VAULTZIP_DB"
ENV_MAX_FILE_SIZE_MB = "VAULTZIP_MAX_FILE_SIZE_MB"
ENV_CHUNK_SIZE = "VAULTZIP_CHUNK_SIZE"

MIN_APP_KEY_LENGTH = 16
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_FILE_SIZE_MB = 500


@dataclass(frozen=True)
class AppConfig:
    """Immutable settings shared by the services."""

    app_key: bytes = field(repr=False)
    storage_root: Path = Path.home() / ".vaultzip" / "objects"
    db_path: Path = Path.home() / ".vaultzip" / "vaultzip.db"
    max_file_size_mb: int = DEFAULT_MAX_FILE_SIZE_MB
    chunk_size: int = DEFAULT_CHUNK_SIZE
    # Argon2id cost used to derive the licence-key wrapping key
    kdf_time_cost: int = 3
    kdf_memory_cost: int = 65536
    kdf_parallelism: int = 1

    def __post_init__(self):
        if not isinstance(self.app_key, (bytes, bytearray)):
            raise ConfigError("app_key must be bytes")
        if len(self.app_key) < MIN_APP_KEY_LENGTH:
            raise ConfigError(
                f"app_key must be at least {MIN_APP_KEY_LENGTH} bytes long"
            )
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.max_file_size_mb <= 0:
            raise ConfigError("max_file_size_mb must be positive")

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


def parse_app_key(raw: str) -> bytes:
    """Decode the master secret; ``base64:`` prefixed values are decoded, anything else is UTF-8."""
    raw = raw.strip()
    if raw.startswith("base64:"):
        try:
            return base64.b64decode(raw[len("base64:"):], validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError(f"{ENV_APP_KEY} is not valid base64") from e
    return raw.encode("utf-8")


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def load_config(environ: Optional[Mapping[str, str]] = None, **overrides) -> AppConfig:
    """
    Build an AppConfig from environment variables.

    ``VAULTZIP_APP_KEY`` is required. Keyword overrides win over the
    environment, which is convenient for tests and the CLI flags.
    """
    env = os.environ if environ is None else environ

    raw_key = env.get(ENV_APP_KEY)
    if "app_key" not in overrides:
        if not raw_key:
            raise ConfigError(f"{ENV_APP_KEY} is not set")
        overrides["app_key"] = parse_app_key(raw_key)

    if "storage_root" not in overrides and env.get(ENV_STORAGE_ROOT):
        overrides["storage_root"] = Path(env[ENV_STORAGE_ROOT]).expanduser()
    if "db_path" not in overrides and env.get(ENV_DB_PATH):
        overrides["db_path"] = Path(env[ENV_DB_PATH]).expanduser()
    overrides.setdefault(
        "max_file_size_mb",
        _int_setting(env, ENV_MAX_FILE_SIZE_MB, DEFAULT_MAX_FILE_SIZE_MB),
    )
    overrides.setdefault(
        "chunk_size", _int_setting(env, ENV_CHUNK_SIZE, DEFAULT_CHUNK_SIZE)
    )

    return AppConfig(**overrides)
