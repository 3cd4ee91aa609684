"""
Configuration management for relayconf.
"""
from typing import List, Optional
from pathlib import Path
import os
import logging

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from relayconf.constants import (
    AUDIT_RETENTION_DAYS,
    BACKUP_KEEP_COUNT,
    COMMAND_TIMEOUT_SECONDS,
    DEFAULT_HISTORY_LIMIT,
    KDF_ITERATIONS,
    LOCK_TIMEOUT_SECONDS,
    MIN_FREE_BYTES,
    MIN_MASTER_SECRET_LENGTH,
)

logger = logging.getLogger(__name__)


class PostfixConfig(BaseModel):
    """Locations of the managed Postfix files."""
    config_dir: str = "/etc/postfix"
    main_cf_name: str = "main.cf"
    master_cf_name: str = "master.cf"
    credentials_file_name: str = Field(
        "sasl_passwd",
        description="SASL credential file written from the vault (postmap source)"
    )
    credentials_map_type: str = Field("hash", description="Lookup table type used by postmap")
    table_map_type: str = Field("hash", description="Lookup table type for the transport and sender relay tables")
    backup_dir: str = "/var/lib/relayconf/backups"
    lock_file: str = "/var/lib/relayconf/apply.lock"

    @property
    def main_cf_path(self) -> Path:
        return Path(self.config_dir) / self.main_cf_name

    @property
    def master_cf_path(self) -> Path:
        return Path(self.config_dir) / self.master_cf_name

    @property
    def credentials_path(self) -> Path:
        return Path(self.config_dir) / self.credentials_file_name

    @property
    def credentials_map_reference(self) -> str:
        """Value for smtp_sasl_password_maps pointing at the managed credential file."""
        return f"{self.credentials_map_type}:{self.credentials_path}"


class CommandConfig(BaseModel):
    """
    Postfix command lines.

    Each command is an argument list. The placeholders {config_dir} and
    {path} are substituted before execution.
    """
    check: List[List[str]] = Field(
        default_factory=lambda: [
            ["postfix", "-c", "{config_dir}", "check"],
            ["postconf", "-c", "{config_dir}", "-n"],
        ],
        description="Commands run against the pending config directory; all must exit 0"
    )
    reload: List[str] = Field(default_factory=lambda: ["postfix", "reload"])
    status: List[str] = Field(default_factory=lambda: ["postfix", "status"])
    postmap: List[str] = Field(default_factory=lambda: ["postmap", "{path}"])
    timeout_seconds: float = Field(COMMAND_TIMEOUT_SECONDS, gt=0)


class EngineConfig(BaseModel):
    """Apply pipeline tuning."""
    lock_timeout_seconds: float = Field(LOCK_TIMEOUT_SECONDS, gt=0)
    kdf_iterations: int = Field(KDF_ITERATIONS, ge=1)
    min_free_bytes: int = Field(MIN_FREE_BYTES, ge=0)
    history_limit: int = Field(DEFAULT_HISTORY_LIMIT, ge=1)
    backup_keep: int = Field(BACKUP_KEEP_COUNT, ge=1, description="Backups kept per managed file")
    audit_retention_days: int = Field(AUDIT_RETENTION_DAYS, ge=1)


class Settings(BaseSettings):
    """Application settings loaded from environment and .env file."""

    # Application
    app_name: str = "relayconf"
    app_version: str = Field(default_factory=lambda: __import__('relayconf').__version__)
    debug: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 8025

    # Database (SQLite by default, any async SQLAlchemy URL works)
    database_url: str = Field(
        "sqlite+aiosqlite:////var/lib/relayconf/relayconf.db",
        description="Database connection URL"
    )

    log_dir: Optional[str] = Field("/var/log/relayconf", description="Directory for the rotating log file")

    # Master secret for the vault
    config_encryption_key: Optional[str] = Field(None, repr=False)
    master_secret_file: str = "/var/lib/relayconf/.master_secret"

    postfix: PostfixConfig = Field(default_factory=PostfixConfig)
    commands: CommandConfig = Field(default_factory=CommandConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        env_nested_delimiter = "__"


# Global settings instance
settings = Settings()


def get_master_secret(config: Settings) -> str:
    """
    Get the master secret used to derive vault keys.

    Priority order:
    1. CONFIG_ENCRYPTION_KEY environment variable
    2. Stored secret in the master secret file

    The secret is never generated here: a new secret would make every
    existing vault record unreadable.

    Raises:
        ValueError: If no secret is configured or it is too short
    """
    key_env = config.config_encryption_key
    if key_env:
        if len(key_env) < MIN_MASTER_SECRET_LENGTH:
            raise ValueError(
                f"CONFIG_ENCRYPTION_KEY is too short ({len(key_env)} chars, "
                f"need at least {MIN_MASTER_SECRET_LENGTH})"
            )
        return key_env

    key_file = Path(config.master_secret_file)
    if key_file.exists():
        try:
            stored_key = key_file.read_text().strip()
        except OSError as e:
            raise ValueError(f"Failed to read master secret file {key_file}: {e}") from e
        if len(stored_key) < MIN_MASTER_SECRET_LENGTH:
            raise ValueError(f"Master secret in {key_file} is too short")
        mode = key_file.stat().st_mode & 0o777
        if mode & 0o077:
            logger.warning(f"Master secret file {key_file} is readable by others (mode {oct(mode)})")
        return stored_key

    raise ValueError(
        "No master secret configured: set CONFIG_ENCRYPTION_KEY or create "
        f"{key_file} (at least {MIN_MASTER_SECRET_LENGTH} characters)"
    )


def ensure_runtime_dirs(config: Settings) -> None:
    """Create the backup and lock directories if missing."""
    for path in (Path(config.postfix.backup_dir), Path(config.postfix.lock_file).parent):
        path.mkdir(parents=True, exist_ok=True)
        os.chmod(path, 0o700)
