"""Configuration management for notesync.

Loads configuration from environment variables and provides defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Remote note API
    api_url: Optional[str]
    api_token: Optional[str]
    api_timeout: float  # seconds
    identity_id: Optional[str]  # Signed-in account, issued with the token

    # Sync
    auto_sync: bool
    sync_interval: float  # seconds
    batch_size: int
    retry_attempts: int
    retry_delay: float  # seconds

    # Migration backups
    backup_dir: Path
    backup_keep: int

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        base_dir = Path.home() / ".notesync"

        db_path = Path(
            os.environ.get("NOTESYNC_DB_PATH", str(base_dir / "notes.db"))
        ).expanduser()
        backup_dir = Path(
            os.environ.get("NOTESYNC_BACKUP_DIR", str(base_dir / "backups"))
        ).expanduser()

        return cls(
            db_path=db_path,
            api_url=os.environ.get("NOTESYNC_API_URL"),
            api_token=os.environ.get("NOTESYNC_API_TOKEN"),
            api_timeout=float(os.environ.get("NOTESYNC_API_TIMEOUT", "10")),
            identity_id=os.environ.get("NOTESYNC_IDENTITY_ID") or None,
            auto_sync=_env_bool("NOTESYNC_AUTO_SYNC", True),
            sync_interval=float(os.environ.get("NOTESYNC_SYNC_INTERVAL", "30")),
            batch_size=int(os.environ.get("NOTESYNC_BATCH_SIZE", "10")),
            retry_attempts=int(os.environ.get("NOTESYNC_RETRY_ATTEMPTS", "3")),
            retry_delay=float(os.environ.get("NOTESYNC_RETRY_DELAY", "2.0")),
            backup_dir=backup_dir,
            backup_keep=int(os.environ.get("NOTESYNC_BACKUP_KEEP", "10")),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        if self.batch_size < 1:
            errors.append("NOTESYNC_BATCH_SIZE must be at least 1")
        if self.retry_attempts < 1:
            errors.append("NOTESYNC_RETRY_ATTEMPTS must be at least 1")
        if self.retry_delay < 0:
            errors.append("NOTESYNC_RETRY_DELAY cannot be negative")
        if self.sync_interval <= 0:
            errors.append("NOTESYNC_SYNC_INTERVAL must be positive")

        return errors

    def has_remote_config(self) -> bool:
        """Check if the remote note API is configured."""
        return bool(self.api_url)

    def is_signed_in(self) -> bool:
        """Check if an identity and the remote note API are both configured."""
        return bool(self.identity_id) and self.has_remote_config()


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
