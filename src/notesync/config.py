"""Configuration module for notesync."""

import hashlib
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notesync import __version__
from notesync.exceptions import ConfigurationError
from notesync.models.schema import (
    AppStorage,
    DeviceStorage,
    NetworkPolicy,
    RemoteConfig,
    StorageConfiguration,
)

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, kept next to the default app data
_USER_ENV = Path.home() / ".notesync" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

_STORAGE_MODES = ("app", "device")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


class NoteSyncConfig(BaseModel):
    """Configuration for the notesync engine."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTESYNC_BASE_DIR", "."))
    )
    # App-private data directory; the "app" storage mode keeps the repo here
    app_data_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTESYNC_APP_DATA_DIR", str(Path.home() / ".notesync"))
        )
    )
    # Repository root location: "app" (private dir) or "device" (user path)
    storage_mode: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_STORAGE_MODE", "app").lower()
    )
    device_repo_path: Optional[Path] = Field(
        default_factory=lambda: _env_path("NOTESYNC_DEVICE_REPO_PATH")
    )
    # Stands in for the platform storage-access grant in device mode
    device_access_granted: bool = Field(
        default_factory=lambda: _env_bool("NOTESYNC_DEVICE_ACCESS_GRANTED", "true")
    )
    # Index database. When unset, one file per repository under app_data_dir/index
    database_path: Optional[Path] = Field(
        default_factory=lambda: _env_path("NOTESYNC_DATABASE_PATH")
    )
    # When True, the index lives in memory and is rebuilt on every open
    in_memory_db: bool = Field(
        default_factory=lambda: _env_bool("NOTESYNC_IN_MEMORY_DB", "false")
    )
    note_extensions: List[str] = Field(
        default_factory=lambda: [
            ext.strip().lower()
            for ext in os.getenv("NOTESYNC_NOTE_EXTENSIONS", ".md").split(",")
            if ext.strip()
        ]
    )
    # Remote configuration. No URL means local-only sync.
    remote_name: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_REMOTE_NAME", "origin")
    )
    remote_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTESYNC_REMOTE_URL") or None
    )
    # Branch to sync. None means the currently checked out branch.
    sync_branch: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTESYNC_SYNC_BRANCH") or None
    )
    # Background sync gating
    sync_min_interval_seconds: int = Field(
        default_factory=lambda: int(os.getenv("NOTESYNC_SYNC_MIN_INTERVAL", "300"))
    )
    sync_on_every_start: bool = Field(
        default_factory=lambda: _env_bool("NOTESYNC_SYNC_ON_EVERY_START", "false")
    )
    sync_only_on_wifi: bool = Field(
        default_factory=lambda: _env_bool("NOTESYNC_SYNC_ONLY_ON_WIFI", "false")
    )
    sync_on_specific_wifi: bool = Field(
        default_factory=lambda: _env_bool("NOTESYNC_SYNC_ON_SPECIFIC_WIFI", "false")
    )
    required_ssid: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_REQUIRED_SSID", "")
    )
    # Subprocess timeouts (seconds)
    git_timeout: int = Field(
        default_factory=lambda: int(os.getenv("NOTESYNC_GIT_TIMEOUT", "30"))
    )
    network_timeout: int = Field(
        default_factory=lambda: int(os.getenv("NOTESYNC_NETWORK_TIMEOUT", "300"))
    )
    preferences_path: Optional[Path] = Field(
        default_factory=lambda: _env_path("NOTESYNC_PREFERENCES_PATH")
    )
    default_author_name: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_AUTHOR_NAME", "notesync")
    )
    default_author_email: str = Field(
        default_factory=lambda: os.getenv("NOTESYNC_AUTHOR_EMAIL", "notesync@localhost")
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate(self) -> "NoteSyncConfig":
        """Reject settings the engine cannot run with."""
        if self.storage_mode not in _STORAGE_MODES:
            raise ValueError(
                f"storage_mode must be one of {_STORAGE_MODES}, got {self.storage_mode!r}"
            )
        if self.sync_min_interval_seconds < 0:
            raise ValueError("sync_min_interval_seconds must be >= 0")
        if self.git_timeout < 1 or self.network_timeout < 1:
            raise ValueError("git_timeout and network_timeout must be >= 1")
        if not self.note_extensions:
            raise ValueError("note_extensions must not be empty")
        if self.sync_on_specific_wifi and not self.required_ssid:
            logger.warning(
                "sync_on_specific_wifi is set but required_ssid is empty; "
                "any WiFi network will be accepted"
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, repo_root: Optional[Path] = None) -> str:
        """Get the SQLite URL for the index of ``repo_root``."""
        if self.in_memory_db:
            return "sqlite://"
        if self.database_path is not None:
            db_path = self.get_absolute_path(self.database_path)
        else:
            key = hashlib.sha1(
                str(Path(repo_root or "default").resolve()).encode("utf-8")
            ).hexdigest()[:12]
            db_path = self.get_absolute_path(self.app_data_dir) / "index" / f"{key}.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_preferences_path(self) -> Path:
        """Location of the persisted preferences JSON file."""
        if self.preferences_path is not None:
            return self.get_absolute_path(self.preferences_path)
        return self.get_absolute_path(self.app_data_dir) / "preferences.json"

    def storage_configuration(self) -> StorageConfiguration:
        """Build the StorageConfiguration selected by ``storage_mode``."""
        if self.storage_mode == "device":
            if self.device_repo_path is None:
                raise ConfigurationError(
                    "device storage selected but no repository path configured",
                    config_key="device_repo_path",
                )
            return DeviceStorage(path=self.device_repo_path)
        return AppStorage()

    def network_policy(self) -> NetworkPolicy:
        """Network policy built from the sync settings."""
        return NetworkPolicy(
            sync_only_on_wifi=self.sync_only_on_wifi,
            sync_on_specific_wifi=self.sync_on_specific_wifi,
            required_ssid=self.required_ssid,
        )

    def remote(self) -> Optional[RemoteConfig]:
        """The configured remote, or None for local-only operation."""
        if not self.remote_url:
            return None
        return RemoteConfig(
            name=self.remote_name, url=self.remote_url, branch=self.sync_branch
        )


# Create a global config instance
config = NoteSyncConfig()
