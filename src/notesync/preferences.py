"""Persisted user preferences.

Preferences are a small JSON document: author identity, the database sync
watermark read by the background scheduler, and optional overrides of the
network policy. Writes go through a temp file and rename so a crash never
leaves a truncated file behind.
"""
import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from notesync.exceptions import ConfigurationError
from notesync.models.schema import NetworkPolicy, Signature, now_millis
from notesync.utils import atomic_write_text

logger = logging.getLogger(__name__)


class AppPreferences(BaseModel):
    """Preference values persisted between sessions."""

    is_init: bool = False
    repo_path: Optional[str] = None
    author_name: Optional[str] = None
    author_email: Optional[str] = None
    # Watermark: epoch millis of the last successful database update
    last_database_sync_time_ms: int = Field(default=0, ge=0)
    # Network policy overrides; None defers to configuration
    sync_only_on_wifi: Optional[bool] = None
    sync_on_specific_wifi: Optional[bool] = None
    required_ssid: Optional[str] = None

    def network_policy(self, default: NetworkPolicy) -> NetworkPolicy:
        """Merge stored overrides onto ``default``."""
        return NetworkPolicy(
            sync_only_on_wifi=(
                default.sync_only_on_wifi
                if self.sync_only_on_wifi is None
                else self.sync_only_on_wifi
            ),
            sync_on_specific_wifi=(
                default.sync_on_specific_wifi
                if self.sync_on_specific_wifi is None
                else self.sync_on_specific_wifi
            ),
            required_ssid=(
                default.required_ssid if self.required_ssid is None else self.required_ssid
            ),
        )


class PreferencesStore:
    """Thread-safe access to the preferences file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._cache: Optional[AppPreferences] = None

    def load(self) -> AppPreferences:
        """Read preferences; a missing or unreadable file gives defaults."""
        with self._lock:
            if self._cache is not None:
                return self._cache
            prefs = AppPreferences()
            if self.path.exists():
                try:
                    data = json.loads(self.path.read_text(encoding="utf-8"))
                    prefs = AppPreferences.model_validate(data)
                except (OSError, json.JSONDecodeError, ValidationError) as e:
                    logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            self._cache = prefs
            return prefs

    def save(self, prefs: AppPreferences) -> None:
        """Persist ``prefs`` atomically.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        with self._lock:
            try:
                atomic_write_text(self.path, prefs.model_dump_json(indent=2))
            except OSError as e:
                raise ConfigurationError(
                    f"Cannot write preferences to {self.path}: {e}",
                    config_key="preferences_path",
                )
            self._cache = prefs

    def update(self, **changes: Any) -> AppPreferences:
        """Apply field changes and persist the result."""
        with self._lock:
            updated = self.load().model_copy(update=changes)
            self.save(updated)
            return updated

    @property
    def last_database_sync_time_ms(self) -> int:
        return self.load().last_database_sync_time_ms

    def record_database_sync(self, when_ms: Optional[int] = None) -> None:
        """Advance the sync watermark (defaults to now)."""
        when_ms = now_millis() if when_ms is None else when_ms
        self.update(last_database_sync_time_ms=when_ms)
        logger.debug(f"Database sync watermark set to {when_ms}")

    def apply_git_author_defaults(
        self,
        repo_signature: Optional[Signature],
        default_name: str,
        default_email: str,
    ) -> AppPreferences:
        """Fill in a missing author identity.

        Stored values win, then the repository's configured identity, then
        the given defaults. Only missing fields are written.
        """
        with self._lock:
            prefs = self.load()
            changes = {}
            if not prefs.author_name:
                changes["author_name"] = repo_signature.name if repo_signature else default_name
            if not prefs.author_email:
                changes["author_email"] = (
                    repo_signature.email if repo_signature else default_email
                )
            if not changes:
                return prefs
            logger.info(
                f"Author identity defaulted to "
                f"{changes.get('author_name', prefs.author_name)} "
                f"<{changes.get('author_email', prefs.author_email)}>"
            )
            return self.update(**changes)

    def resolve_signature(
        self,
        repo_signature: Optional[Signature],
        default_name: str,
        default_email: str,
    ) -> Signature:
        """Signature for a new commit, stamped with the current time."""
        prefs = self.apply_git_author_defaults(repo_signature, default_name, default_email)
        return Signature.now(prefs.author_name or default_name, prefs.author_email or default_email)
