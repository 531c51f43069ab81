"""Data models for notesync."""

import datetime
import time
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, Field

from notesync.exceptions import NotesyncError, StoreCorruptionError

T = TypeVar("T")
U = TypeVar("U")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def now_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success/failure outcome of a public engine operation.

    Exactly one of ``value`` (on success) or ``error`` (on failure) is
    meaningful. Public operations return these instead of raising.
    """

    value: Optional[T] = None
    error: Optional[NotesyncError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: NotesyncError) -> "Result[T]":
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def map(self, func: Callable[[T], U]) -> "Result[U]":
        """Transform the success value, passing failures through unchanged."""
        if self.error is not None:
            return Result.failure(self.error)
        return Result.success(func(self.value))  # type: ignore[arg-type]

    def __bool__(self) -> bool:
        return self.is_success


# =============================================================================
# Repository location
# =============================================================================


@dataclass(frozen=True)
class AppStorage:
    """Repository kept in the app-private data directory."""

    def repo_path(self, app_data_dir: Path) -> Path:
        return (Path(app_data_dir) / "repo").resolve()

    @property
    def requires_permission(self) -> bool:
        return False


@dataclass(frozen=True)
class DeviceStorage:
    """Repository at a user-chosen device path (needs storage access)."""

    path: Path

    def repo_path(self, app_data_dir: Path) -> Path:
        return Path(self.path).expanduser().resolve()

    @property
    def requires_permission(self) -> bool:
        return True


StorageConfiguration = Union[AppStorage, DeviceStorage]


# =============================================================================
# Git-side types
# =============================================================================


@dataclass(frozen=True)
class Signature:
    """Author identity attached to commits. Immutable once created."""

    name: str
    email: str
    timestamp: datetime.datetime = field(default_factory=utc_now)

    @classmethod
    def now(cls, name: str, email: str) -> "Signature":
        return cls(name=name, email=email, timestamp=utc_now())

    def git_date(self) -> str:
        """Timestamp in git's internal ``<epoch> <offset>`` format."""
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        offset = ts.utcoffset() or datetime.timedelta(0)
        minutes = int(offset.total_seconds() // 60)
        sign = "+" if minutes >= 0 else "-"
        minutes = abs(minutes)
        return f"{int(ts.timestamp())} {sign}{minutes // 60:02d}{minutes % 60:02d}"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


@dataclass(frozen=True)
class RemoteConfig:
    """Remote endpoint used by sync.

    Attributes:
        name: Remote name in the repository (e.g. "origin")
        url: Fetch/push URL. When None, the existing remote entry is used as is.
        branch: Remote branch to sync; None means the local branch name.
    """

    name: str = "origin"
    url: Optional[str] = None
    branch: Optional[str] = None


@dataclass(frozen=True)
class CommitResult:
    """Outcome of commit_all.

    ``commit_hash`` is None when there was nothing to commit.
    """

    commit_hash: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.commit_hash is not None

    @property
    def short_hash(self) -> Optional[str]:
        return self.commit_hash[:7] if self.commit_hash else None


NOTHING_TO_COMMIT = CommitResult(commit_hash=None)


class SyncOutcome(Enum):
    """What a successful sync did."""

    LOCAL_ONLY = "local_only"  # No remote configured; nothing touched the network
    UP_TO_DATE = "up_to_date"  # Local and remote identical
    PUSHED = "pushed"  # Only local commits; pushed them
    FAST_FORWARDED = "fast_forwarded"  # Remote ahead; local ref moved
    MERGED = "merged"  # Diverged; merge commit created and pushed


@dataclass(frozen=True)
class SyncReport:
    """Details of a completed sync."""

    outcome: SyncOutcome
    head: Optional[str] = None
    pushed: bool = False
    updated_paths: List[str] = field(default_factory=list)

    @property
    def pulled_changes(self) -> bool:
        return self.outcome in (SyncOutcome.FAST_FORWARDED, SyncOutcome.MERGED)


class SyncStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SyncState:
    """Single-flight token for background git work on one repository."""

    status: SyncStatus = SyncStatus.IDLE
    started_at: Optional[datetime.datetime] = None
    last_completed_at: Optional[datetime.datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status is SyncStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_completed_at": (
                self.last_completed_at.isoformat() if self.last_completed_at else None
            ),
        }


@dataclass(frozen=True)
class NetworkPolicy:
    """When background sync may use the network."""

    sync_only_on_wifi: bool = False
    sync_on_specific_wifi: bool = False
    required_ssid: str = ""


# =============================================================================
# Notes and index records
# =============================================================================


class Note(BaseModel):
    """A markdown note, one-to-one with a file under the repository root."""

    relative_path: str = Field(..., description="POSIX path relative to the repo root")
    content: str = Field(default="")
    last_modified_time_millis: int = Field(default_factory=now_millis)

    model_config = {"frozen": True}

    @classmethod
    def new(cls, relative_path: str, content: str = "") -> "Note":
        return cls(relative_path=relative_path, content=content)

    @property
    def name(self) -> str:
        """File name without its folder."""
        return self.relative_path.rsplit("/", 1)[-1]

    @property
    def folder(self) -> str:
        """Parent folder ("" for the root)."""
        return self.relative_path.rsplit("/", 1)[0] if "/" in self.relative_path else ""


@dataclass(frozen=True)
class IndexRecord:
    """Index projection of one note file at the time it was last indexed."""

    relative_path: str
    title: str
    content: str
    tags: List[str]
    size: int
    last_modified_time_millis: int
    content_hash: str
    parse_error: Optional[str] = None
    indexed_at: Optional[datetime.datetime] = None

    @property
    def folder(self) -> str:
        return self.relative_path.rsplit("/", 1)[0] if "/" in self.relative_path else ""

    def to_note(self) -> Note:
        return Note(
            relative_path=self.relative_path,
            content=self.content,
            last_modified_time_millis=self.last_modified_time_millis,
        )


@dataclass
class IndexRebuildReport:
    """Summary of a full index rebuild.

    Attributes:
        indexed: Number of note files written to the index
        removed: Records dropped because their file no longer exists
        failed_files: Files that could not be parsed, mapped to the reason.
            They are still indexed, with ``parse_error`` set.
        fingerprint: Working-tree fingerprint stored with the new index
    """

    indexed: int = 0
    removed: int = 0
    failed_files: Dict[str, str] = field(default_factory=dict)
    fingerprint: Optional[str] = None

    def corruption_errors(self) -> List[StoreCorruptionError]:
        """One typed error per file that failed to parse."""
        return [
            StoreCorruptionError(path, ValueError(reason))
            for path, reason in sorted(self.failed_files.items())
        ]
