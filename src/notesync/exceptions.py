"""Custom exceptions for notesync.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Internal layers raise these; the
public engine operations hand them back inside a ``Result``.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Repository errors (1xxx)
    REPO_NOT_FOUND = 1001
    REPO_ALREADY_INITIALIZED = 1002
    REPO_CLOSED = 1003

    # Git errors (2xxx)
    GIT_FAILED = 2001
    AUTH_FAILURE = 2002
    NETWORK_UNAVAILABLE = 2003
    MERGE_CONFLICT = 2004
    PUSH_REJECTED = 2005

    # Note errors (3xxx)
    NOTE_NOT_FOUND = 3001
    NOTE_ALREADY_EXISTS = 3002
    NOTE_PATH_INVALID = 3003
    OPTIMISTIC_CONFLICT = 3004
    NOTE_IO_FAILED = 3005

    # Index store errors (4xxx)
    STORE_FAILED = 4001
    STORE_CORRUPTION = 4002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    STORAGE_PERMISSION_DENIED = 6002

    # Scheduling errors (7xxx)
    OPERATION_CANCELLED = 7001


class NotesyncError(Exception):
    """Base exception for all notesync errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.GIT_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class GitError(NotesyncError):
    """Raised when a git operation fails.

    Used directly for failures that fit no narrower category.

    Attributes:
        command: The git command that failed (if applicable)
        returncode: Exit code from git (if applicable)
        stderr: Error output from git (if applicable)
    """

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
        code: ErrorCode = ErrorCode.GIT_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if command:
            details["command"] = " ".join(command[3:] if command[:2] == ["git", "-C"] else command)
        if returncode is not None:
            details["returncode"] = returncode
        if stderr:
            details["stderr"] = stderr[:200]
        super().__init__(message, code=code, details=details)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr

    @property
    def retryable(self) -> bool:
        """Whether re-running the same operation later may succeed."""
        return self.code in (ErrorCode.NETWORK_UNAVAILABLE, ErrorCode.PUSH_REJECTED)


class RepoNotFoundError(GitError):
    """Raised when no git metadata exists at the requested path."""

    def __init__(self, path: str):
        super().__init__(
            f"No git repository found at '{path}'",
            code=ErrorCode.REPO_NOT_FOUND,
            details={"path": path},
        )
        self.path = path


class RepoAlreadyInitializedError(GitError):
    """Raised by init when a repository already exists.

    Callers treat this as "already usable" and open the repository.
    """

    def __init__(self, path: str):
        super().__init__(
            f"A git repository already exists at '{path}'",
            code=ErrorCode.REPO_ALREADY_INITIALIZED,
            details={"path": path},
        )
        self.path = path


class RepositoryClosedError(GitError):
    """Raised when an operation is attempted on a closed repository handle."""

    def __init__(self, path: Optional[str] = None):
        super().__init__(
            "Repository is closed",
            code=ErrorCode.REPO_CLOSED,
            details={"path": path} if path else None,
        )


class AuthFailureError(GitError):
    """Raised when the remote rejects our credentials."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, code=ErrorCode.AUTH_FAILURE, **kwargs)


class NetworkUnavailableError(GitError):
    """Raised on transport errors talking to the remote.

    Recoverable: local commits are retained and the sync can be retried.
    """

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, code=ErrorCode.NETWORK_UNAVAILABLE, **kwargs)


class PushRejectedError(GitError):
    """Raised when the remote refused our push (it advanced concurrently)."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, code=ErrorCode.PUSH_REJECTED, **kwargs)


class MergeConflictError(GitError):
    """Raised when remote and local edits cannot be merged automatically.

    The working tree has already been restored to its pre-merge state
    when this is raised.

    Attributes:
        paths: Repository-relative paths that conflicted
    """

    def __init__(self, paths: List[str], message: Optional[str] = None, reason: str = "merge"):
        self.paths = sorted(paths)
        super().__init__(
            message or f"Merge conflict in {len(self.paths)} file(s)",
            code=ErrorCode.MERGE_CONFLICT,
            details={"paths": self.paths[:10], "reason": reason},
        )
        self.reason = reason


class NoteError(NotesyncError):
    """Base class for errors about a single note."""

    def __init__(self, message: str, path: str, code: ErrorCode):
        super().__init__(message, code=code, details={"path": path})
        self.path = path


class NoteNotFoundError(NoteError):
    """Raised when a note file does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Note '{path}' not found", path, ErrorCode.NOTE_NOT_FOUND)


class NoteAlreadyExistsError(NoteError):
    """Raised when creating a note whose file already exists."""

    def __init__(self, path: str):
        super().__init__(
            f"Note '{path}' already exists", path, ErrorCode.NOTE_ALREADY_EXISTS
        )


class NotePathError(NoteError):
    """Raised when a relative path is unusable (escapes the root, targets .git)."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Invalid note path '{path}': {reason}", path, ErrorCode.NOTE_PATH_INVALID
        )
        self.reason = reason


class NoteIOError(NoteError):
    """Raised when the filesystem refuses a read or write of a note file."""

    def __init__(self, path: str, operation: str, original_error: Optional[Exception] = None):
        super().__init__(
            f"Could not {operation} note '{path}'", path, ErrorCode.NOTE_IO_FAILED
        )
        self.operation = operation
        self.original_error = original_error
        if original_error is not None:
            self.details["original_error"] = str(original_error)[:200]


class OptimisticConflictError(NoteError):
    """Raised when the on-disk note differs from the version the caller last read.

    The caller should reload the note and retry.
    """

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note '{path}' was modified since it was read",
            path,
            ErrorCode.OPTIMISTIC_CONFLICT,
        )


class StoreError(NotesyncError):
    """Raised for index store failures. The previous index stays intact."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORE_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class StoreCorruptionError(StoreError):
    """A single note file could not be parsed during a rebuild.

    These are recorded on the rebuild report rather than raised through
    the rebuild, which continues with the remaining files.
    """

    def __init__(self, path: str, original_error: Optional[Exception] = None):
        super().__init__(
            f"Could not parse note '{path}'",
            operation="parse",
            code=ErrorCode.STORE_CORRUPTION,
            original_error=original_error,
        )
        self.path = path
        self.details["path"] = path


class ConfigurationError(NotesyncError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class StoragePermissionError(ConfigurationError):
    """Raised when device storage is selected but access was not granted."""

    def __init__(self, message: str = "Storage access permission not granted"):
        super().__init__(
            message,
            config_key="device_access_granted",
            code=ErrorCode.STORAGE_PERMISSION_DENIED,
        )


class OperationCancelledError(NotesyncError):
    """Raised when an operation stops at a cancellation checkpoint."""

    def __init__(self, operation: str, stage: Optional[str] = None):
        details = {"operation": operation}
        if stage:
            details["stage"] = stage
        super().__init__(
            f"Operation '{operation}' was cancelled",
            code=ErrorCode.OPERATION_CANCELLED,
            details=details,
        )
        self.operation = operation
        self.stage = stage
