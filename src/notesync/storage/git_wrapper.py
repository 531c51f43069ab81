"""Git repository handle.

Provides subprocess-based git operations for portability. A ``GitWrapper``
is the single open handle on one working tree: it owns open/init/close,
the author identity stored in the repository, and low-level reads and
writes of tracked files. Higher-level sync orchestration lives in
``notesync.services.git_sync_service``.
"""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from notesync.concurrency import repository_lock
from notesync.exceptions import (
    AuthFailureError,
    GitError,
    NetworkUnavailableError,
    NoteIOError,
    NotePathError,
    NoteNotFoundError,
    PushRejectedError,
    RepoAlreadyInitializedError,
    RepoNotFoundError,
    RepositoryClosedError,
)
from notesync.models.schema import Result, Signature
from notesync.utils import atomic_write_text, normalize_relative_path

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"

_AUTH_MARKERS = (
    "authentication failed",
    "permission denied (publickey",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "terminal prompts disabled",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)

_NETWORK_MARKERS = (
    "could not resolve host",
    "unable to access",
    "connection refused",
    "connection timed out",
    "operation timed out",
    "network is unreachable",
    "failed to connect",
    "could not read from remote repository",
    "does not appear to be a git repository",
    "the remote end hung up",
    "early eof",
)

_REJECT_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "[remote rejected]",
)


def classify_git_failure(
    args: List[str],
    cmd: List[str],
    returncode: int,
    stderr: str,
    network: bool = False,
) -> GitError:
    """Map a failed git invocation onto the typed error hierarchy.

    Transport and credential failures are only recognized for commands that
    talk to a remote (``network=True``).
    """
    message = f"Git command failed: {' '.join(args)}"
    lowered = stderr.lower()
    kwargs = dict(command=cmd, returncode=returncode, stderr=stderr or None)
    if network:
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return AuthFailureError(f"Authentication with remote failed: {' '.join(args[:2])}", **kwargs)
        if args and args[0] == "push" and any(m in lowered for m in _REJECT_MARKERS):
            return PushRejectedError("Remote rejected the push; fetch and retry", **kwargs)
        if any(marker in lowered for marker in _NETWORK_MARKERS):
            return NetworkUnavailableError(f"Remote unreachable: {' '.join(args[:2])}", **kwargs)
    return GitError(message, **kwargs)


class GitWrapper:
    """Handle on one git working tree, driven through the git CLI.

    Use :meth:`open` or :meth:`init` to obtain one. All commands run with
    ``git -C <repo_path>``. After :meth:`close` every operation fails with
    ``RepositoryClosedError``.
    """

    def __init__(
        self,
        repo_path: Path,
        timeout: int = 30,
        network_timeout: int = 300,
    ):
        """Initialize the GitWrapper.

        Args:
            repo_path: Path to the git repository root.
            timeout: Seconds allowed for local git commands.
            network_timeout: Seconds allowed for fetch and push.
        """
        self.repo_path = Path(repo_path).resolve()
        self.timeout = timeout
        self.network_timeout = network_timeout
        self.lock = repository_lock(self.repo_path)
        self._open = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def open(cls, path: Union[str, Path], **kwargs) -> Result["GitWrapper"]:
        """Open an existing repository.

        Fails with ``RepoNotFoundError`` when no git metadata exists at ``path``.
        """
        repo_path = Path(path).resolve()
        if not (repo_path / ".git").exists():
            return Result.failure(RepoNotFoundError(str(repo_path)))

        handle = cls(repo_path, **kwargs)
        try:
            handle.run_git(["rev-parse", "--git-dir"])
        except GitError as e:
            return Result.failure(e)
        logger.debug(f"Opened git repository at {repo_path}")
        return Result.success(handle)

    @classmethod
    def init(
        cls, path: Union[str, Path], initial_branch: str = DEFAULT_BRANCH, **kwargs
    ) -> Result["GitWrapper"]:
        """Create a new repository.

        Fails with ``RepoAlreadyInitializedError`` when one already exists;
        callers treat that as usable and open it instead.
        """
        repo_path = Path(path).resolve()
        if (repo_path / ".git").exists():
            return Result.failure(RepoAlreadyInitializedError(str(repo_path)))

        logger.info(f"Initializing git repository at {repo_path}")
        try:
            repo_path.mkdir(parents=True, exist_ok=True)
            handle = cls(repo_path, **kwargs)
            handle.run_git(["init", "-q"])
            handle.run_git(["symbolic-ref", "HEAD", f"refs/heads/{initial_branch}"])
        except OSError as e:
            return Result.failure(
                GitError(f"Could not create repository directory: {e}")
            )
        except GitError as e:
            return Result.failure(e)
        logger.info("Git repository initialized")
        return Result.success(handle)

    def close(self) -> None:
        """Release the handle. Idempotent."""
        if self._open:
            self._open = False
            logger.debug(f"Closed git repository at {self.repo_path}")

    @property
    def is_open(self) -> bool:
        return self._open

    def _ensure_open(self) -> None:
        if not self._open:
            raise RepositoryClosedError(str(self.repo_path))

    # ------------------------------------------------------------------
    # Command runner
    # ------------------------------------------------------------------

    def run_git(
        self,
        args: List[str],
        check: bool = True,
        network: bool = False,
        env: Optional[Dict[str, str]] = None,
        retries: int = 3,
        retry_delay: float = 0.1,
    ) -> subprocess.CompletedProcess:
        """Run a git command via subprocess with retry for lock contention.

        Args:
            args: Git command arguments (without 'git' prefix)
            check: If True, raise a GitError subclass on non-zero exit
            network: The command talks to a remote; uses the network timeout
                and classifies transport/auth failures
            env: Extra environment variables for the command
            retries: Number of retries for index.lock contention (default: 3)
            retry_delay: Seconds to wait between retries (default: 0.1)

        Returns:
            CompletedProcess with command results

        Raises:
            RepositoryClosedError: If the handle was closed
            GitError: If check=True and command fails after all retries
        """
        self._ensure_open()
        cmd = ["git", "-C", str(self.repo_path)] + args
        run_env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}
        if env:
            run_env.update(env)
        timeout = self.network_timeout if network else self.timeout

        for attempt in range(retries + 1):
            try:
                result = subprocess.run(
                    cmd,
                    check=False,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    errors="surrogateescape",
                    timeout=timeout,
                    env=run_env,
                )
            except subprocess.TimeoutExpired as e:
                if network:
                    raise NetworkUnavailableError(
                        f"Git command timed out ({timeout}s): {' '.join(args[:2])}",
                        command=cmd,
                    ) from e
                if attempt < retries:
                    time.sleep(retry_delay * (attempt + 1))
                    continue
                raise GitError(
                    f"Git command timed out: {' '.join(args)}", command=cmd
                ) from e
            except FileNotFoundError:
                raise GitError("Git is not installed or not in PATH", command=cmd)

            # Check for index.lock contention (can retry)
            if result.returncode != 0 and result.stderr:
                if "index.lock" in result.stderr and attempt < retries:
                    logger.debug(
                        f"Git index.lock contention, retry {attempt + 1}/{retries}: {args}"
                    )
                    time.sleep(retry_delay * (attempt + 1))
                    continue

            if check and result.returncode != 0:
                raise classify_git_failure(
                    args,
                    cmd,
                    result.returncode,
                    (result.stderr or "").strip(),
                    network=network,
                )
            return result

        raise GitError(f"Git command failed after {retries} retries: {args}", command=cmd)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def current_signature(self) -> Optional[Signature]:
        """Author identity configured for this repository, or None if unset."""
        name = self._config_get("user.name")
        email = self._config_get("user.email")
        if not name or not email:
            return None
        return Signature.now(name, email)

    def set_signature(self, name: str, email: str) -> None:
        """Store the author identity in the repository-local config."""
        with self.lock:
            self.run_git(["config", "user.name", name])
            self.run_git(["config", "user.email", email])

    def _config_get(self, key: str) -> Optional[str]:
        result = self.run_git(["config", "--get", key], check=False)
        value = result.stdout.strip()
        return value or None

    # ------------------------------------------------------------------
    # Status and refs
    # ------------------------------------------------------------------

    def head_commit(self) -> Optional[str]:
        """Full hash of HEAD, or None on an unborn branch."""
        result = self.run_git(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def current_branch(self) -> str:
        """Name of the checked-out branch (may be unborn)."""
        result = self.run_git(["symbolic-ref", "--short", "-q", "HEAD"], check=False)
        branch = result.stdout.strip()
        if result.returncode != 0 or not branch:
            raise GitError("HEAD is detached; cannot determine current branch")
        return branch

    def changed_paths(self) -> List[str]:
        """Paths with staged, unstaged or untracked changes.

        Raises:
            GitError: If git status fails
        """
        result = self.run_git(
            ["status", "--porcelain", "-z", "--untracked-files=all"]
        )
        paths: List[str] = []
        entries = result.stdout.split("\0")
        i = 0
        while i < len(entries):
            entry = entries[i]
            i += 1
            if len(entry) < 4:
                continue
            status, path = entry[:2], entry[3:]
            paths.append(path)
            # Renames and copies carry the original path as a second field
            if "R" in status or "C" in status:
                if i < len(entries) and entries[i]:
                    paths.append(entries[i])
                i += 1
        return sorted(set(paths))

    def has_changes(self) -> Result[bool]:
        """True if the working tree differs from the last commit."""
        try:
            return Result.success(bool(self.changed_paths()))
        except GitError as e:
            return Result.failure(e)

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def resolve_path(self, relative_path: str) -> Path:
        """Absolute path of a note inside the working tree.

        Raises:
            NotePathError: If the path is empty, absolute, escapes the root
                or targets .git
        """
        try:
            normalized = normalize_relative_path(relative_path)
        except ValueError as e:
            raise NotePathError(relative_path, str(e))
        return self.repo_path / normalized

    def exists(self, relative_path: str) -> bool:
        return self.resolve_path(relative_path).is_file()

    def read_file(self, relative_path: str) -> str:
        """Read a file from the working tree.

        Raises:
            NoteNotFoundError: If the file does not exist
            NotePathError: If the path names a directory
            NoteIOError: If the file cannot be read
        """
        self._ensure_open()
        target = self.resolve_path(relative_path)
        try:
            return target.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            raise NoteNotFoundError(relative_path)
        except IsADirectoryError:
            raise NotePathError(relative_path, "path is a directory")
        except OSError as e:
            raise NoteIOError(relative_path, "read", e)

    def modified_time_ms(self, relative_path: str) -> int:
        """Last modification time of a working tree file, in milliseconds."""
        target = self.resolve_path(relative_path)
        try:
            return target.stat().st_mtime_ns // 1_000_000
        except FileNotFoundError:
            raise NoteNotFoundError(relative_path)
        except OSError as e:
            raise NoteIOError(relative_path, "stat", e)

    def write_file(self, relative_path: str, content: str) -> Path:
        """Atomically write a file in the working tree.

        Raises:
            NotePathError: If the target is a directory or a parent is a file
            NoteIOError: If the write fails for any other reason
        """
        self._ensure_open()
        target = self.resolve_path(relative_path)
        with self.lock:
            try:
                atomic_write_text(target, content)
            except (FileExistsError, NotADirectoryError):
                raise NotePathError(relative_path, "a parent of the path is a file")
            except IsADirectoryError:
                raise NotePathError(relative_path, "path is a directory")
            except OSError as e:
                raise NoteIOError(relative_path, "write", e)
        return target

    def remove_file(self, relative_path: str) -> None:
        """Delete a file from the working tree and prune emptied folders.

        Raises:
            NoteNotFoundError: If the file does not exist
            NotePathError: If the path names a directory
            NoteIOError: If the file cannot be deleted
        """
        self._ensure_open()
        target = self.resolve_path(relative_path)
        with self.lock:
            if target.is_dir():
                raise NotePathError(relative_path, "path is a directory")
            try:
                target.unlink()
            except (FileNotFoundError, NotADirectoryError):
                raise NoteNotFoundError(relative_path)
            except OSError as e:
                raise NoteIOError(relative_path, "delete", e)
            parent = target.parent
            while parent != self.repo_path:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent

    def stage_path(self, relative_path: str) -> None:
        """Stage additions, modifications and deletions under a path."""
        target = self.resolve_path(relative_path)
        rel = target.relative_to(self.repo_path).as_posix()
        with self.lock:
            if target.exists():
                self.run_git(["add", "-A", "--", rel])
            else:
                # A pathspec that matches nothing is an error for git add
                self.run_git(
                    ["rm", "-r", "-q", "--cached", "--ignore-unmatch", "--", rel]
                )

    def checkout_path(self, relative_path: str) -> Result[None]:
        """Discard all uncommitted modifications under ``relative_path``.

        Tracked files are restored to their last-committed content and
        untracked files under the path are removed. Nothing outside the
        path is touched.
        """
        try:
            target = self.resolve_path(relative_path)
            rel = target.relative_to(self.repo_path).as_posix()
            with self.lock:
                if self.head_commit() is None:
                    self.run_git(
                        ["rm", "-r", "-q", "--cached", "--ignore-unmatch", "--", rel]
                    )
                else:
                    self.run_git(["reset", "-q", "HEAD", "--", rel])
                    tracked = self.run_git(
                        ["ls-tree", "-r", "--name-only", "HEAD", "--", rel]
                    )
                    if tracked.stdout.strip():
                        self.run_git(["checkout", "HEAD", "--", rel])
                self.run_git(["clean", "-f", "-d", "-q", "--", rel])
            logger.info(f"Discarded uncommitted changes under '{rel}'")
            return Result.success(None)
        except (GitError, NotePathError) as e:
            return Result.failure(e)

