"""Storage façade for the notes repository.

``StorageManager`` is the single entry point callers use. It owns the open
repository handle, the sync engine and the index for the current root, and
keeps the three consistent: every note mutation writes the file, stages it
in git and updates that one index row under the repository lock.

No public method raises: failures come back as ``Result.failure`` with a
typed :class:`~notesync.exceptions.NotesyncError`.
"""

import concurrent.futures
import logging
import os
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from notesync.concurrency import CancellationToken, background_flights, check_cancelled
from notesync.config import NoteSyncConfig, config
from notesync.exceptions import (
    ConfigurationError,
    NoteAlreadyExistsError,
    NotePathError,
    NotesyncError,
    OperationCancelledError,
    OptimisticConflictError,
    RepoAlreadyInitializedError,
    RepoNotFoundError,
    RepositoryClosedError,
    StoragePermissionError,
    StoreError,
)
from notesync.models.schema import (
    AppStorage,
    CommitResult,
    IndexRecord,
    Note,
    Result,
    Signature,
    StorageConfiguration,
    SyncReport,
    SyncState,
    SyncStatus,
    utc_now,
)
from notesync.observability import timed_operation
from notesync.preferences import PreferencesStore
from notesync.services.git_sync_service import GitSyncEngine
from notesync.storage.git_wrapper import GitWrapper
from notesync.storage.index_store import IndexStore
from notesync.utils import is_hidden_path, iter_note_files, normalize_relative_path

logger = logging.getLogger(__name__)

BACKGROUND_COMMIT_MESSAGE = "Automatic commit"


class StorageManager:
    """Façade over repository handle, sync engine and index.

    Args:
        cfg: Engine configuration. Defaults to the global config.
        preferences: Preference store; defaults to the configured file.
        permission_checker: Returns True when device storage access is
            granted. Defaults to ``cfg.device_access_granted``.
    """

    def __init__(
        self,
        cfg: Optional[NoteSyncConfig] = None,
        preferences: Optional[PreferencesStore] = None,
        permission_checker: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.config = cfg or config
        self.preferences = preferences or PreferencesStore(
            self.config.get_preferences_path()
        )
        self._permission_checker = permission_checker or (
            lambda: self.config.device_access_granted
        )
        self._state_lock = threading.RLock()
        self._handle: Optional[GitWrapper] = None
        self._engine: Optional[GitSyncEngine] = None
        self._index: Optional[IndexStore] = None
        self._inflight: Optional[Future] = None
        self._inflight_token: Optional[CancellationToken] = None
        self._sync_state = SyncState()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def resolve_root(self, storage: StorageConfiguration) -> Path:
        """Absolute repository root for ``storage``, after access checks.

        Raises:
            StoragePermissionError: Device storage without access
            ConfigurationError: The root's parent is missing or read-only
        """
        if storage.requires_permission and not self._permission_checker():
            raise StoragePermissionError()

        app_data_dir = self.config.get_absolute_path(self.config.app_data_dir)
        root = storage.repo_path(app_data_dir)
        if isinstance(storage, AppStorage):
            try:
                root.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(
                    f"Cannot create app data directory {root.parent}: {e}",
                    config_key="app_data_dir",
                )
        if not root.parent.is_dir():
            raise ConfigurationError(
                f"Parent directory of repository root does not exist: {root.parent}",
                config_key="device_repo_path",
            )
        check_dir = root if root.is_dir() else root.parent
        if not _is_writable(check_dir):
            raise ConfigurationError(
                f"Repository location is not writable: {check_dir}",
                config_key="device_repo_path",
            )
        return root

    def open_repo(
        self,
        storage: Optional[StorageConfiguration] = None,
        init_if_missing: bool = True,
    ) -> Result[Path]:
        """Open (or create) the repository and its index.

        An existing handle on a different root is closed first. Opening
        the root that is already open is a no-op.
        """
        try:
            storage = storage or self.config.storage_configuration()
            root = self.resolve_root(storage)
        except NotesyncError as e:
            logger.error(f"Cannot open repository: {e}")
            return Result.failure(e)

        current = self._handle
        if current is not None:
            if current.repo_path == root and current.is_open:
                return Result.success(root)
            # Drains background work, which needs the state lock to finish
            logger.info(f"Switching repository from {current.repo_path} to {root}")
            self.close_repo()

        with self._state_lock:
            handle_result = self._open_or_init(root, init_if_missing)
            if handle_result.is_failure:
                return Result.failure(handle_result.error)
            handle = handle_result.value

            try:
                index = IndexStore.for_repository(root, self.config)
            except SQLAlchemyError as e:
                handle.close()
                return Result.failure(
                    StoreError("Cannot open index database", operation="open", original_error=e)
                )

            try:
                self.preferences.apply_git_author_defaults(
                    handle.current_signature(),
                    self.config.default_author_name,
                    self.config.default_author_email,
                )
                self.preferences.update(is_init=True, repo_path=str(root))
            except NotesyncError as e:
                index.close()
                handle.close()
                return Result.failure(e)

            self._handle = handle
            self._engine = GitSyncEngine(handle)
            self._index = index
        logger.info(f"Repository open at {root}")
        return Result.success(root)

    def _open_or_init(self, root: Path, init_if_missing: bool) -> Result[GitWrapper]:
        kwargs = dict(
            timeout=self.config.git_timeout, network_timeout=self.config.network_timeout
        )
        result = GitWrapper.open(root, **kwargs)
        if result.is_success or not isinstance(result.error, RepoNotFoundError):
            return result
        if not init_if_missing:
            return result

        result = GitWrapper.init(root, **kwargs)
        if isinstance(result.error, RepoAlreadyInitializedError):
            # Created concurrently; it is usable as is
            return GitWrapper.open(root, **kwargs)
        return result

    def close_repo(self, timeout: Optional[float] = None) -> Result[None]:
        """Cancel and drain in-flight background work, then close.

        Idempotent. Afterwards every operation fails with
        ``RepositoryClosedError`` until the next ``open_repo``.
        """
        with self._state_lock:
            token, future = self._inflight_token, self._inflight
        if token is not None and future is not None and not future.done():
            logger.info("Cancelling in-flight background operation before close")
            token.cancel("repository closing")
            done, _ = concurrent.futures.wait([future], timeout=timeout)
            if not done:
                logger.warning("Background operation still running after close timeout")

        with self._state_lock:
            handle, index = self._handle, self._index
            if handle is None:
                return Result.success(None)
            with handle.lock:
                if index is not None:
                    index.close()
                handle.close()
            self._handle = self._engine = self._index = None
        logger.info(f"Repository at {handle.repo_path} closed")
        return Result.success(None)

    @property
    def is_open(self) -> bool:
        return self._handle is not None and self._handle.is_open

    @property
    def repo_path(self) -> Optional[Path]:
        return self._handle.repo_path if self._handle else None

    @property
    def index(self) -> Optional[IndexStore]:
        return self._index

    @property
    def sync_state(self) -> SyncState:
        with self._state_lock:
            state = self._sync_state
            return SyncState(state.status, state.started_at, state.last_completed_at)

    def _require_open(self) -> Tuple[GitWrapper, GitSyncEngine, IndexStore]:
        handle, engine, index = self._handle, self._engine, self._index
        if handle is None or engine is None or index is None or not handle.is_open:
            raise RepositoryClosedError()
        return handle, engine, index

    def resolve_signature(self) -> Signature:
        handle = self._handle
        return self.preferences.resolve_signature(
            handle.current_signature() if handle is not None and handle.is_open else None,
            self.config.default_author_name,
            self.config.default_author_email,
        )

    # =========================================================================
    # Notes
    # =========================================================================

    @staticmethod
    def _normalize(relative_path: str) -> str:
        try:
            return normalize_relative_path(relative_path)
        except ValueError as e:
            raise NotePathError(relative_path, str(e))

    @classmethod
    def _note_path(cls, relative_path: str) -> str:
        """Normalize a path for a note mutation.

        Hidden files and folders are refused: the index rebuild never
        walks them, so a note stored there would drop out of the index.
        """
        rel = cls._normalize(relative_path)
        if is_hidden_path(rel):
            raise NotePathError(relative_path, "hidden files and folders cannot hold notes")
        return rel

    @staticmethod
    def _note_from_disk(handle: GitWrapper, rel: str) -> Note:
        return Note(
            relative_path=rel,
            content=handle.read_file(rel),
            last_modified_time_millis=handle.modified_time_ms(rel),
        )

    def create_note(self, note: Note) -> Result[Note]:
        """Write a new note file; fails if the path is already taken."""
        try:
            handle, _, index = self._require_open()
            rel = self._note_path(note.relative_path)
            with handle.lock, timed_operation("create_note", path=rel):
                if handle.exists(rel):
                    raise NoteAlreadyExistsError(rel)
                handle.write_file(rel, note.content)
                handle.stage_path(rel)
                index.upsert_path(handle.repo_path, rel).unwrap()
                created = self._note_from_disk(handle, rel)
            logger.debug(f"Created note {rel}")
            return Result.success(created)
        except NotesyncError as e:
            logger.warning(f"create_note failed: {e}")
            return Result.failure(e)

    def update_note(self, new: Note, expected_old: Note) -> Result[Note]:
        """Replace a note if it still holds ``expected_old.content``.

        A different ``new.relative_path`` renames the note. Nothing is
        written when the on-disk content no longer matches.
        """
        try:
            handle, _, index = self._require_open()
            old_rel = self._note_path(expected_old.relative_path)
            new_rel = self._note_path(new.relative_path)
            with handle.lock, timed_operation("update_note", path=new_rel):
                if not handle.exists(old_rel):
                    raise OptimisticConflictError(old_rel, f"Note '{old_rel}' no longer exists")
                if handle.read_file(old_rel) != expected_old.content:
                    raise OptimisticConflictError(old_rel)

                if new_rel != old_rel:
                    if handle.exists(new_rel):
                        raise NoteAlreadyExistsError(new_rel)
                    handle.write_file(new_rel, new.content)
                    handle.remove_file(old_rel)
                    handle.stage_path(old_rel)
                    index.remove_path(old_rel).unwrap()
                    logger.debug(f"Renamed note {old_rel} -> {new_rel}")
                else:
                    handle.write_file(new_rel, new.content)
                handle.stage_path(new_rel)
                index.upsert_path(handle.repo_path, new_rel).unwrap()
                updated = self._note_from_disk(handle, new_rel)
            return Result.success(updated)
        except NotesyncError as e:
            logger.warning(f"update_note failed: {e}")
            return Result.failure(e)

    def delete_note(self, relative_path: str) -> Result[None]:
        """Delete a note file and its index record."""
        try:
            handle, _, index = self._require_open()
            rel = self._note_path(relative_path)
            with handle.lock, timed_operation("delete_note", path=rel):
                handle.remove_file(rel)
                handle.stage_path(rel)
                index.remove_path(rel).unwrap()
            logger.debug(f"Deleted note {rel}")
            return Result.success(None)
        except NotesyncError as e:
            logger.warning(f"delete_note failed: {e}")
            return Result.failure(e)

    def get_note(self, relative_path: str) -> Result[Optional[Note]]:
        """Indexed note at ``relative_path``, or None if not indexed."""
        try:
            _, _, index = self._require_open()
            record = index.record_for_path(relative_path)
            return Result.success(record.to_note() if record else None)
        except NotesyncError as e:
            return Result.failure(e)
        except SQLAlchemyError as e:
            return Result.failure(StoreError("Index lookup failed", operation="get", original_error=e))

    def get_record(self, relative_path: str) -> Result[Optional[IndexRecord]]:
        try:
            _, _, index = self._require_open()
            return Result.success(index.record_for_path(relative_path))
        except NotesyncError as e:
            return Result.failure(e)
        except SQLAlchemyError as e:
            return Result.failure(StoreError("Index lookup failed", operation="get", original_error=e))

    def list_notes(self, folder: Optional[str] = None) -> Result[List[IndexRecord]]:
        try:
            _, _, index = self._require_open()
            return Result.success(index.list_records(folder))
        except NotesyncError as e:
            return Result.failure(e)
        except SQLAlchemyError as e:
            return Result.failure(StoreError("Index listing failed", operation="list", original_error=e))

    def search_notes(self, query: str, limit: int = 50) -> Result[List[IndexRecord]]:
        try:
            _, _, index = self._require_open()
            return Result.success(index.search(query, limit=limit))
        except NotesyncError as e:
            return Result.failure(e)
        except SQLAlchemyError as e:
            return Result.failure(StoreError("Index search failed", operation="search", original_error=e))

    def notes_with_tag(self, tag: str) -> Result[List[IndexRecord]]:
        try:
            _, _, index = self._require_open()
            return Result.success(index.records_with_tag(tag))
        except NotesyncError as e:
            return Result.failure(e)
        except SQLAlchemyError as e:
            return Result.failure(StoreError("Index query failed", operation="tag", original_error=e))

    # =========================================================================
    # Index
    # =========================================================================

    def update_database(
        self, force: bool = False, cancel: Optional[CancellationToken] = None
    ) -> Result[bool]:
        """Bring the index in line with the working tree.

        ``force`` always rebuilds; otherwise the rebuild only happens when
        the tree fingerprint changed. Success advances the sync watermark.

        Returns:
            Result carrying whether a rebuild happened.
        """
        try:
            handle, _, index = self._require_open()
        except NotesyncError as e:
            return Result.failure(e)

        if force:
            result = index.rebuild(handle.repo_path, cancel=cancel).map(lambda _: True)
        else:
            result = index.update_if_needed(handle.repo_path, cancel=cancel)
        if result.is_failure:
            return result

        try:
            self.preferences.record_database_sync()
        except NotesyncError as e:
            return Result.failure(e)
        return result

    def _reindex_under(self, handle: GitWrapper, index: IndexStore, rel: str) -> None:
        """Refresh the index rows for every note at or beneath ``rel``."""
        paths = set(index.notes_in_folder(rel))
        target = handle.resolve_path(rel)
        if target.is_dir():
            paths.update(
                f"{rel}/{sub}" for sub, _ in iter_note_files(target, index.extensions)
            )
        else:
            paths.add(rel)
        for path in sorted(paths):
            index.upsert_path(handle.repo_path, path).unwrap()

    # =========================================================================
    # Git pass-throughs
    # =========================================================================

    def has_changes(self) -> Result[bool]:
        try:
            handle, _, _ = self._require_open()
        except NotesyncError as e:
            return Result.failure(e)
        return handle.has_changes()

    def commit_all(
        self, message: str = "", cancel: Optional[CancellationToken] = None
    ) -> Result[CommitResult]:
        try:
            _, engine, _ = self._require_open()
            signature = self.resolve_signature()
        except NotesyncError as e:
            return Result.failure(e)
        return engine.commit_all(signature, message, cancel=cancel)

    def sync(self, cancel: Optional[CancellationToken] = None) -> Result[SyncReport]:
        """Sync with the configured remote (local only when none is set)."""
        try:
            _, engine, _ = self._require_open()
            signature = self.resolve_signature()
        except NotesyncError as e:
            return Result.failure(e)
        return engine.sync(self.config.remote(), signature=signature, cancel=cancel)

    def discard_changes(self, relative_path: str) -> Result[None]:
        """Restore a path to its last commit and refresh its index rows."""
        try:
            handle, engine, index = self._require_open()
            rel = self._normalize(relative_path)
            with handle.lock:
                result = engine.discard_changes(rel)
                if result.is_success:
                    self._reindex_under(handle, index, rel)
            return result
        except NotesyncError as e:
            return Result.failure(e)

    # =========================================================================
    # Background cycle
    # =========================================================================

    def perform_background_git_operations(
        self, cancel: Optional[CancellationToken] = None
    ) -> Result[None]:
        """Commit (if dirty), sync, then force-rebuild the index.

        Single flight per repository root: a call made while a cycle is
        running on the same root, from this manager or another one, waits
        for it and returns the same result instead of starting another. A
        failing stage stops the cycle; the stages before it keep their
        effects.
        """
        root = self.repo_path
        with self._state_lock:
            running = self._inflight
            if running is not None and not running.done():
                owner = False
            else:
                token = cancel or CancellationToken()
                if root is not None:
                    running, token, owner = background_flights.claim(root, token)
                else:
                    running, owner = Future(), True
            if owner:
                self._inflight = running
                self._inflight_token = token
                self._sync_state = SyncState(
                    status=SyncStatus.RUNNING,
                    started_at=utc_now(),
                    last_completed_at=self._sync_state.last_completed_at,
                )

        if not owner:
            logger.debug("Background git operations already running; joining")
            return running.result()

        try:
            result = self._run_background_cycle(token)
        except BaseException as e:
            running.set_exception(e)
            raise
        else:
            running.set_result(result)
            return result
        finally:
            if root is not None:
                background_flights.release(root, running)
            with self._state_lock:
                if self._inflight is running:
                    self._inflight = None
                    self._inflight_token = None
                completed = (
                    running.done()
                    and running.exception() is None
                    and running.result().is_success
                )
                self._sync_state = SyncState(
                    status=SyncStatus.IDLE,
                    started_at=self._sync_state.started_at,
                    last_completed_at=(
                        utc_now() if completed else self._sync_state.last_completed_at
                    ),
                )

    def _run_background_cycle(self, token: CancellationToken) -> Result[None]:
        with timed_operation("background_git_operations") as op:
            changes = self.has_changes()
            if changes.is_failure:
                op["failed_stage"] = "status"
                return Result.failure(changes.error)

            if changes.value:
                try:
                    check_cancelled(token, "background_git_operations", "commit")
                except OperationCancelledError as e:
                    return Result.failure(e)
                commit = self.commit_all(BACKGROUND_COMMIT_MESSAGE, cancel=token)
                if commit.is_failure:
                    op["failed_stage"] = "commit"
                    return Result.failure(commit.error)

            synced = self.sync(cancel=token)
            if synced.is_failure:
                op["failed_stage"] = "sync"
                return Result.failure(synced.error)
            op["sync"] = synced.value.outcome.value

            rebuilt = self.update_database(force=True, cancel=token)
            if rebuilt.is_failure:
                op["failed_stage"] = "update_database"
                return Result.failure(rebuilt.error)
        logger.info("Background git operations complete")
        return Result.success(None)


def _is_writable(path: Path) -> bool:
    return os.access(path, os.W_OK | os.X_OK)
