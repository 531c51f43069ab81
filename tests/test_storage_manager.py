"""Tests for the StorageManager façade."""

import threading
import time

import pytest

from notesync.exceptions import (
    ConfigurationError,
    NetworkUnavailableError,
    NoteAlreadyExistsError,
    NoteNotFoundError,
    NotePathError,
    OperationCancelledError,
    OptimisticConflictError,
    RepoNotFoundError,
    RepositoryClosedError,
    StoragePermissionError,
)
from notesync.models.schema import DeviceStorage, Note, Result, SyncOutcome, SyncStatus
from notesync.preferences import PreferencesStore
from notesync.services.storage_manager import BACKGROUND_COMMIT_MESSAGE, StorageManager
from tests.conftest import clone, commit_file, git


def index_contents(manager):
    return {r.relative_path: r.content for r in manager.list_notes().unwrap()}


class TestOpenClose:
    """Tests for repository lifecycle."""

    def test_open_app_storage_creates_repository(self, test_config, preferences):
        manager = StorageManager(test_config, preferences=preferences)
        root = manager.open_repo().unwrap()
        try:
            assert (root / ".git").is_dir()
            assert root.parent == test_config.app_data_dir.resolve()
            prefs = preferences.load()
            assert prefs.is_init
            assert prefs.repo_path == str(root)
            assert prefs.author_name and prefs.author_email
        finally:
            manager.close_repo()

    def test_reopen_same_root_is_noop(self, manager, repo_dir):
        handle_before = manager._handle
        assert manager.open_repo(DeviceStorage(repo_dir)).is_success
        assert manager._handle is handle_before

    def test_switching_roots_closes_previous(self, manager, tmp_path):
        other = tmp_path / "other"
        assert manager.open_repo(DeviceStorage(other)).is_success
        assert manager.repo_path == other.resolve()

    def test_device_storage_needs_permission(self, test_config, preferences, repo_dir):
        manager = StorageManager(
            test_config, preferences=preferences, permission_checker=lambda: False
        )
        result = manager.open_repo(DeviceStorage(repo_dir))
        assert isinstance(result.error, StoragePermissionError)
        assert not repo_dir.exists()
        assert not manager.is_open

    def test_device_storage_missing_parent(self, test_config, preferences, tmp_path):
        manager = StorageManager(test_config, preferences=preferences)
        result = manager.open_repo(DeviceStorage(tmp_path / "no" / "such" / "dir"))
        assert isinstance(result.error, ConfigurationError)

    def test_open_without_init(self, test_config, preferences, repo_dir):
        repo_dir.mkdir()
        manager = StorageManager(test_config, preferences=preferences)
        result = manager.open_repo(DeviceStorage(repo_dir), init_if_missing=False)
        assert isinstance(result.error, RepoNotFoundError)

    def test_operations_after_close_fail(self, manager):
        assert manager.close_repo().is_success
        assert manager.close_repo().is_success

        assert isinstance(manager.create_note(Note.new("a.md")).error, RepositoryClosedError)
        assert isinstance(manager.get_note("a.md").error, RepositoryClosedError)
        assert isinstance(manager.update_database().error, RepositoryClosedError)
        assert isinstance(manager.commit_all().error, RepositoryClosedError)
        assert isinstance(manager.sync().error, RepositoryClosedError)
        assert isinstance(
            manager.perform_background_git_operations().error, RepositoryClosedError
        )


class TestNoteOperations:
    """Tests for create, update, delete and queries."""

    def test_create_writes_stages_and_indexes(self, manager, repo_dir):
        created = manager.create_note(Note.new("folder/a.md", "# Alpha\nbody")).unwrap()

        assert created.content == "# Alpha\nbody"
        assert (repo_dir / "folder/a.md").read_text() == "# Alpha\nbody"
        assert git(repo_dir, "diff", "--cached", "--name-only").split() == ["folder/a.md"]
        assert manager.get_note("folder/a.md").unwrap().content == "# Alpha\nbody"
        assert manager.get_record("folder/a.md").unwrap().title == "Alpha"

    def test_create_existing_fails(self, manager):
        manager.create_note(Note.new("a.md", "one")).unwrap()
        result = manager.create_note(Note.new("a.md", "two"))
        assert isinstance(result.error, NoteAlreadyExistsError)
        assert manager.get_note("a.md").unwrap().content == "one"

    @pytest.mark.parametrize(
        "bad", ["../outside.md", ".git/hooks/x.md", "", ".hidden.md", ".drafts/d.md"]
    )
    def test_create_rejects_bad_paths(self, manager, bad):
        assert isinstance(manager.create_note(Note.new(bad, "x")).error, NotePathError)

    def test_create_below_existing_note_fails(self, manager, repo_dir):
        manager.create_note(Note.new("a.md", "a")).unwrap()

        result = manager.create_note(Note.new("a.md/b.md", "b"))

        assert isinstance(result.error, NotePathError)
        assert (repo_dir / "a.md").read_text() == "a"
        assert set(index_contents(manager)) == {"a.md"}

    def test_rename_into_hidden_folder_fails(self, manager, repo_dir):
        old = manager.create_note(Note.new("a.md", "a")).unwrap()

        result = manager.update_note(Note.new(".drafts/a.md", "a"), old)

        assert isinstance(result.error, NotePathError)
        assert not (repo_dir / ".drafts").exists()
        assert set(index_contents(manager)) == {"a.md"}

    def test_get_unindexed_note_is_none(self, manager):
        assert manager.get_note("nope.md").unwrap() is None

    def test_update_with_current_content(self, manager, repo_dir):
        old = manager.create_note(Note.new("a.md", "v1")).unwrap()

        updated = manager.update_note(Note.new("a.md", "v2"), old).unwrap()

        assert updated.content == "v2"
        assert (repo_dir / "a.md").read_text() == "v2"
        assert manager.get_note("a.md").unwrap().content == "v2"

    def test_update_with_stale_expectation_changes_nothing(self, manager, repo_dir):
        manager.create_note(Note.new("a.md", "v1")).unwrap()
        (repo_dir / "a.md").write_text("edited elsewhere")

        result = manager.update_note(Note.new("a.md", "mine"), Note.new("a.md", "v1"))

        assert isinstance(result.error, OptimisticConflictError)
        assert (repo_dir / "a.md").read_text() == "edited elsewhere"

    def test_update_missing_note_is_a_conflict(self, manager):
        result = manager.update_note(Note.new("a.md", "x"), Note.new("a.md", "old"))
        assert isinstance(result.error, OptimisticConflictError)

    def test_rename(self, manager, repo_dir):
        old = manager.create_note(Note.new("inbox/a.md", "text")).unwrap()

        renamed = manager.update_note(Note.new("archive/b.md", "text"), old).unwrap()

        assert renamed.relative_path == "archive/b.md"
        assert not (repo_dir / "inbox").exists()
        assert (repo_dir / "archive/b.md").read_text() == "text"
        assert set(index_contents(manager)) == {"archive/b.md"}

    def test_rename_onto_existing_note_fails(self, manager, repo_dir):
        old = manager.create_note(Note.new("a.md", "a")).unwrap()
        manager.create_note(Note.new("b.md", "b")).unwrap()

        result = manager.update_note(Note.new("b.md", "a"), old)

        assert isinstance(result.error, NoteAlreadyExistsError)
        assert (repo_dir / "a.md").read_text() == "a"
        assert (repo_dir / "b.md").read_text() == "b"

    def test_delete(self, manager, repo_dir):
        manager.create_note(Note.new("dir/a.md", "a")).unwrap()

        assert manager.delete_note("dir/a.md").is_success

        assert not (repo_dir / "dir").exists()
        assert manager.get_note("dir/a.md").unwrap() is None
        assert manager.has_changes().unwrap() is False

    def test_delete_missing(self, manager):
        assert isinstance(manager.delete_note("missing.md").error, NoteNotFoundError)

    def test_delete_directory_fails(self, manager, repo_dir):
        manager.create_note(Note.new("folder/x.md", "x")).unwrap()

        result = manager.delete_note("folder")

        assert isinstance(result.error, NotePathError)
        assert (repo_dir / "folder/x.md").read_text() == "x"
        assert set(index_contents(manager)) == {"folder/x.md"}

    def test_index_matches_full_rebuild_after_mutations(self, manager):
        a = manager.create_note(Note.new("a.md", "# A")).unwrap()
        manager.create_note(Note.new("sub/b.md", "# B")).unwrap()
        manager.update_note(Note.new("sub/c.md", "# C"), a).unwrap()
        manager.delete_note("sub/b.md").unwrap()
        incremental = index_contents(manager)

        manager.update_database(force=True).unwrap()

        assert index_contents(manager) == incremental == {"sub/c.md": "# C"}

    def test_queries(self, manager):
        manager.create_note(Note.new("work/plan.md", "---\ntags: [urgent]\n---\nShip it")).unwrap()
        manager.create_note(Note.new("home/list.md", "Buy milk")).unwrap()

        assert [r.relative_path for r in manager.list_notes("work").unwrap()] == ["work/plan.md"]
        assert [r.relative_path for r in manager.search_notes("milk").unwrap()] == ["home/list.md"]
        assert [r.relative_path for r in manager.notes_with_tag("urgent").unwrap()] == [
            "work/plan.md"
        ]


class TestUpdateDatabase:
    """Tests for index refresh and the sync watermark."""

    def test_second_update_without_changes_does_not_rebuild(self, manager, repo_dir):
        (repo_dir / "a.md").write_text("a")
        (repo_dir / "b.md").write_text("b")

        assert manager.update_database(force=False).unwrap() is True
        assert manager.update_database(force=False).unwrap() is False
        assert set(index_contents(manager)) == {"a.md", "b.md"}

    def test_external_edit_is_picked_up(self, manager, repo_dir):
        manager.update_database().unwrap()
        (repo_dir / "new.md").write_text("from outside")

        assert manager.update_database().unwrap() is True
        assert manager.get_note("new.md").unwrap().content == "from outside"

    def test_force_always_rebuilds(self, manager):
        manager.update_database().unwrap()
        assert manager.update_database(force=True).unwrap() is True

    def test_watermark_is_persisted(self, manager, preferences):
        assert preferences.last_database_sync_time_ms == 0

        manager.update_database().unwrap()

        stored = PreferencesStore(preferences.path).load().last_database_sync_time_ms
        assert stored > 0
        assert stored == preferences.last_database_sync_time_ms

    def test_failure_leaves_watermark(self, manager, preferences):
        manager.close_repo()
        assert manager.update_database().is_failure
        assert preferences.last_database_sync_time_ms == 0


class TestCommitAndSync:
    """Tests for the git pass-throughs."""

    def test_commit_uses_preferred_author(self, manager, repo_dir, preferences):
        preferences.update(author_name="Pref Author", author_email="pref@example.com")
        manager.create_note(Note.new("a.md", "a")).unwrap()

        commit = manager.commit_all("first note").unwrap()

        assert commit.created
        assert git(repo_dir, "log", "-1", "--format=%an <%ae> %s").strip() == (
            "Pref Author <pref@example.com> first note"
        )
        assert manager.has_changes().unwrap() is False

    def test_sync_without_remote_is_local_only(self, manager):
        assert manager.sync().unwrap().outcome is SyncOutcome.LOCAL_ONLY

    def test_sync_pushes_to_configured_remote(self, synced_manager, remote_repo):
        synced_manager.create_note(Note.new("a.md", "a")).unwrap()
        synced_manager.commit_all().unwrap()

        assert synced_manager.sync().unwrap().outcome is SyncOutcome.PUSHED
        assert git(remote_repo, "log", "-1", "--format=%s", "main").strip() == "Update notes"


class TestBackgroundOperations:
    """Tests for perform_background_git_operations."""

    def test_commits_pushes_and_rebuilds(self, synced_manager, remote_repo, preferences):
        synced_manager.create_note(Note.new("a.md", "a")).unwrap()

        assert synced_manager.perform_background_git_operations().is_success

        assert synced_manager.has_changes().unwrap() is False
        assert git(remote_repo, "log", "-1", "--format=%s", "main").strip() == (
            BACKGROUND_COMMIT_MESSAGE
        )
        state = synced_manager.sync_state
        assert state.status is SyncStatus.IDLE
        assert state.last_completed_at is not None
        assert preferences.last_database_sync_time_ms > 0

    def test_clean_tree_skips_commit(self, synced_manager, repo_dir):
        synced_manager.create_note(Note.new("a.md", "a")).unwrap()
        synced_manager.commit_all("mine").unwrap()

        synced_manager.perform_background_git_operations().unwrap()

        assert git(repo_dir, "log", "-1", "--format=%s").strip() == "mine"

    def test_pulls_and_indexes_remote_notes(self, synced_manager, remote_repo, tmp_path):
        synced_manager.create_note(Note.new("a.md", "a")).unwrap()
        synced_manager.perform_background_git_operations().unwrap()
        other = clone(remote_repo, tmp_path / "other")
        commit_file(other, "remote.md", "# From elsewhere")
        git(other, "push", "-q", "origin", "main")

        synced_manager.perform_background_git_operations().unwrap()

        record = synced_manager.get_record("remote.md").unwrap()
        assert record.title == "From elsewhere"

    def test_sync_failure_keeps_commit(self, manager, repo_dir, tmp_path, monkeypatch):
        monkeypatch.setattr(manager.config, "remote_url", str(tmp_path / "missing.git"))
        manager.create_note(Note.new("a.md", "a")).unwrap()

        result = manager.perform_background_git_operations()

        assert isinstance(result.error, NetworkUnavailableError)
        assert manager.has_changes().unwrap() is False
        assert git(repo_dir, "log", "-1", "--format=%s").strip() == BACKGROUND_COMMIT_MESSAGE
        state = manager.sync_state
        assert state.status is SyncStatus.IDLE
        assert state.last_completed_at is None

    def test_concurrent_callers_share_one_run(self, manager, monkeypatch):
        entered = threading.Event()
        release = threading.Event()
        calls = []
        shared = Result.success(None)

        def slow_cycle(token):
            calls.append(token)
            entered.set()
            release.wait(5)
            return shared

        monkeypatch.setattr(manager, "_run_background_cycle", slow_cycle)
        results = []
        first = threading.Thread(
            target=lambda: results.append(manager.perform_background_git_operations())
        )
        first.start()
        assert entered.wait(5)
        assert manager.sync_state.is_running

        second = threading.Thread(
            target=lambda: results.append(manager.perform_background_git_operations())
        )
        second.start()
        time.sleep(0.2)
        release.set()
        first.join(5)
        second.join(5)

        assert len(calls) == 1
        assert results == [shared, shared]

    def test_managers_on_one_root_share_one_run(
        self, manager, test_config, preferences, repo_dir, monkeypatch
    ):
        other = StorageManager(test_config, preferences=preferences)
        other.open_repo(DeviceStorage(repo_dir)).unwrap()
        entered = threading.Event()
        release = threading.Event()
        calls = []
        shared = Result.success(None)

        def slow_cycle(token):
            calls.append(token)
            entered.set()
            release.wait(5)
            return shared

        monkeypatch.setattr(manager, "_run_background_cycle", slow_cycle)
        monkeypatch.setattr(other, "_run_background_cycle", slow_cycle)
        results = []
        first = threading.Thread(
            target=lambda: results.append(manager.perform_background_git_operations())
        )
        first.start()
        try:
            assert entered.wait(5)
            second = threading.Thread(
                target=lambda: results.append(other.perform_background_git_operations())
            )
            second.start()
            time.sleep(0.2)
            release.set()
            first.join(5)
            second.join(5)
        finally:
            release.set()
            other.close_repo()

        assert len(calls) == 1
        assert results == [shared, shared]
        assert not other.sync_state.is_running
        assert manager.sync_state.status is SyncStatus.IDLE

    def test_close_cancels_in_flight_cycle(self, manager, monkeypatch):
        entered = threading.Event()

        def cancellable_cycle(token):
            entered.set()
            for _ in range(500):
                if token.cancelled:
                    break
                threading.Event().wait(0.01)
            try:
                token.raise_if_cancelled("background_git_operations", "test")
            except OperationCancelledError as e:
                return Result.failure(e)
            return Result.success(None)

        monkeypatch.setattr(manager, "_run_background_cycle", cancellable_cycle)
        results = []
        worker = threading.Thread(
            target=lambda: results.append(manager.perform_background_git_operations())
        )
        worker.start()
        assert entered.wait(5)

        manager.close_repo(timeout=5)
        worker.join(5)

        assert isinstance(results[0].error, OperationCancelledError)
        assert not manager.is_open


class TestDiscardChanges:
    """Discarding a subtree restores files and index rows."""

    def test_discard_assets_folder(self, manager, repo_dir):
        a = manager.create_note(Note.new("assets/a.md", "original a")).unwrap()
        keep = manager.create_note(Note.new("notes/keep.md", "original keep")).unwrap()
        manager.commit_all("baseline").unwrap()

        manager.update_note(Note.new("assets/a.md", "changed a"), a).unwrap()
        manager.create_note(Note.new("assets/new.md", "untracked")).unwrap()
        manager.update_note(Note.new("notes/keep.md", "changed keep"), keep).unwrap()

        assert manager.discard_changes("assets").is_success

        assert (repo_dir / "assets/a.md").read_text() == "original a"
        assert not (repo_dir / "assets/new.md").exists()
        assert (repo_dir / "notes/keep.md").read_text() == "changed keep"
        assert index_contents(manager) == {
            "assets/a.md": "original a",
            "notes/keep.md": "changed keep",
        }

    def test_discard_rejects_escaping_path(self, manager):
        assert isinstance(manager.discard_changes("../x").error, NotePathError)
