"""Common test fixtures for notesync.

Tests drive real ``git`` processes. A bare repository under ``tmp_path``
plays the remote; :func:`clone` creates a second working copy that acts as
another device pushing to it.
"""

import os
import subprocess
from pathlib import Path

import pytest

from notesync.config import config
from notesync.models.schema import DeviceStorage
from notesync.observability import metrics
from notesync.preferences import PreferencesStore
from notesync.services.storage_manager import StorageManager
from notesync.storage.git_wrapper import GitWrapper

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Other Device",
    "GIT_AUTHOR_EMAIL": "other@example.com",
    "GIT_COMMITTER_NAME": "Other Device",
    "GIT_COMMITTER_EMAIL": "other@example.com",
    "GIT_TERMINAL_PROMPT": "0",
}


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` outside the engine and return stdout."""
    result = subprocess.run(
        ["git", "-C", str(cwd), "-c", "commit.gpgsign=false", *args],
        capture_output=True,
        text=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )
    return result.stdout


def clone(remote: Path, dest: Path) -> Path:
    """Second working copy of ``remote`` on branch main."""
    subprocess.run(
        ["git", "clone", "-q", str(remote), str(dest)],
        capture_output=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )
    if git(dest, "symbolic-ref", "--short", "HEAD").strip() != "main":
        git(dest, "symbolic-ref", "HEAD", "refs/heads/main")
    return dest


def commit_file(repo: Path, rel: str, content: str, message: str = "edit") -> None:
    path = repo / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)


def snapshot(root: Path) -> dict:
    """Bytes of every file in the working tree, keyed by relative path."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(root).parts
    }


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "app_data_dir", tmp_path / "appdata")
    monkeypatch.setattr(config, "storage_mode", "app")
    monkeypatch.setattr(config, "device_repo_path", None)
    monkeypatch.setattr(config, "device_access_granted", True)
    monkeypatch.setattr(config, "in_memory_db", True)
    monkeypatch.setattr(config, "database_path", None)
    monkeypatch.setattr(config, "preferences_path", tmp_path / "preferences.json")
    monkeypatch.setattr(config, "remote_url", None)
    monkeypatch.setattr(config, "remote_name", "origin")
    monkeypatch.setattr(config, "sync_branch", None)
    monkeypatch.setattr(config, "sync_min_interval_seconds", 300)
    monkeypatch.setattr(config, "sync_on_every_start", False)
    monkeypatch.setattr(config, "sync_only_on_wifi", False)
    monkeypatch.setattr(config, "sync_on_specific_wifi", False)
    monkeypatch.setattr(config, "required_ssid", "")
    monkeypatch.setattr(config, "note_extensions", [".md"])
    monkeypatch.setattr(config, "default_author_name", "Test User")
    monkeypatch.setattr(config, "default_author_email", "test@example.com")
    yield config


@pytest.fixture
def repo_dir(tmp_path):
    return tmp_path / "notes"


@pytest.fixture
def handle(repo_dir):
    """Freshly initialized repository handle."""
    wrapper = GitWrapper.init(repo_dir).unwrap()
    yield wrapper
    wrapper.close()


@pytest.fixture
def preferences(tmp_path):
    return PreferencesStore(tmp_path / "preferences.json")


@pytest.fixture
def manager(test_config, preferences, repo_dir):
    """StorageManager with an open repository at ``repo_dir``."""
    storage_manager = StorageManager(test_config, preferences=preferences)
    storage_manager.open_repo(DeviceStorage(repo_dir)).unwrap()
    yield storage_manager
    storage_manager.close_repo()


@pytest.fixture
def remote_repo(tmp_path):
    """Empty bare repository whose default branch is main."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "-q", "--bare", str(remote)], capture_output=True, check=True
    )
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")
    return remote


@pytest.fixture
def synced_manager(manager, remote_repo, monkeypatch):
    """Manager whose configured remote is the bare repository."""
    monkeypatch.setattr(manager.config, "remote_url", str(remote_repo))
    return manager
