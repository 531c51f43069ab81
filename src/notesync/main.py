#!/usr/bin/env python
"""Command-line entry point for notesync."""
import argparse
import json
import logging
import os
import sys
from pathlib import Path

from notesync import __version__
from notesync.config import config
from notesync.models.schema import Result
from notesync.observability import configure_logging, metrics
from notesync.services.favorites_manager import FavoritesManager
from notesync.services.scheduler import BackgroundScheduler
from notesync.services.storage_manager import StorageManager

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="notesync", description="Git-backed markdown notes with a local index"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--repo",
        help="Repository root (device storage). Defaults to the configured location",
        type=str,
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTESYNC_LOG_LEVEL", "WARNING"),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("open", help="Open or initialize the repository and index it")
    sub.add_parser("status", help="Show repository, index and sync status")
    reload_parser = sub.add_parser("reload", help="Update the index from the working tree")
    reload_parser.add_argument("--force", action="store_true", help="Always rebuild")
    commit_parser = sub.add_parser("commit", help="Commit all changes")
    commit_parser.add_argument("-m", "--message", default="", help="Commit message")
    sub.add_parser("sync", help="Sync with the configured remote")
    sub.add_parser("background", help="Run one background cycle if it is due")
    discard_parser = sub.add_parser("discard", help="Discard uncommitted changes under a path")
    discard_parser.add_argument("path")

    fav_parser = sub.add_parser("favorites", help="Show or edit favorite folders and tags")
    fav_parser.add_argument(
        "action",
        nargs="?",
        choices=["add-folder", "remove-folder", "add-tag", "remove-tag"],
    )
    fav_parser.add_argument("value", nargs="?")
    return parser.parse_args(argv)


def update_config(args) -> None:
    """Apply command line overrides to the global config."""
    if args.repo:
        config.storage_mode = "device"
        config.device_repo_path = Path(args.repo).expanduser()


def _fail(result: Result) -> int:
    print(json.dumps(result.error.to_dict(), indent=2), file=sys.stderr)
    return 1


def _cmd_status(manager: StorageManager) -> int:
    changes = manager.has_changes()
    if changes.is_failure:
        return _fail(changes)
    index = manager.index
    prefs = manager.preferences.load()
    print(f"repository:      {manager.repo_path}")
    print(f"uncommitted:     {'yes' if changes.value else 'no'}")
    print(f"indexed notes:   {index.count() if index else 0}")
    if index and index.last_rebuild_failures:
        print(f"unparseable:     {', '.join(sorted(index.last_rebuild_failures))}")
    print(f"remote:          {config.remote_url or '(none)'}")
    print(f"last db sync ms: {prefs.last_database_sync_time_ms}")
    print(
        json.dumps(
            {"sync_state": manager.sync_state.to_dict(), "metrics": metrics.get_summary()},
            indent=2,
        )
    )
    return 0


def _cmd_favorites(manager: StorageManager, action, value) -> int:
    favorites = FavoritesManager(manager)
    if action is None:
        current = favorites.load()
        print("folders:", ", ".join(f or "/" for f in current.folders) or "(none)")
        print("tags:   ", ", ".join(current.tags) or "(none)")
        return 0
    if not value:
        print(f"favorites {action} needs a value", file=sys.stderr)
        return 2
    operations = {
        "add-folder": favorites.add_folder,
        "remove-folder": favorites.remove_folder,
        "add-tag": favorites.add_tag,
        "remove-tag": favorites.remove_tag,
    }
    folder_value = "" if action.endswith("folder") and value == "/" else value
    result = operations[action](folder_value)
    return _fail(result) if result.is_failure else 0


def run(args) -> int:
    manager = StorageManager(config)
    opened = manager.open_repo()
    if opened.is_failure:
        return _fail(opened)

    try:
        command = args.command
        if command == "open":
            result = manager.update_database(force=False)
            if result.is_failure:
                return _fail(result)
            print(f"Opened {opened.value}")
            return 0
        if command == "status":
            manager.update_database(force=False)
            return _cmd_status(manager)
        if command == "reload":
            result = manager.update_database(force=args.force)
            if result.is_failure:
                return _fail(result)
            print("Index rebuilt" if result.value else "Index already up to date")
            return 0
        if command == "commit":
            result = manager.commit_all(args.message)
            if result.is_failure:
                return _fail(result)
            commit = result.value
            print(f"Committed {commit.short_hash}" if commit.created else "Nothing to commit")
            return 0
        if command == "sync":
            result = manager.sync()
            if result.is_failure:
                return _fail(result)
            report = result.value
            print(f"Sync: {report.outcome.value}")
            if report.pulled_changes:
                print("Pulled remote changes; rebuilding index")
            manager.update_database(force=report.pulled_changes)
            return 0
        if command == "background":
            scheduler = BackgroundScheduler(manager)
            try:
                outcome = scheduler.trigger().result()
            finally:
                scheduler.shutdown()
            if outcome is None:
                print("Background sync not due")
                return 0
            return _fail(outcome) if outcome.is_failure else 0
        if command == "discard":
            result = manager.discard_changes(args.path)
            return _fail(result) if result.is_failure else 0
        if command == "favorites":
            manager.update_database(force=False)
            return _cmd_favorites(manager, args.action, args.value)
        raise ValueError(f"Unknown command {command}")
    finally:
        manager.close_repo()


def main(argv=None) -> int:
    """Run the notesync command line."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(
            log_dir=config.get_absolute_path(config.app_data_dir) / "logs",
            level=log_level,
            console=True,
        )
    except OSError as e:
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    return run(args)


if __name__ == "__main__":
    sys.exit(main())
