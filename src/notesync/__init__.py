"""
notesync - keep a folder of markdown notes in a Git repository and present
them through a local SQLite index.

The package provides the synchronization and storage engine: opening and
initializing repositories, committing, syncing with a remote, rebuilding the
index from the working tree and scheduling that work in the background.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notesync")
except PackageNotFoundError:
    __version__ = "0.3.0"
