"""Storage layer for notesync: git working tree, index and file formats."""

from notesync.storage.favorites import Favorites, format_favorites, parse_favorites
from notesync.storage.git_wrapper import GitWrapper
from notesync.storage.index_store import IndexStore
from notesync.storage.markdown_parser import MarkdownParser

__all__ = [
    "GitWrapper",
    "IndexStore",
    "MarkdownParser",
    "Favorites",
    "parse_favorites",
    "format_favorites",
]
