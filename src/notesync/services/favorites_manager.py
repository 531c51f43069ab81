"""Favorite folders and tags, persisted as a note in the repository."""
import logging
from typing import Callable

from notesync.models.schema import Note, Result
from notesync.services.storage_manager import StorageManager
from notesync.storage.favorites import (
    FAVORITES_FILENAME,
    Favorites,
    format_favorites,
    parse_favorites,
)

logger = logging.getLogger(__name__)


class FavoritesManager:
    """Reads and writes ``favorites.md`` through the storage façade.

    The file goes through ``create_note``/``update_note`` like any other
    note, so it is staged, indexed and synced the same way.
    """

    def __init__(self, storage_manager: StorageManager):
        self.storage = storage_manager

    def load(self) -> Favorites:
        """Current favorites; empty when the file is absent or unreadable."""
        result = self.storage.get_note(FAVORITES_FILENAME)
        if result.is_failure:
            logger.error(f"Error loading favorites: {result.error}")
            return Favorites()
        if result.value is None:
            logger.debug("Favorites note not found in index")
            return Favorites()
        return parse_favorites(result.value.content)

    def save(self, favorites: Favorites) -> Result[Favorites]:
        content = format_favorites(favorites)
        existing = self.storage.get_note(FAVORITES_FILENAME)
        if existing.is_failure:
            return Result.failure(existing.error)

        if existing.value is not None:
            result = self.storage.update_note(
                Note.new(FAVORITES_FILENAME, content), existing.value
            )
        else:
            result = self.storage.create_note(Note.new(FAVORITES_FILENAME, content))
        if result.is_failure:
            logger.error(f"Failed to save favorites: {result.error}")
            return Result.failure(result.error)
        return Result.success(favorites)

    def _modify(self, change: Callable[[Favorites], Favorites]) -> Result[Favorites]:
        current = self.load()
        updated = change(current)
        if updated == current:
            return Result.success(current)
        return self.save(updated)

    def add_folder(self, path: str) -> Result[Favorites]:
        return self._modify(lambda f: f.with_folder(path))

    def remove_folder(self, path: str) -> Result[Favorites]:
        return self._modify(lambda f: f.without_folder(path))

    def add_tag(self, name: str) -> Result[Favorites]:
        return self._modify(lambda f: f.with_tag(name))

    def remove_tag(self, name: str) -> Result[Favorites]:
        return self._modify(lambda f: f.without_tag(name))

    @staticmethod
    def is_folder_favorite(favorites: Favorites, path: str) -> bool:
        return path in favorites.folders

    @staticmethod
    def is_tag_favorite(favorites: Favorites, name: str) -> bool:
        return name in favorites.tags
