"""Tests for the favorites file format and FavoritesManager."""

import pytest

from notesync.models.schema import Note
from notesync.services.favorites_manager import FavoritesManager
from notesync.storage.favorites import (
    FAVORITES_FILENAME,
    FOLDERS_PLACEHOLDER,
    TAGS_PLACEHOLDER,
    Favorites,
    format_favorites,
    parse_favorites,
)


class TestFormat:
    """Tests for format_favorites."""

    def test_layout(self):
        text = format_favorites(Favorites(folders=["projects/work", ""], tags=["urgent"]))
        assert text == (
            "---\n"
            "title: Favorites\n"
            "---\n"
            "\n"
            "## Folders\n"
            "\n"
            "- projects/work\n"
            "- /\n"
            "\n"
            "## Tags\n"
            "\n"
            "- urgent\n"
        )

    def test_empty_sections_get_placeholders(self):
        text = format_favorites(Favorites())
        assert FOLDERS_PLACEHOLDER in text
        assert TAGS_PLACEHOLDER in text
        assert parse_favorites(text) == Favorites()

    @pytest.mark.parametrize(
        "favorites",
        [
            Favorites(folders=["a", "a/b"], tags=[]),
            Favorites(folders=[""], tags=["x", "y z"]),
            Favorites(folders=[], tags=["only-tags"]),
        ],
    )
    def test_parse_reads_back_formatted_text(self, favorites):
        assert parse_favorites(format_favorites(favorites)) == favorites


class TestParse:
    """Tests for parse_favorites on hand-written files."""

    def test_headers_are_case_insensitive_with_synonyms(self):
        text = "## FAVORITE FOLDERS\n- docs\n\n## favorite tags\n* todo\n"
        assert parse_favorites(text) == Favorites(folders=["docs"], tags=["todo"])

    def test_unknown_header_ends_section(self):
        text = "## Folders\n- docs\n## Notes\n- not a folder\n## Tags\n- t\n"
        assert parse_favorites(text) == Favorites(folders=["docs"], tags=["t"])

    def test_items_outside_sections_are_ignored(self):
        text = "- stray\n# Title\n## Folders\n- kept\n"
        assert parse_favorites(text).folders == ["kept"]

    def test_root_folder_marker(self):
        assert parse_favorites("## Folders\n- /\n").folders == [""]

    def test_without_front_matter(self):
        assert parse_favorites("## Tags\n- a\n- b\n").tags == ["a", "b"]

    def test_broken_front_matter_is_skipped(self):
        text = "---\ntitle: [oops\n---\n## Tags\n- a\n"
        assert parse_favorites(text).tags == ["a"]

    def test_order_is_preserved(self):
        text = "## Tags\n- zeta\n- alpha\n- mid\n"
        assert parse_favorites(text).tags == ["zeta", "alpha", "mid"]


class TestFavoritesValue:
    def test_with_and_without(self):
        fav = Favorites().with_folder("a").with_folder("a").with_tag("t")
        assert fav == Favorites(folders=["a"], tags=["t"])
        assert fav.without_folder("a").without_tag("t") == Favorites()


class TestFavoritesManager:
    """Favorites persisted through the storage façade."""

    @pytest.fixture
    def favorites(self, manager):
        return FavoritesManager(manager)

    def test_load_without_file(self, favorites):
        assert favorites.load() == Favorites()

    def test_add_creates_file_and_indexes_it(self, favorites, manager, repo_dir):
        favorites.add_folder("projects").unwrap()
        favorites.add_tag("urgent").unwrap()

        on_disk = parse_favorites((repo_dir / FAVORITES_FILENAME).read_text())
        assert on_disk == Favorites(folders=["projects"], tags=["urgent"])
        assert favorites.load() == on_disk
        assert manager.get_record(FAVORITES_FILENAME).unwrap().title == "Favorites"

    def test_remove(self, favorites):
        favorites.add_tag("a").unwrap()
        favorites.add_tag("b").unwrap()
        assert favorites.remove_tag("a").unwrap().tags == ["b"]
        assert favorites.load().tags == ["b"]

    def test_unchanged_favorites_do_not_write(self, favorites, repo_dir):
        favorites.add_folder("x").unwrap()
        before = (repo_dir / FAVORITES_FILENAME).stat().st_mtime_ns

        favorites.add_folder("x").unwrap()

        assert (repo_dir / FAVORITES_FILENAME).stat().st_mtime_ns == before

    def test_external_edit_conflicts(self, favorites, manager, repo_dir):
        favorites.add_tag("a").unwrap()
        # Edited on disk but the index has not caught up
        (repo_dir / FAVORITES_FILENAME).write_text("## Tags\n- other\n")

        result = favorites.add_tag("b")

        assert result.is_failure
        assert (repo_dir / FAVORITES_FILENAME).read_text() == "## Tags\n- other\n"

    def test_reads_hand_written_file(self, favorites, manager):
        manager.create_note(
            Note.new(FAVORITES_FILENAME, "## Favorite Folders\n- /\n- inbox\n")
        ).unwrap()
        loaded = favorites.load()
        assert loaded.folders == ["", "inbox"]
        assert FavoritesManager.is_folder_favorite(loaded, "inbox")
        assert not FavoritesManager.is_tag_favorite(loaded, "inbox")
