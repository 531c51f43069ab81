"""Favorites file format.

Favorite folders and tags are kept in ``favorites.md`` at the repository
root, as an ordinary note so they sync like any other file::

    ---
    title: Favorites
    ---

    ## Folders

    - projects/work
    - /

    ## Tags

    - urgent

The root folder is written as ``/`` and read back as ``""``.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

import frontmatter
import yaml

logger = logging.getLogger(__name__)

FAVORITES_FILENAME = "favorites.md"

FOLDERS_PLACEHOLDER = "*No favorite folders yet.*"
TAGS_PLACEHOLDER = "*No favorite tags yet.*"

_FOLDER_HEADERS = ("## folders", "## favorite folders")
_TAG_HEADERS = ("## tags", "## favorite tags")


@dataclass(frozen=True)
class Favorites:
    """Ordered favorite folders and tags."""

    folders: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def with_folder(self, path: str) -> "Favorites":
        if path in self.folders:
            return self
        return replace(self, folders=self.folders + [path])

    def without_folder(self, path: str) -> "Favorites":
        return replace(self, folders=[f for f in self.folders if f != path])

    def with_tag(self, name: str) -> "Favorites":
        if name in self.tags:
            return self
        return replace(self, tags=self.tags + [name])

    def without_tag(self, name: str) -> "Favorites":
        return replace(self, tags=[t for t in self.tags if t != name])


def _strip_front_matter(content: str) -> str:
    try:
        return frontmatter.loads(content).content
    except (yaml.YAMLError, ValueError, TypeError) as e:
        logger.warning(f"Ignoring unreadable favorites front matter: {e}")
        lines = content.split("\n")
        if lines and lines[0].strip() == "---":
            for i, line in enumerate(lines[1:], start=1):
                if line.strip() == "---":
                    return "\n".join(lines[i + 1:])
        return content


def parse_favorites(content: str) -> Favorites:
    """Read favorites from markdown.

    Section headers are matched case-insensitively. Any other ``## ``
    header ends the current section. List items may use ``-`` or ``*``.
    """
    folders: List[str] = []
    tags: List[str] = []
    section: Optional[str] = None

    for line in _strip_front_matter(content).splitlines():
        stripped = line.strip()
        lowered = stripped.lower()
        if lowered in _FOLDER_HEADERS:
            section = "folders"
        elif lowered in _TAG_HEADERS:
            section = "tags"
        elif stripped.startswith("## "):
            section = None
        elif section and stripped.startswith(("- ", "* ")):
            value = stripped[2:].strip()
            if not value:
                continue
            if section == "folders":
                folders.append("" if value == "/" else value)
            else:
                tags.append(value)

    return Favorites(folders=folders, tags=tags)


def format_favorites(favorites: Favorites) -> str:
    """Render favorites in the markdown layout read by :func:`parse_favorites`."""
    lines = ["---", "title: Favorites", "---", "", "## Folders", ""]
    if favorites.folders:
        lines.extend(f"- {folder or '/'}" for folder in favorites.folders)
    else:
        lines.append(FOLDERS_PLACEHOLDER)
    lines.extend(["", "## Tags", ""])
    if favorites.tags:
        lines.extend(f"- {tag}" for tag in favorites.tags)
    else:
        lines.append(TAGS_PLACEHOLDER)
    return "\n".join(lines) + "\n"
