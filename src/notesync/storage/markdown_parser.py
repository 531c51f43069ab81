"""Markdown parsing for the note index.

Extracts the metadata the index stores for each note file (title, tags,
body) from markdown with optional YAML front matter. Kept apart from the
index so the parsing rules are independently testable.
"""
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, List

import frontmatter
import yaml
from frontmatter.default_handlers import YAMLHandler

logger = logging.getLogger(__name__)


@dataclass
class ParsedNote:
    """Metadata extracted from a note file."""

    title: str
    body: str
    tags: List[str] = field(default_factory=list)


class MarkdownParser:
    """Parses note files into index metadata."""

    def parse(self, content: str, relative_path: str) -> ParsedNote:
        """Parse note content with optional ``---`` front matter.

        Title resolution: front matter ``title``, else the first ``# ``
        heading, else the file name without extension.

        Args:
            content: Raw file content.
            relative_path: Path of the file, used for the fallback title.

        Returns:
            ParsedNote with title, tags and body.

        Raises:
            ValueError: If the front matter is malformed.
        """
        self._check_front_matter(content)
        try:
            post = frontmatter.loads(content)
        except (yaml.YAMLError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed front matter: {e}") from e

        metadata = post.metadata

        title = metadata.get("title")
        if title is not None:
            title = str(title).strip()
        if not title:
            title = self._first_heading(post.content)
        if not title:
            title = PurePosixPath(relative_path).stem

        return ParsedNote(
            title=title,
            body=post.content,
            tags=self._parse_tags(metadata.get("tags")),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_front_matter(content: str) -> None:
        """Reject a front matter block that is not a YAML mapping.

        ``frontmatter.loads`` quietly drops such blocks, which would hide a
        broken note behind an empty metadata dict.
        """
        handler = YAMLHandler()
        text = content.strip()
        if not handler.detect(text):
            return
        try:
            block, _ = handler.split(text)
        except ValueError:
            # No closing delimiter: frontmatter.loads reads it as plain text
            return
        try:
            data = yaml.safe_load(block)
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed front matter: {e}") from e
        if data is not None and not isinstance(data, dict):
            raise ValueError(
                f"Front matter is not a mapping (got {type(data).__name__})"
            )

    @staticmethod
    def _first_heading(body: str) -> str:
        for line in body.split("\n"):
            stripped = line.strip()
            if stripped.startswith("# "):
                return stripped[2:].strip()
        return ""

    @staticmethod
    def _parse_tags(raw: Any) -> List[str]:
        """Accept tags as a comma-separated string or a YAML list."""
        if raw is None:
            return []
        if isinstance(raw, str):
            names = [t.strip() for t in raw.split(",")]
        elif isinstance(raw, (list, tuple)):
            names = [str(t).strip() for t in raw if t is not None]
        else:
            logger.warning(f"Ignoring tags of unexpected type {type(raw).__name__}")
            return []
        seen = set()
        tags = []
        for name in names:
            if name and name not in seen:
                seen.add(name)
                tags.append(name)
        return tags
