"""Utility functions for notesync."""

import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, Tuple


def normalize_relative_path(value: str) -> str:
    """Normalize a note path to POSIX form relative to the repository root.

    Backslashes become slashes and redundant ``.`` segments and slashes are
    dropped, so ``"a\\\\b/./c.md"`` becomes ``"a/b/c.md"``.

    Raises:
        ValueError: If the path is empty, absolute, climbs out of the root
            with ``..``, or points into the ``.git`` directory.
    """
    if not value or not value.strip():
        raise ValueError("path cannot be empty")

    candidate = value.replace("\\", "/")
    if candidate.startswith("/"):
        raise ValueError("path must be relative to the repository root")

    parts = [p for p in PurePosixPath(candidate).parts if p not in ("", ".")]
    if not parts:
        raise ValueError("path cannot be empty")
    if ".." in parts:
        raise ValueError("path cannot contain '..' (path traversal)")
    if parts[0] == ".git":
        raise ValueError("path cannot point into the .git directory")

    return "/".join(parts)


def is_within(path: str, folder: str) -> bool:
    """True if relative ``path`` equals ``folder`` or lies beneath it."""
    if not folder:
        return True
    folder = folder.rstrip("/")
    return path == folder or path.startswith(folder + "/")


def is_hidden_path(path: str) -> bool:
    """True if any segment of relative ``path`` starts with a dot."""
    return any(part.startswith(".") for part in path.split("/"))


def atomic_write_text(target: Path, content: str) -> None:
    """Write ``content`` to ``target`` so readers never see a partial file.

    The data goes to a temporary file in the same directory, is flushed to
    disk, then renamed over the target.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def iter_note_files(
    root: Path, extensions: Iterable[str]
) -> Iterator[Tuple[str, Path]]:
    """Yield ``(relative_posix_path, absolute_path)`` for every note file.

    Directories whose name starts with a dot (``.git`` among them) are not
    descended into, and dot-files are skipped.
    """
    exts = tuple(e.lower() for e in extensions)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_hidden_path(d))
        for filename in sorted(filenames):
            if is_hidden_path(filename):
                continue
            if not filename.lower().endswith(exts):
                continue
            abs_path = Path(dirpath) / filename
            rel = abs_path.relative_to(root).as_posix()
            yield rel, abs_path


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    # Use str.translate() for single-pass efficiency
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
