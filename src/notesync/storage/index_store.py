"""SQLite index of the notes in a working tree.

The index is a derived, rebuildable projection of the working tree: the
files are the source of truth and nothing here ever writes back to them.

Full rebuilds are staged. Rows are written into ``note_records_staging``
first and swapped into ``note_records`` in a single transaction, so readers
see either the previous index or the new one, never a half-built table.
If the rebuild fails or is cancelled, the staging rows are discarded and
the previous index is left as it was.
"""

import datetime
import hashlib
import json
import logging
import threading
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, insert, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from notesync.concurrency import CancellationToken, check_cancelled, repository_lock
from notesync.config import NoteSyncConfig, config
from notesync.exceptions import (
    OperationCancelledError,
    StoreError,
)
from notesync.models.db_models import (
    NOTE_RECORD_COLUMNS,
    DBIndexMeta,
    DBNoteRecord,
    DBStagedNoteRecord,
    get_session_factory,
    init_db,
)
from notesync.models.schema import IndexRebuildReport, IndexRecord, Result, utc_now
from notesync.observability import timed_operation
from notesync.storage.markdown_parser import MarkdownParser
from notesync.utils import (
    escape_like_pattern,
    is_hidden_path,
    is_within,
    iter_note_files,
    normalize_relative_path,
)

logger = logging.getLogger(__name__)

FINGERPRINT_KEY = "tree_fingerprint"
LAST_REBUILD_KEY = "last_rebuild_at"

_BATCH_SIZE = 100


class IndexStore:
    """Structured cache of note metadata and content.

    Args:
        db_url: SQLAlchemy URL of the index database. Ignored if ``engine``
            is given.
        engine: Pre-configured engine (tests share one in-memory engine).
        extensions: File extensions recognized as notes.
        lock: Mutual-exclusion token shared with the repository handle.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        extensions: Optional[Iterable[str]] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        if engine is None and db_url is None:
            raise ValueError("IndexStore needs a db_url or an engine")
        self.engine = engine if engine is not None else init_db(db_url)
        self.session_factory = get_session_factory(self.engine)
        self.extensions = tuple(e.lower() for e in (extensions or config.note_extensions))
        self._lock = lock or threading.RLock()
        self._parser = MarkdownParser()
        self.last_rebuild_failures: Dict[str, str] = {}

    @classmethod
    def for_repository(
        cls, repo_root: Path, cfg: Optional[NoteSyncConfig] = None
    ) -> "IndexStore":
        """Open the index belonging to ``repo_root`` as configured."""
        cfg = cfg or config
        return cls(
            db_url=cfg.get_db_url(repo_root),
            extensions=cfg.note_extensions,
            lock=repository_lock(repo_root),
        )

    def close(self) -> None:
        """Release database connections."""
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Fingerprints
    # ------------------------------------------------------------------

    def _scan(self, root: Path) -> List[Tuple[str, Path, int, int]]:
        """Stat every note file: (relative_path, abs_path, mtime_ns, size)."""
        entries = []
        for rel, abs_path in iter_note_files(root, self.extensions):
            try:
                st = abs_path.stat()
            except FileNotFoundError:
                continue
            entries.append((rel, abs_path, st.st_mtime_ns, st.st_size))
        entries.sort(key=lambda e: e[0])
        return entries

    @staticmethod
    def _fingerprint(entries: List[Tuple[str, Path, int, int]]) -> str:
        digest = hashlib.sha1()
        for rel, _, mtime_ns, size in entries:
            digest.update(f"{rel}\0{mtime_ns}\0{size}\n".encode("utf-8", "surrogateescape"))
        return digest.hexdigest()

    def compute_fingerprint(self, root: Path) -> str:
        """Change fingerprint of the note files currently under ``root``."""
        return self._fingerprint(self._scan(Path(root)))

    def stored_fingerprint(self) -> Optional[str]:
        """Fingerprint recorded by the last successful rebuild."""
        with self.session_factory() as session:
            meta = session.get(DBIndexMeta, FINGERPRINT_KEY)
            return meta.value if meta else None

    # ------------------------------------------------------------------
    # Rebuild
    # ------------------------------------------------------------------

    def _build_row(self, rel: str, abs_path: Path) -> Optional[Dict[str, Any]]:
        """Index row for one file, or None if the file vanished.

        Files that cannot be read or parsed still get a row, with
        ``parse_error`` set, so every note file stays represented.
        """
        folder = rel.rsplit("/", 1)[0] if "/" in rel else ""
        stem = Path(rel).stem
        try:
            raw = abs_path.read_bytes()
            st = abs_path.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Cannot read file {rel}: {e}")
            return {
                "relative_path": rel,
                "title": stem,
                "content": "",
                "tags": "[]",
                "folder": folder,
                "size": 0,
                "last_modified_ms": 0,
                "content_hash": "",
                "parse_error": f"Unreadable file: {e}",
                "indexed_at": _db_now(),
            }

        parse_error = None
        title, tags = stem, []
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            content = raw.decode("utf-8", errors="replace")
            parse_error = f"Invalid UTF-8: {e}"
        if parse_error is None:
            try:
                parsed = self._parser.parse(content, rel)
                title, tags = parsed.title, parsed.tags
            except ValueError as e:
                parse_error = str(e)
        if parse_error:
            logger.warning(f"Invalid note format in {rel}: {parse_error}")

        return {
            "relative_path": rel,
            "title": title,
            "content": content,
            "tags": json.dumps(tags),
            "folder": folder,
            "size": st.st_size,
            "last_modified_ms": st.st_mtime_ns // 1_000_000,
            "content_hash": hashlib.sha1(raw).hexdigest(),
            "parse_error": parse_error,
            "indexed_at": _db_now(),
        }

    def _clear_staging(self) -> None:
        try:
            with self.session_factory() as session:
                session.execute(delete(DBStagedNoteRecord))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to clear index staging area: {e}")

    def rebuild(
        self, root: Path, cancel: Optional[CancellationToken] = None
    ) -> Result[IndexRebuildReport]:
        """Replace the whole index with a fresh scan of ``root``.

        A file that fails to parse is recorded in the report's
        ``failed_files`` and indexed with ``parse_error`` set; the rebuild
        carries on with the remaining files.
        """
        root = Path(root)
        if not root.is_dir():
            return Result.failure(
                StoreError(f"Repository root {root} does not exist", operation="rebuild")
            )

        with self._lock, timed_operation("rebuild", root=root.name) as op:
            report = IndexRebuildReport()
            try:
                self._clear_staging()
                entries = self._scan(root)
                staged: Set[str] = set()

                with self.session_factory() as session:
                    batch: List[Dict[str, Any]] = []
                    for rel, abs_path, _, _ in entries:
                        check_cancelled(cancel, "rebuild", "scan")
                        row = self._build_row(rel, abs_path)
                        if row is None:
                            continue
                        if row["parse_error"]:
                            report.failed_files[rel] = row["parse_error"]
                        batch.append(row)
                        staged.add(rel)
                        if len(batch) >= _BATCH_SIZE:
                            session.execute(insert(DBStagedNoteRecord), batch)
                            session.commit()
                            batch = []
                    if batch:
                        session.execute(insert(DBStagedNoteRecord), batch)
                        session.commit()

                check_cancelled(cancel, "rebuild", "swap")
                fingerprint = self._fingerprint(entries)

                # Swap staging into the live table atomically
                with self.session_factory() as session:
                    live_paths = set(
                        session.scalars(select(DBNoteRecord.relative_path)).all()
                    )
                    report.removed = len(live_paths - staged)
                    session.execute(delete(DBNoteRecord))
                    staged_cols = [
                        DBStagedNoteRecord.__table__.c[name] for name in NOTE_RECORD_COLUMNS
                    ]
                    session.execute(
                        insert(DBNoteRecord).from_select(
                            list(NOTE_RECORD_COLUMNS), select(*staged_cols)
                        )
                    )
                    session.execute(delete(DBStagedNoteRecord))
                    session.merge(DBIndexMeta(key=FINGERPRINT_KEY, value=fingerprint))
                    session.merge(
                        DBIndexMeta(key=LAST_REBUILD_KEY, value=utc_now().isoformat())
                    )
                    session.commit()
            except OperationCancelledError as e:
                self._clear_staging()
                logger.info("Index rebuild cancelled; previous index kept")
                return Result.failure(e)
            except SQLAlchemyError as e:
                self._clear_staging()
                logger.error(f"Index rebuild failed: {e}")
                return Result.failure(
                    StoreError("Index rebuild failed", operation="rebuild", original_error=e)
                )

            report.indexed = len(staged)
            report.fingerprint = fingerprint
            self.last_rebuild_failures = dict(report.failed_files)
            op["indexed"] = report.indexed
            op["removed"] = report.removed
            op["failed"] = len(report.failed_files)

        if report.failed_files:
            failed = list(report.failed_files)
            logger.warning(
                f"Failed to parse {len(failed)} files: "
                f"{failed[:5]}{'...' if len(failed) > 5 else ''}"
            )
        logger.info(
            f"Index rebuild complete: {report.indexed} notes indexed, "
            f"{report.removed} orphans removed, {len(report.failed_files)} files failed"
        )
        return Result.success(report)

    def update_if_needed(
        self, root: Path, cancel: Optional[CancellationToken] = None
    ) -> Result[bool]:
        """Rebuild only when the tree fingerprint differs from the stored one.

        Returns:
            Result carrying True if a rebuild happened.
        """
        try:
            current = self.compute_fingerprint(Path(root))
            stored = self.stored_fingerprint()
        except (OSError, SQLAlchemyError) as e:
            return Result.failure(
                StoreError("Could not compare index fingerprint", operation="update",
                           original_error=e)
            )
        if current == stored:
            logger.debug("Index up to date; no rebuild needed")
            return Result.success(False)
        logger.info("Working tree changed since last index rebuild; rebuilding")
        return self.rebuild(root, cancel=cancel).map(lambda _: True)

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------

    def upsert_path(self, root: Path, relative_path: str) -> Result[Optional[IndexRecord]]:
        """Re-index a single file. A missing file has its record removed.

        The stored fingerprint is left alone, so the next
        ``update_if_needed`` still notices changes made by other writers.
        """
        try:
            rel = normalize_relative_path(relative_path)
        except ValueError as e:
            return Result.failure(StoreError(str(e), operation="upsert"))
        if is_hidden_path(rel) or not rel.lower().endswith(self.extensions):
            return Result.success(None)

        with self._lock:
            row = self._build_row(rel, Path(root) / rel)
            if row is None:
                return self.remove_path(rel).map(lambda _: None)
            try:
                with self.session_factory() as session:
                    session.merge(DBNoteRecord(**row))
                    session.commit()
                record = self.record_for_path(rel)
            except SQLAlchemyError as e:
                return Result.failure(
                    StoreError(f"Could not index '{rel}'", operation="upsert", original_error=e)
                )
        logger.debug(f"Indexed {rel}")
        return Result.success(record)

    def remove_path(self, relative_path: str) -> Result[bool]:
        """Drop the record for one path. Returns whether a record existed."""
        try:
            rel = normalize_relative_path(relative_path)
        except ValueError as e:
            return Result.failure(StoreError(str(e), operation="remove"))
        with self._lock:
            try:
                with self.session_factory() as session:
                    result = session.execute(
                        delete(DBNoteRecord).where(DBNoteRecord.relative_path == rel)
                    )
                    session.commit()
                    return Result.success(result.rowcount > 0)
            except SQLAlchemyError as e:
                return Result.failure(
                    StoreError(f"Could not remove '{rel}'", operation="remove", original_error=e)
                )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def record_for_path(self, relative_path: str) -> Optional[IndexRecord]:
        """Point lookup. None means untracked or purged, not an error."""
        try:
            rel = normalize_relative_path(relative_path)
        except ValueError:
            return None
        with self.session_factory() as session:
            row = session.get(DBNoteRecord, rel)
            return _to_record(row) if row else None

    def list_records(
        self, folder: Optional[str] = None, recursive: bool = True
    ) -> List[IndexRecord]:
        """All records, optionally limited to a folder ("" is the root)."""
        with self.session_factory() as session:
            query = select(DBNoteRecord)
            if folder is not None:
                folder = folder.strip("/")
                if recursive and folder:
                    query = query.where(
                        or_(
                            DBNoteRecord.folder == folder,
                            DBNoteRecord.folder.like(
                                escape_like_pattern(folder) + "/%", escape="\\"
                            ),
                        )
                    )
                elif not recursive:
                    query = query.where(DBNoteRecord.folder == folder)
            query = query.order_by(DBNoteRecord.relative_path)
            return [_to_record(r) for r in session.scalars(query).all()]

    def search(self, query: str, limit: int = 50) -> List[IndexRecord]:
        """Case-insensitive substring search over title and content."""
        if not query.strip():
            return []
        pattern = f"%{escape_like_pattern(query.strip())}%"
        with self.session_factory() as session:
            stmt = (
                select(DBNoteRecord)
                .where(
                    or_(
                        DBNoteRecord.title.ilike(pattern, escape="\\"),
                        DBNoteRecord.content.ilike(pattern, escape="\\"),
                    )
                )
                .order_by(DBNoteRecord.title, DBNoteRecord.relative_path)
                .limit(limit)
            )
            return [_to_record(r) for r in session.scalars(stmt).all()]

    def records_with_tag(self, tag: str) -> List[IndexRecord]:
        """Records whose front matter lists ``tag``."""
        pattern = f"%{escape_like_pattern(json.dumps(tag))}%"
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBNoteRecord)
                .where(DBNoteRecord.tags.like(pattern, escape="\\"))
                .order_by(DBNoteRecord.relative_path)
            ).all()
            records = [_to_record(r) for r in rows]
        return [r for r in records if tag in r.tags]

    def all_paths(self) -> Set[str]:
        with self.session_factory() as session:
            return set(session.scalars(select(DBNoteRecord.relative_path)).all())

    def count(self) -> int:
        return len(self.all_paths())

    def folder_paths(self) -> List[str]:
        """Every folder that contains at least one indexed note."""
        folders: Set[str] = set()
        for path in self.all_paths():
            parts = path.split("/")[:-1]
            for i in range(1, len(parts) + 1):
                folders.add("/".join(parts[:i]))
        return sorted(folders)

    def notes_in_folder(self, folder: str) -> List[str]:
        """Indexed paths directly inside or beneath ``folder``."""
        return sorted(p for p in self.all_paths() if is_within(p, folder))


def _db_now() -> datetime.datetime:
    # SQLite DateTime columns are naive; values are stored as UTC
    return utc_now().replace(tzinfo=None)


def _to_record(row: DBNoteRecord) -> IndexRecord:
    indexed_at = row.indexed_at.replace(tzinfo=timezone.utc) if row.indexed_at else None
    return IndexRecord(
        relative_path=row.relative_path,
        title=row.title,
        content=row.content,
        tags=json.loads(row.tags or "[]"),
        size=row.size,
        last_modified_time_millis=row.last_modified_ms,
        content_hash=row.content_hash,
        parse_error=row.parse_error,
        indexed_at=indexed_at,
    )


__all__ = ["IndexStore", "FINGERPRINT_KEY"]
