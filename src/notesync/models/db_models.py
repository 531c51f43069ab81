"""SQLAlchemy database models for the notesync index."""
import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Create base class for SQLAlchemy models
Base = declarative_base()


class _NoteRecordColumns:
    """Columns shared by the live index table and its staging twin."""

    relative_path = Column(String(1024), primary_key=True)
    title = Column(String(512), nullable=False, index=True)
    content = Column(Text, nullable=False)
    tags = Column(Text, nullable=False, default="[]")  # JSON list
    folder = Column(String(1024), nullable=False, default="", index=True)
    size = Column(Integer, nullable=False, default=0)
    last_modified_ms = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(40), nullable=False)
    parse_error = Column(Text, nullable=True)
    indexed_at = Column(DateTime, default=datetime.datetime.now, nullable=False)


class DBNoteRecord(_NoteRecordColumns, Base):
    """Live index: one row per note file at the last rebuild."""

    __tablename__ = "note_records"

    def __repr__(self) -> str:
        return f"<NoteRecord(path='{self.relative_path}', title='{self.title}')>"


class DBStagedNoteRecord(_NoteRecordColumns, Base):
    """Staging area filled by a rebuild and swapped into note_records."""

    __tablename__ = "note_records_staging"


class DBIndexMeta(Base):
    """Key/value metadata about the index (fingerprint, last rebuild)."""

    __tablename__ = "index_meta"
    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<IndexMeta(key='{self.key}')>"


NOTE_RECORD_COLUMNS = (
    "relative_path",
    "title",
    "content",
    "tags",
    "folder",
    "size",
    "last_modified_ms",
    "content_hash",
    "parse_error",
    "indexed_at",
)


def init_db(db_url: str) -> Engine:
    """Create the index engine and schema.

    File databases use WAL mode so readers keep seeing the previous index
    while a rebuild swap is being written. ``sqlite://`` URLs get a single
    shared in-memory connection.
    """
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine):
    """Get a session factory for the database."""
    return sessionmaker(bind=engine)
