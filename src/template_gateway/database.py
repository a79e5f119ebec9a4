"""
SQLite registry of document templates and upload batches.

This module provides the persistence layer for the ingest/convert/deploy
workflow. Two tables are kept:

- uploads: one row per processed manifest, unique on filepath
- templates: one row per document template, unique on docid

Conflict resolution is delegated to SQLite's native upsert so no in-process
locking is needed.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PersistenceError
from .models import DESCRIPTIVE_FIELDS, RegistryEntry, UploadBatch


# Default database path
DEFAULT_DB_PATH = Path("data/registry.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: str) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class RegistryDatabase:
    """
    SQLite store for registry entries and upload batches.

    Every public method opens its own connection and releases it on every
    exit path, including exceptional ones.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS uploads (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    filepath TEXT NOT NULL UNIQUE
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_type TEXT,
                    system_name TEXT,
                    name TEXT,
                    categories TEXT,
                    data_context TEXT,
                    participant_role TEXT,
                    output_title TEXT,
                    output_file_name TEXT,
                    document_source TEXT,
                    docid TEXT NOT NULL UNIQUE,
                    batch_id INTEGER REFERENCES uploads(id),
                    converted_file_path TEXT NOT NULL DEFAULT '',
                    sharedo_pathid TEXT NOT NULL DEFAULT '',
                    sharedo_downloadurl TEXT NOT NULL DEFAULT ''
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_templates_batch_id
                ON templates(batch_id)
            """)

    def create_or_reuse_batch(self, manifest_path: str) -> int:
        """
        Create a batch for a manifest path, or return the existing one.

        Args:
            manifest_path: Storage path of the manifest file

        Returns:
            The batch id
        """
        try:
            with self._get_connection() as conn:
                rows = conn.execute("""
                    INSERT INTO uploads (timestamp, filepath)
                    VALUES (?, ?)
                    ON CONFLICT (filepath) DO UPDATE SET
                        filepath = excluded.filepath
                    RETURNING id
                """, (_serialize_datetime(datetime.now(timezone.utc)), manifest_path)).fetchall()
                return rows[0]["id"]
        except sqlite3.Error as exc:
            raise PersistenceError(manifest_path, exc, operation="create upload batch for") from exc

    def get_batch(self, batch_id: int) -> Optional[UploadBatch]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM uploads WHERE id = ?", (batch_id,)
            ).fetchone()
            if not row:
                return None
            return self._row_to_batch(row)

    def list_batches(self) -> List[UploadBatch]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM uploads ORDER BY id DESC").fetchall()
            return [self._row_to_batch(row) for row in rows]

    def upsert_entry(self, entry: RegistryEntry, batch_id: int) -> RegistryEntry:
        """
        Insert a registry entry, or replace the descriptive fields of the
        existing entry with the same docid.

        Derived fields (converted path, platform identifiers) are left as they
        are on conflict.

        Args:
            entry: Entry parsed from the manifest
            batch_id: Batch to link the entry to, unless the entry names one

        Returns:
            The stored row

        Raises:
            PersistenceError: If the statement fails, naming the docid
        """
        columns = [*DESCRIPTIVE_FIELDS, "docid", "batch_id"]
        values = [getattr(entry, name) for name in DESCRIPTIVE_FIELDS]
        values += [entry.docid, entry.batch_id or batch_id]
        assignments = ",\n".join(f"{name} = excluded.{name}" for name in columns if name != "docid")

        try:
            with self._get_connection() as conn:
                rows = conn.execute(f"""
                    INSERT INTO templates ({', '.join(columns)})
                    VALUES ({', '.join('?' for _ in columns)})
                    ON CONFLICT (docid) DO UPDATE SET
                    {assignments}
                    RETURNING *
                """, values).fetchall()
                return self._row_to_entry(rows[0])
        except sqlite3.Error as exc:
            raise PersistenceError(entry.docid, exc) from exc

    def get_by_docid(self, docid: str) -> Optional[RegistryEntry]:
        """
        Retrieve an entry by docid.

        Returns:
            The entry, or None if no row has this docid
        """
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM templates WHERE docid = ?", (docid,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(docid, exc, operation="read registry entry with docid") from exc

        if not row:
            return None

        return self._row_to_entry(row)

    def list_all(self) -> List[RegistryEntry]:
        """
        List all entries, most recently created first.
        """
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM templates ORDER BY id DESC"
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(str(self.db_path), exc, operation="list registry entries in") from exc

        return [self._row_to_entry(row) for row in rows]

    def update_converted_path(self, docid: str, path: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE templates SET converted_file_path = ? WHERE docid = ?",
                    (path, docid),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(docid, exc, operation="record converted path for docid") from exc

    def update_platform_info(self, docid: str, path_id: str, download_url: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE templates SET sharedo_pathid = ?, sharedo_downloadurl = ? WHERE docid = ?",
                    (path_id, download_url, docid),
                )
        except sqlite3.Error as exc:
            raise PersistenceError(docid, exc, operation="record platform location for docid") from exc

    def _row_to_entry(self, row: sqlite3.Row) -> RegistryEntry:
        """Convert a database row to a registry entry."""
        data: Dict[str, Any] = dict(row)
        for name in ("converted_file_path", "sharedo_pathid", "sharedo_downloadurl"):
            data[name] = data.get(name) or ""
        return RegistryEntry(**data)

    def _row_to_batch(self, row: sqlite3.Row) -> UploadBatch:
        return UploadBatch(
            id=row["id"],
            timestamp=_deserialize_datetime(row["timestamp"]),
            filepath=row["filepath"],
        )
