"""
External asset catalog backed by SQLite.

The catalog is the source of truth for "is this asset already converted".
It only holds the last observed job status and the published manifest path;
intermediate progress lives in the workspace and in the object store.
"""
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel
from abrpub.domain.errors import CatalogError
from abrpub.domain.models import JobStatus

SCHEMA = """
    CREATE TABLE IF NOT EXISTS assets (
        asset_id TEXT PRIMARY KEY,
        title TEXT,
        source_path TEXT,
        output_path TEXT,
        ready INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending',
        error TEXT,
        updated_at TEXT
    )
"""


class CatalogEntry(BaseModel):
    asset_id: str
    title: Optional[str] = None
    source_path: Optional[str] = None
    output_path: Optional[str] = None
    ready: bool = False
    status: JobStatus = JobStatus.PENDING
    error: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def has_output_path(self) -> bool:
        return bool(self.output_path)


class SqliteCatalog:
    """Catalog rows keyed by asset id. Safe to share between batch worker threads."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute(SCHEMA)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_ready ON assets(ready)")
            self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()

    @staticmethod
    def _now() -> str:
        return datetime.now().isoformat(timespec="seconds")

    def _row_to_entry(self, row: sqlite3.Row) -> CatalogEntry:
        return CatalogEntry(
            asset_id=row["asset_id"],
            title=row["title"],
            source_path=row["source_path"],
            output_path=row["output_path"],
            ready=bool(row["ready"]),
            status=JobStatus(row["status"]),
            error=row["error"],
            updated_at=row["updated_at"],
        )

    def get(self, asset_id: str) -> Optional[CatalogEntry]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM assets WHERE asset_id = ?", (asset_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def require(self, asset_id: str) -> CatalogEntry:
        entry = self.get(asset_id)
        if entry is None:
            raise CatalogError(asset_id, "no catalog row")
        return entry

    def upsert(self, entry: CatalogEntry) -> CatalogEntry:
        entry = entry.model_copy(update={"updated_at": self._now()})
        with self._lock:
            self._conn.execute("""
                INSERT INTO assets (asset_id, title, source_path, output_path, ready, status, error, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(asset_id) DO UPDATE SET
                    title = excluded.title,
                    source_path = excluded.source_path,
                    output_path = excluded.output_path,
                    ready = excluded.ready,
                    status = excluded.status,
                    error = excluded.error,
                    updated_at = excluded.updated_at
            """, (
                entry.asset_id, entry.title, entry.source_path, entry.output_path,
                int(entry.ready), entry.status.value, entry.error, entry.updated_at,
            ))
            self._conn.commit()
        return entry

    def _update(self, asset_id: str, sql: str, params: tuple):
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        if cursor.rowcount == 0:
            raise CatalogError(asset_id, "no catalog row to update")

    def set_status(self, asset_id: str, status: JobStatus):
        """Records the last observed stage. Output path and ready flag are untouched."""
        self._update(asset_id, "UPDATE assets SET status = ?, updated_at = ? WHERE asset_id = ?",
                     (status.value, self._now(), asset_id))

    def mark_ready(self, asset_id: str, output_path: str):
        self._update(
            asset_id,
            "UPDATE assets SET status = ?, ready = 1, output_path = ?, error = NULL, updated_at = ? WHERE asset_id = ?",
            (JobStatus.COMPLETE.value, output_path, self._now(), asset_id),
        )
        self.logger.info(f"Catalog: {asset_id} ready at {output_path}")

    def mark_failed(self, asset_id: str, error: str):
        """Sets the failed marker only; a previously published output path stays."""
        self._update(asset_id, "UPDATE assets SET status = ?, error = ?, updated_at = ? WHERE asset_id = ?",
                     (JobStatus.FAILED.value, error, self._now(), asset_id))

    def list_pending(self) -> List[CatalogEntry]:
        """Assets with a source but no published output."""
        with self._lock:
            rows = self._conn.execute("""
                SELECT * FROM assets
                WHERE source_path IS NOT NULL AND source_path != ''
                  AND (ready = 0 OR output_path IS NULL OR output_path = '')
                ORDER BY asset_id
            """).fetchall()
        return [self._row_to_entry(row) for row in rows]
