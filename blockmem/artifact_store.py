"""
Artifact persistence.

Artifacts are unique per (source_type, checksum). Error records carry
no checksum so a later retry of the same file is not treated as a
duplicate.
"""

import uuid
from typing import Optional

from .db import Database, dumps, loads
from .types import Artifact, utc_now


def _row_to_artifact(row) -> Artifact:
    return Artifact(
        id=row["id"],
        source_type=row["source_type"],
        title=row["title"],
        mime_type=row["mime_type"],
        text_content=row["text_content"],
        object_key=row["object_key"],
        checksum=row["checksum"],
        ingest_status=row["ingest_status"],
        error=row["error"],
        metadata=loads(row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ArtifactStore:
    """SQLite-backed store for ingested files."""

    def __init__(self, db: Database):
        self._db = db

    def insert(
        self,
        *,
        source_type: str,
        title: str,
        mime_type: str,
        checksum: str,
        text_content: Optional[str],
        object_key: Optional[str],
        metadata: Optional[dict] = None,
    ) -> tuple[Artifact, bool]:
        """
        Insert a parsed artifact unless the checksum is already stored.

        Returns:
            (artifact, created)
        """
        artifact_id = str(uuid.uuid4())
        now = utc_now()
        cursor = self._db.execute("""
            INSERT OR IGNORE INTO artifacts
            (id, source_type, title, mime_type, text_content, object_key,
             checksum, ingest_status, error, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'parsed', NULL, ?, ?, ?)
        """, (artifact_id, source_type, title, mime_type, text_content,
              object_key, checksum, dumps(metadata), now, now))
        if cursor.rowcount == 0:
            return self.get_by_checksum(source_type, checksum), False
        return self.get(artifact_id), True

    def insert_error(
        self,
        *,
        source_type: str,
        title: str,
        mime_type: str,
        error: str,
        metadata: Optional[dict] = None,
    ) -> Artifact:
        artifact_id = str(uuid.uuid4())
        now = utc_now()
        self._db.execute("""
            INSERT INTO artifacts
            (id, source_type, title, mime_type, text_content, object_key,
             checksum, ingest_status, error, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, NULL, NULL, NULL, 'error', ?, ?, ?, ?)
        """, (artifact_id, source_type, title, mime_type, error,
              dumps(metadata), now, now))
        return self.get(artifact_id)

    def get(self, artifact_id: str) -> Optional[Artifact]:
        row = self._db.query_one("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
        return _row_to_artifact(row) if row else None

    def get_by_checksum(self, source_type: str, checksum: str) -> Optional[Artifact]:
        row = self._db.query_one(
            "SELECT * FROM artifacts WHERE source_type = ? AND checksum = ?",
            (source_type, checksum),
        )
        return _row_to_artifact(row) if row else None

    def mark_linked(self, artifact_id: str, metadata: dict) -> None:
        self._db.execute("""
            UPDATE artifacts
            SET ingest_status = 'linked', metadata = ?, updated_at = ?
            WHERE id = ?
        """, (dumps(metadata), utc_now(), artifact_id))

    def list_recent(
        self,
        *,
        limit: int = 50,
        source_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Artifact]:
        """Artifacts, newest first."""
        sql = "SELECT * FROM artifacts WHERE 1 = 1"
        params: list = []
        if source_type:
            sql += " AND source_type = ?"
            params.append(source_type)
        if status:
            sql += " AND ingest_status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        return [_row_to_artifact(r) for r in self._db.query(sql, tuple(params))]
