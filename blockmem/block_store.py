"""
Block persistence: user blocks with version history, and system blocks.

The block store is the source of truth for block content. Vectors live
in the vector store, keyed by author_type:id.
"""

import logging
import uuid
from typing import Optional

from .db import Database, dumps, loads
from .errors import ConcurrencyConflictError
from .types import Block, BlockVersion, utc_now

logger = logging.getLogger(__name__)


def _escape_like(token: str) -> str:
    """Escape LIKE wildcards so tokens match literally."""
    return token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_block(row, author_type: Optional[str] = None) -> Block:
    keys = row.keys()
    author = author_type or row["author_type"]
    confidence = row["confidence"] if "confidence" in keys else None
    return Block(
        id=row["id"],
        author_type=author,
        content=row["content"],
        visibility=row["visibility"],
        source=row["source"],
        source_ref=loads(row["source_ref"]),
        metadata=loads(row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        content_hash=row["content_hash"] if "content_hash" in keys else None,
        row_version=row["row_version"] if "row_version" in keys and row["row_version"] else 1,
        block_kind=row["block_kind"] if "block_kind" in keys else None,
        confidence=float(confidence) if confidence is not None else None,
        dedupe_key=row["dedupe_key"] if "dedupe_key" in keys else None,
    )


def _row_to_version(row) -> BlockVersion:
    return BlockVersion(
        block_id=row["block_id"],
        version_no=row["version_no"],
        content=row["content"],
        content_hash=row["content_hash"],
        capture_reason=row["capture_reason"],
        captured_at=row["captured_at"],
        source=row["source"],
        source_ref=loads(row["source_ref"]),
        metadata=loads(row["metadata"]),
    )


class BlockStore:
    """
    SQLite-backed store for user and system blocks.

    Enforces the storage-level invariants: version numbers increase
    monotonically per block, dedupe keys are unique, and user block
    updates are checked against the row version the caller read.
    """

    def __init__(self, db: Database):
        self._db = db

    def transaction(self):
        """Group several block writes into one transaction."""
        return self._db.transaction()

    # -------------------------------------------------------------------------
    # User blocks
    # -------------------------------------------------------------------------

    def insert_user_block(
        self,
        content: str,
        content_hash: str,
        *,
        visibility: str = "private",
        source: str = "manual",
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> Block:
        """Insert a user block and its first version in one transaction."""
        block_id = str(uuid.uuid4())
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute("""
                INSERT INTO user_blocks
                (id, content, visibility, source, source_ref, metadata,
                 content_hash, row_version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            """, (block_id, content, visibility, source, dumps(source_ref),
                  dumps(metadata), content_hash, now, now))
            self._insert_version(
                conn, block_id, content, content_hash, "create",
                source, source_ref, metadata, now,
            )
        return self.get_user_block(block_id)

    def update_user_block(
        self,
        block_id: str,
        content: str,
        content_hash: str,
        *,
        expected_row_version: int,
        source_ref: dict,
        metadata: dict,
    ) -> Block:
        """
        Overwrite a user block's content if nobody else wrote it first.

        Raises:
            ConcurrencyConflictError: If the row version moved on
        """
        now = utc_now()
        cursor = self._db.execute("""
            UPDATE user_blocks
            SET content = ?, content_hash = ?, source_ref = ?, metadata = ?,
                row_version = row_version + 1, updated_at = ?
            WHERE id = ? AND row_version = ?
        """, (content, content_hash, dumps(source_ref), dumps(metadata),
              now, block_id, expected_row_version))
        if cursor.rowcount == 0:
            raise ConcurrencyConflictError(
                f"User block {block_id} changed concurrently "
                f"(expected row version {expected_row_version})"
            )
        return self.get_user_block(block_id)

    def get_user_block(self, block_id: str) -> Optional[Block]:
        row = self._db.query_one("SELECT * FROM user_blocks WHERE id = ?", (block_id,))
        return _row_to_block(row, "user") if row else None

    # -------------------------------------------------------------------------
    # Versions
    # -------------------------------------------------------------------------

    @staticmethod
    def _insert_version(
        conn, block_id, content, content_hash, capture_reason,
        source, source_ref, metadata, captured_at,
    ) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(version_no), 0) FROM user_block_versions WHERE block_id = ?",
            (block_id,),
        ).fetchone()
        version_no = row[0] + 1
        conn.execute("""
            INSERT INTO user_block_versions
            (block_id, version_no, content, content_hash, capture_reason,
             source, source_ref, metadata, captured_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (block_id, version_no, content, content_hash, capture_reason,
              source, dumps(source_ref), dumps(metadata), captured_at))
        return version_no

    def add_version(self, block: Block, capture_reason: str) -> BlockVersion:
        """Append a version snapshot of the block's current state."""
        with self._db.transaction() as conn:
            version_no = self._insert_version(
                conn, block.id, block.content, block.content_hash, capture_reason,
                block.source, block.source_ref, block.metadata, utc_now(),
            )
        logger.debug("Recorded version %d of %s (%s)", version_no, block.id, capture_reason)
        return self.get_version(block.id, version_no)

    def get_version(self, block_id: str, version_no: int) -> Optional[BlockVersion]:
        row = self._db.query_one("""
            SELECT * FROM user_block_versions WHERE block_id = ? AND version_no = ?
        """, (block_id, version_no))
        return _row_to_version(row) if row else None

    def latest_version(self, block_id: str) -> Optional[BlockVersion]:
        row = self._db.query_one("""
            SELECT * FROM user_block_versions
            WHERE block_id = ?
            ORDER BY version_no DESC LIMIT 1
        """, (block_id,))
        return _row_to_version(row) if row else None

    def list_versions(self, block_id: str) -> list[BlockVersion]:
        """All versions of a block, oldest first."""
        rows = self._db.query("""
            SELECT * FROM user_block_versions
            WHERE block_id = ?
            ORDER BY version_no ASC
        """, (block_id,))
        return [_row_to_version(r) for r in rows]

    # -------------------------------------------------------------------------
    # System blocks
    # -------------------------------------------------------------------------

    def insert_system_block(
        self,
        content: str,
        *,
        block_kind: str = "note",
        confidence: float = 0.5,
        visibility: str = "private",
        source: str = "system",
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
        dedupe_key: Optional[str] = None,
    ) -> tuple[Block, bool]:
        """
        Insert a system block unless its dedupe key is already stored.

        Returns:
            (block, created) where created is False for a dedupe hit
        """
        block_id = str(uuid.uuid4())
        now = utc_now()
        cursor = self._db.execute("""
            INSERT OR IGNORE INTO system_blocks
            (id, content, visibility, source, source_ref, metadata,
             block_kind, confidence, dedupe_key, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (block_id, content, visibility, source, dumps(source_ref), dumps(metadata),
              block_kind, confidence, dedupe_key, now, now))
        if cursor.rowcount == 0:
            # Lost the race (or a plain repeat) on the unique dedupe key
            existing = self.get_system_block_by_dedupe_key(dedupe_key)
            return existing, False
        return self.get_system_block(block_id), True

    def get_system_block(self, block_id: str) -> Optional[Block]:
        row = self._db.query_one("SELECT * FROM system_blocks WHERE id = ?", (block_id,))
        return _row_to_block(row, "system") if row else None

    def get_system_block_by_dedupe_key(self, dedupe_key: str) -> Optional[Block]:
        row = self._db.query_one(
            "SELECT * FROM system_blocks WHERE dedupe_key = ?", (dedupe_key,),
        )
        return _row_to_block(row, "system") if row else None

    # -------------------------------------------------------------------------
    # Both
    # -------------------------------------------------------------------------

    def get_block(self, author_type: str, block_id: str) -> Optional[Block]:
        if author_type == "user":
            return self.get_user_block(block_id)
        if author_type == "system":
            return self.get_system_block(block_id)
        raise ValueError(f"Unknown author type: {author_type!r}")

    def get_blocks(self, keys: list[tuple[str, str]]) -> dict[str, Block]:
        """Fetch blocks by (author_type, id); returns {author_type:id: Block}."""
        result: dict[str, Block] = {}
        for author_type, block_id in keys:
            block = self.get_block(author_type, block_id)
            if block is not None:
                result[block.key] = block
        return result

    def list_recent(self, *, include_system: bool = True, limit: int = 20) -> list[Block]:
        """Most recently created blocks first."""
        rows = self._db.query("""
            SELECT * FROM all_blocks_v
            WHERE author_type = 'user' OR ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (1 if include_system else 0, limit))
        return [_row_to_block(r) for r in rows]

    def search_substring(
        self, tokens: list[str], *, include_system: bool, limit: int,
    ) -> list[Block]:
        """
        Most recent blocks whose content contains any token.

        Matching is case-insensitive substring (SQLite LIKE).
        """
        if not tokens:
            return []
        clauses = " OR ".join("content LIKE ? ESCAPE '\\'" for _ in tokens)
        params: list = [1 if include_system else 0]
        params.extend(f"%{_escape_like(t)}%" for t in tokens)
        params.append(limit)
        rows = self._db.query(f"""
            SELECT * FROM all_blocks_v
            WHERE (author_type = 'user' OR ?)
              AND ({clauses})
            ORDER BY created_at DESC
            LIMIT ?
        """, tuple(params))
        return [_row_to_block(r) for r in rows]

    def count(self) -> dict[str, int]:
        row = self._db.query_one("""
            SELECT
                (SELECT COUNT(*) FROM user_blocks) AS users,
                (SELECT COUNT(*) FROM system_blocks) AS systems
        """)
        return {"user": row["users"], "system": row["systems"]}
