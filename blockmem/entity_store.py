"""
Entity and link persistence.
"""

import logging
import uuid
from typing import Optional

from .db import Database, dumps, loads
from .errors import NotFoundError, ValidationError
from .types import LINK_TYPES, NODE_TYPES, Entity, Link, utc_now

logger = logging.getLogger(__name__)

MAX_ALIASES = 32


def _row_to_entity(row) -> Entity:
    return Entity(
        id=row["id"],
        entity_type=row["entity_type"],
        canonical_name=row["canonical_name"],
        aliases=loads(row["aliases"], default=[]),
        verified=bool(row["verified"]),
        confidence=float(row["confidence"]),
        metadata=loads(row["metadata"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_link(row) -> Link:
    return Link(
        id=row["id"],
        from_type=row["from_type"],
        from_id=row["from_id"],
        to_type=row["to_type"],
        to_id=row["to_id"],
        link_type=row["link_type"],
        confidence=float(row["confidence"]),
        metadata=loads(row["metadata"]),
        created_at=row["created_at"],
    )


class EntityStore:
    """SQLite-backed store for person entities."""

    def __init__(self, db: Database):
        self._db = db

    def create(
        self,
        canonical_name: str,
        *,
        aliases: Optional[list[str]] = None,
        verified: bool = False,
        confidence: float = 0.5,
        metadata: Optional[dict] = None,
        entity_type: str = "person",
    ) -> Entity:
        entity_id = str(uuid.uuid4())
        now = utc_now()
        self._db.execute("""
            INSERT INTO entities
            (id, entity_type, canonical_name, aliases, verified, confidence,
             metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (entity_id, entity_type, canonical_name,
              dumps(list(aliases or [])[:MAX_ALIASES]), 1 if verified else 0,
              confidence, dumps(metadata), now, now))
        return self.get(entity_id)

    def get(self, entity_id: str) -> Optional[Entity]:
        row = self._db.query_one("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return _row_to_entity(row) if row else None

    def require(self, entity_id: str) -> Entity:
        entity = self.get(entity_id)
        if entity is None:
            raise NotFoundError(f"Entity not found: {entity_id}")
        return entity

    def list_persons(self, limit: int = 200) -> list[Entity]:
        """Person entities, most recently updated first."""
        rows = self._db.query("""
            SELECT * FROM entities
            WHERE entity_type = 'person'
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ?
        """, (limit,))
        return [_row_to_entity(r) for r in rows]

    def set_aliases(self, entity_id: str, aliases: list[str]) -> None:
        self._db.execute(
            "UPDATE entities SET aliases = ?, updated_at = ? WHERE id = ?",
            (dumps(list(aliases)[:MAX_ALIASES]), utc_now(), entity_id),
        )

    def set_verified(self, entity_id: str, verified: bool, confidence: Optional[float] = None) -> None:
        if confidence is None:
            self._db.execute(
                "UPDATE entities SET verified = ?, updated_at = ? WHERE id = ?",
                (1 if verified else 0, utc_now(), entity_id),
            )
        else:
            self._db.execute(
                "UPDATE entities SET verified = ?, confidence = ?, updated_at = ? WHERE id = ?",
                (1 if verified else 0, confidence, utc_now(), entity_id),
            )

    def set_confidence(self, entity_id: str, confidence: float) -> None:
        self._db.execute(
            "UPDATE entities SET confidence = ?, updated_at = ? WHERE id = ?",
            (confidence, utc_now(), entity_id),
        )


class LinkStore:
    """
    SQLite-backed store for typed links between nodes.

    Inserting an existing (from, to, link_type) tuple is a no-op.
    """

    def __init__(self, db: Database):
        self._db = db

    def insert(
        self,
        from_type: str,
        from_id: str,
        to_type: str,
        to_id: str,
        link_type: str,
        *,
        confidence: float = 0.5,
        metadata: Optional[dict] = None,
    ) -> bool:
        """
        Insert a link unless the same tuple already exists.

        Returns:
            True if a new row was written
        """
        if from_type not in NODE_TYPES or to_type not in NODE_TYPES:
            raise ValidationError(f"Invalid link node types: {from_type} -> {to_type}")
        if link_type not in LINK_TYPES:
            raise ValidationError(f"Invalid link type: {link_type}")
        cursor = self._db.execute("""
            INSERT OR IGNORE INTO links
            (from_type, from_id, to_type, to_id, link_type, confidence, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (from_type, from_id, to_type, to_id, link_type,
              max(0.0, min(1.0, confidence)), dumps(metadata), utc_now()))
        return cursor.rowcount > 0

    def delete(
        self,
        from_type: str,
        from_id: str,
        link_type: str,
        *,
        to_type: Optional[str] = None,
        to_id: Optional[str] = None,
    ) -> int:
        """Delete links from a node of a given type, optionally to one target."""
        sql = "DELETE FROM links WHERE from_type = ? AND from_id = ? AND link_type = ?"
        params: list = [from_type, from_id, link_type]
        if to_type is not None:
            sql += " AND to_type = ?"
            params.append(to_type)
        if to_id is not None:
            sql += " AND to_id = ?"
            params.append(to_id)
        cursor = self._db.execute(sql, tuple(params))
        return cursor.rowcount

    def links_from(
        self, from_type: str, from_id: str, link_type: Optional[str] = None,
    ) -> list[Link]:
        sql = "SELECT * FROM links WHERE from_type = ? AND from_id = ?"
        params: list = [from_type, from_id]
        if link_type is not None:
            sql += " AND link_type = ?"
            params.append(link_type)
        sql += " ORDER BY id ASC"
        return [_row_to_link(r) for r in self._db.query(sql, tuple(params))]

    def links_to(
        self,
        to_type: str,
        to_id: str,
        *,
        link_types: Optional[tuple[str, ...]] = None,
        from_types: Optional[tuple[str, ...]] = None,
        limit: int = 300,
    ) -> list[Link]:
        sql = "SELECT * FROM links WHERE to_type = ? AND to_id = ?"
        params: list = [to_type, to_id]
        if link_types:
            sql += f" AND link_type IN ({','.join('?' for _ in link_types)})"
            params.extend(link_types)
        if from_types:
            sql += f" AND from_type IN ({','.join('?' for _ in from_types)})"
            params.extend(from_types)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [_row_to_link(r) for r in self._db.query(sql, tuple(params))]

    def count(self) -> int:
        return self._db.query_one("SELECT COUNT(*) FROM links")[0]
