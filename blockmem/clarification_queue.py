"""
Clarification queue using SQLite.

Items move pending -> asked -> answered. Answering is a conditional
update on status, so two concurrent answers cannot both succeed.
"""

import json
import logging
import uuid
from typing import Optional

from .db import Database, dumps, loads
from .types import (
    ClarificationContext,
    ClarificationItem,
    ClarificationOption,
    context_from_dict,
    context_to_dict,
    utc_now,
)

logger = logging.getLogger(__name__)


def _row_to_item(row) -> ClarificationItem:
    options = [
        ClarificationOption(label=o.get("label", ""), value=o.get("value", ""))
        for o in loads(row["options"], default=[])
    ]
    return ClarificationItem(
        id=row["id"],
        kind=row["kind"],
        question=row["question"],
        options=options,
        context=context_from_dict(loads(row["context"])),
        status=row["status"],
        priority=row["priority"],
        answer=json.loads(row["answer"]) if row["answer"] else None,
        asked_at=row["asked_at"],
        answered_at=row["answered_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ClarificationQueue:
    """SQLite-backed queue of questions for the user."""

    def __init__(self, db: Database):
        self._db = db

    def enqueue(
        self,
        question: str,
        options: list[ClarificationOption],
        context: ClarificationContext,
        *,
        priority: str = "normal",
    ) -> ClarificationItem:
        item_id = str(uuid.uuid4())
        now = utc_now()
        self._db.execute("""
            INSERT INTO clarifications
            (id, kind, question, options, context, status, priority, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
        """, (item_id, context.kind, question,
              dumps([{"label": o.label, "value": o.value} for o in options]),
              dumps(context_to_dict(context)), priority, now, now))
        logger.info("Queued clarification %s (%s)", item_id, context.kind)
        return self.get(item_id)

    def get(self, item_id: str) -> Optional[ClarificationItem]:
        row = self._db.query_one("SELECT * FROM clarifications WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    def list_open(self, limit: int = 20) -> list[ClarificationItem]:
        """Pending and asked items, oldest first."""
        rows = self._db.query("""
            SELECT * FROM clarifications
            WHERE status IN ('pending', 'asked')
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?
        """, (limit,))
        return [_row_to_item(r) for r in rows]

    def exists_for_mention(self, block_id: str, mention: str) -> bool:
        """True if any item (in any status) was raised for this block and mention."""
        row = self._db.query_one("""
            SELECT 1 FROM clarifications
            WHERE json_extract(context, '$.block_id') = ?
              AND lower(json_extract(context, '$.mention')) = lower(?)
            LIMIT 1
        """, (block_id, mention))
        return row is not None

    def mark_asked(self, item_ids: list[str]) -> None:
        if not item_ids:
            return
        now = utc_now()
        self._db.executemany("""
            UPDATE clarifications
            SET status = 'asked', asked_at = ?, updated_at = ?
            WHERE id = ? AND status IN ('pending', 'asked')
        """, [(now, now, item_id) for item_id in item_ids])

    def claim_answer(self, item_id: str, answer: dict) -> bool:
        """
        Record an answer if the item is not answered yet.

        Returns:
            True if this call won the claim
        """
        now = utc_now()
        cursor = self._db.execute("""
            UPDATE clarifications
            SET status = 'answered', answer = ?, answered_at = ?, updated_at = ?
            WHERE id = ? AND status != 'answered'
        """, (json.dumps(answer), now, now, item_id))
        return cursor.rowcount > 0

    def transaction(self):
        """Group the answer claim with the writes it triggers."""
        return self._db.transaction()

    def count_by_status(self) -> dict[str, int]:
        rows = self._db.query(
            "SELECT status, COUNT(*) AS cnt FROM clarifications GROUP BY status"
        )
        return {r["status"]: r["cnt"] for r in rows}
