"""
Enrichment state per subject (user block or artifact), in SQLite.

Each subject has one row that moves through
pending -> processing -> processed | error. Claiming is atomic: rows
transition to 'processing' inside a single IMMEDIATE transaction, so
overlapping runners cannot grab the same rows. Stale claims (crashed
runners) are recovered automatically.

A subject whose content changes while it is being processed goes back
to 'pending' when the run completes, so the newer content is analyzed
on the next batch.
"""

import logging
from typing import Optional

from .db import Database
from .types import ProcessingState, utc_now

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (runner crashed)
STALE_CLAIM_SECONDS = 600  # 10 minutes

MAX_ERROR_LENGTH = 1000


def _row_to_state(row) -> ProcessingState:
    return ProcessingState(
        subject_type=row["subject_type"],
        subject_id=row["subject_id"],
        state=row["state"],
        attempts=row["attempts"],
        input_hash=row["input_hash"],
        last_processed_hash=row["last_processed_hash"],
        last_error=row["last_error"],
        claimed_at=row["claimed_at"],
        processed_at=row["processed_at"],
        updated_at=row["updated_at"],
    )


class ProcessingStateStore:
    """
    SQLite-backed enrichment state machine.

    Rows are created by enqueue() on the write path and consumed by
    claim_batch() in the enrichment pipeline.
    """

    def __init__(self, db: Database):
        self._db = db

    def enqueue(self, subject_type: str, subject_id: str, input_hash: Optional[str]) -> None:
        """
        Mark a subject as needing enrichment for the given input hash.

        A subject already processed with the same hash is left alone.
        A subject currently being processed keeps its claim; the new
        hash is recorded so completion sends it back to pending.
        Attempts reset when the input changes.
        """
        now = utc_now()
        self._db.execute("""
            INSERT INTO processing_state
            (subject_type, subject_id, state, attempts, input_hash, updated_at)
            VALUES (?, ?, 'pending', 0, ?, ?)
            ON CONFLICT (subject_type, subject_id) DO UPDATE SET
                state = CASE
                    WHEN processing_state.state = 'processing' THEN 'processing'
                    WHEN processing_state.state = 'processed'
                         AND processing_state.last_processed_hash IS excluded.input_hash
                        THEN 'processed'
                    ELSE 'pending'
                END,
                attempts = CASE
                    WHEN processing_state.state != 'processing'
                         AND processing_state.input_hash IS NOT excluded.input_hash
                        THEN 0
                    ELSE processing_state.attempts
                END,
                input_hash = excluded.input_hash,
                updated_at = excluded.updated_at
        """, (subject_type, subject_id, input_hash, now))

    def _recover_stale_claims(self, conn) -> int:
        """Reset rows stuck in 'processing' longer than STALE_CLAIM_SECONDS.

        Returns count of recovered rows.
        """
        cursor = conn.execute("""
            UPDATE processing_state
            SET state = 'pending', claimed_at = NULL
            WHERE state = 'processing'
              AND claimed_at IS NOT NULL
              AND julianday(?) - julianday(claimed_at) > ? / 86400.0
        """, (utc_now(), STALE_CLAIM_SECONDS))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale processing claims", recovered)
        return recovered

    def claim_batch(
        self,
        subject_type: str,
        limit: int,
        *,
        max_attempts: Optional[int] = None,
    ) -> list[ProcessingState]:
        """
        Atomically claim the oldest eligible rows for processing.

        Eligible rows are 'pending' or 'error', oldest updated_at first.
        Claimed rows move to 'processing' with attempts incremented and
        last_error cleared. With max_attempts set, rows that already
        used their attempts are skipped.
        """
        now = utc_now()
        with self._db.transaction() as conn:
            self._recover_stale_claims(conn)

            sql = """
                SELECT * FROM processing_state
                WHERE subject_type = ?
                  AND state IN ('pending', 'error')
            """
            params: list = [subject_type]
            if max_attempts is not None:
                sql += " AND attempts < ?"
                params.append(max_attempts)
            sql += " ORDER BY updated_at ASC, rowid ASC LIMIT ?"
            params.append(limit)
            rows = conn.execute(sql, tuple(params)).fetchall()

            if rows:
                conn.executemany("""
                    UPDATE processing_state
                    SET state = 'processing',
                        attempts = attempts + 1,
                        last_error = NULL,
                        claimed_at = ?,
                        updated_at = ?
                    WHERE subject_type = ? AND subject_id = ?
                """, [(now, now, subject_type, r["subject_id"]) for r in rows])

        claimed = []
        for r in rows:
            state = _row_to_state(r)
            state.state = "processing"
            state.attempts += 1
            state.last_error = None
            state.claimed_at = now
            claimed.append(state)
        return claimed

    def complete(self, subject_type: str, subject_id: str, processed_hash: Optional[str]) -> str:
        """
        Record a successful run over content with processed_hash.

        Returns:
            The resulting state: 'processed', or 'pending' if newer
            content arrived during the run
        """
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute("""
                UPDATE processing_state
                SET state = CASE
                        WHEN input_hash IS NULL OR input_hash IS ? THEN 'processed'
                        ELSE 'pending'
                    END,
                    last_processed_hash = ?,
                    last_error = NULL,
                    claimed_at = NULL,
                    processed_at = ?,
                    updated_at = ?
                WHERE subject_type = ? AND subject_id = ?
            """, (processed_hash, processed_hash, now, now, subject_type, subject_id))
            row = conn.execute("""
                SELECT state FROM processing_state
                WHERE subject_type = ? AND subject_id = ?
            """, (subject_type, subject_id)).fetchone()
        return row["state"] if row else "processed"

    def fail(self, subject_type: str, subject_id: str, error: str) -> None:
        """Record a failed run; the row is eligible again on the next batch."""
        self._db.execute("""
            UPDATE processing_state
            SET state = 'error', last_error = ?, claimed_at = NULL, updated_at = ?
            WHERE subject_type = ? AND subject_id = ?
        """, (error[:MAX_ERROR_LENGTH], utc_now(), subject_type, subject_id))

    def get(self, subject_type: str, subject_id: str) -> Optional[ProcessingState]:
        row = self._db.query_one("""
            SELECT * FROM processing_state WHERE subject_type = ? AND subject_id = ?
        """, (subject_type, subject_id))
        return _row_to_state(row) if row else None

    def stats(self) -> dict[str, dict[str, int]]:
        """Row counts by subject type and state."""
        rows = self._db.query("""
            SELECT subject_type, state, COUNT(*) AS cnt
            FROM processing_state
            GROUP BY subject_type, state
        """)
        result: dict[str, dict[str, int]] = {}
        for r in rows:
            result.setdefault(r["subject_type"], {})[r["state"]] = r["cnt"]
        return result
