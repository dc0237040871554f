"""
SQLite database shared by all block memory stores.

One connection per store directory, opened with manual transaction
control so writers can use BEGIN IMMEDIATE for atomic claims. WAL mode
lets readers in other processes proceed while a batch is running.

Tables:
- user_blocks / user_block_versions: mutable user content, append-only history
- system_blocks: immutable derived content, unique dedupe_key
- all_blocks_v: union view over both block tables
- entities, links: resolved people and typed edges between nodes
- artifacts: ingested files with extracted text
- clarifications: questions awaiting a human answer
- processing_state: enrichment state machine per subject
- embedding_profiles / block_embeddings: which text was embedded with which model
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from .types import EmbeddingProfile, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

DEFAULT_EMBEDDING_PROFILE = ("default-512", "openai", "text-embedding-3-small", 512)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_blocks (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    visibility TEXT NOT NULL DEFAULT 'private'
        CHECK (visibility IN ('private', 'public')),
    source TEXT NOT NULL DEFAULT 'manual',
    source_ref TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    content_hash TEXT NOT NULL,
    row_version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_user_blocks_created ON user_blocks(created_at);

CREATE TABLE IF NOT EXISTS user_block_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    block_id TEXT NOT NULL REFERENCES user_blocks(id) ON DELETE CASCADE,
    version_no INTEGER NOT NULL,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    capture_reason TEXT NOT NULL
        CHECK (capture_reason IN ('create', 'autosave', 'finalize')),
    source TEXT NOT NULL DEFAULT 'manual',
    source_ref TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    captured_at TEXT NOT NULL,
    UNIQUE (block_id, version_no)
);

CREATE TABLE IF NOT EXISTS system_blocks (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    visibility TEXT NOT NULL DEFAULT 'private'
        CHECK (visibility IN ('private', 'public')),
    source TEXT NOT NULL DEFAULT 'system',
    source_ref TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    block_kind TEXT NOT NULL DEFAULT 'note'
        CHECK (block_kind IN ('note', 'action_open', 'action_closed')),
    confidence REAL NOT NULL DEFAULT 0.5
        CHECK (confidence >= 0 AND confidence <= 1),
    dedupe_key TEXT UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_system_blocks_created ON system_blocks(created_at);

CREATE VIEW IF NOT EXISTS all_blocks_v AS
    SELECT 'user' AS author_type, id, content, visibility, source, source_ref,
           metadata, NULL AS block_kind, NULL AS confidence, NULL AS dedupe_key,
           content_hash, row_version, created_at, updated_at
    FROM user_blocks
    UNION ALL
    SELECT 'system' AS author_type, id, content, visibility, source, source_ref,
           metadata, block_kind, confidence, dedupe_key,
           NULL AS content_hash, 1 AS row_version, created_at, updated_at
    FROM system_blocks;

CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL DEFAULT 'person',
    canonical_name TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]',
    verified INTEGER NOT NULL DEFAULT 0,
    confidence REAL NOT NULL DEFAULT 0.5,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entities_updated ON entities(entity_type, updated_at);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    from_type TEXT NOT NULL
        CHECK (from_type IN ('user_block', 'system_block', 'entity', 'artifact')),
    from_id TEXT NOT NULL,
    to_type TEXT NOT NULL
        CHECK (to_type IN ('user_block', 'system_block', 'entity', 'artifact')),
    to_id TEXT NOT NULL,
    link_type TEXT NOT NULL
        CHECK (link_type IN ('references', 'about', 'derived_from', 'related',
                             'supersedes', 'mentions', 'candidate_match')),
    confidence REAL NOT NULL DEFAULT 0.5,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    UNIQUE (from_type, from_id, to_type, to_id, link_type)
);
CREATE INDEX IF NOT EXISTS idx_links_to ON links(to_type, to_id);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    source_type TEXT NOT NULL,
    title TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    text_content TEXT,
    object_key TEXT,
    checksum TEXT,
    ingest_status TEXT NOT NULL
        CHECK (ingest_status IN ('parsed', 'linked', 'error')),
    error TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (source_type, checksum)
);

CREATE TABLE IF NOT EXISTS clarifications (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    question TEXT NOT NULL,
    options TEXT NOT NULL DEFAULT '[]',
    context TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'asked', 'answered', 'expired')),
    priority TEXT NOT NULL DEFAULT 'normal'
        CHECK (priority IN ('low', 'normal', 'high')),
    answer TEXT,
    asked_at TEXT,
    answered_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_clarifications_status ON clarifications(status, created_at);

CREATE TABLE IF NOT EXISTS processing_state (
    subject_type TEXT NOT NULL CHECK (subject_type IN ('user_block', 'artifact')),
    subject_id TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending'
        CHECK (state IN ('pending', 'processing', 'processed', 'error')),
    attempts INTEGER NOT NULL DEFAULT 0,
    input_hash TEXT,
    last_processed_hash TEXT,
    last_error TEXT,
    claimed_at TEXT,
    processed_at TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (subject_type, subject_id)
);
CREATE INDEX IF NOT EXISTS idx_processing_state ON processing_state(state, updated_at);

CREATE TABLE IF NOT EXISTS embedding_profiles (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    dimensions INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS block_embeddings (
    author_type TEXT NOT NULL,
    block_id TEXT NOT NULL,
    profile_id TEXT NOT NULL REFERENCES embedding_profiles(id),
    text_hash TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (author_type, block_id, profile_id)
);
"""


def dumps(value: Any) -> str:
    """Serialize a JSON column."""
    return json.dumps(value if value is not None else {}, ensure_ascii=False)


def loads(text: Optional[str], default: Any = None) -> Any:
    """Deserialize a JSON column, tolerating empty or corrupt values."""
    if not text:
        return {} if default is None else default
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupt JSON column value: %r", text[:80])
        return {} if default is None else default


class Database:
    """
    SQLite connection shared by the stores of one block memory.

    All access goes through a reentrant lock so background tasks and
    the caller can share the connection.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" allowed)
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        if str(self._db_path) != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self._seed()

    def _migrate(self) -> None:
        """Migrate existing databases to current schema."""
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version < SCHEMA_VERSION:
            self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    def _seed(self) -> None:
        """Ensure one active embedding profile exists."""
        row = self._conn.execute(
            "SELECT COUNT(*) FROM embedding_profiles WHERE is_active = 1"
        ).fetchone()
        if row[0] == 0:
            profile_id, provider, model, dimensions = DEFAULT_EMBEDDING_PROFILE
            self._conn.execute("""
                INSERT OR IGNORE INTO embedding_profiles
                (id, provider, model, dimensions, is_active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
            """, (profile_id, provider, model, dimensions, utc_now()))

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single statement (autocommit outside a transaction)."""
        with self._lock:
            return self._conn.execute(sql, params)

    def executemany(self, sql: str, rows: list[tuple]) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(sql, rows)

    def query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run statements in one IMMEDIATE transaction.

        BEGIN IMMEDIATE takes the write lock up front so concurrent
        writers cannot interleave between our read and our update.
        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    # -------------------------------------------------------------------------
    # Embedding profiles
    # -------------------------------------------------------------------------

    def active_embedding_profile(self):
        """Return the active EmbeddingProfile."""
        row = self.query_one("""
            SELECT id, provider, model, dimensions, is_active
            FROM embedding_profiles WHERE is_active = 1
            ORDER BY created_at DESC LIMIT 1
        """)
        return EmbeddingProfile(
            id=row["id"], provider=row["provider"], model=row["model"],
            dimensions=row["dimensions"], is_active=bool(row["is_active"]),
        )

    def activate_embedding_profile(
        self, profile_id: str, provider: str, model: str, dimensions: int,
    ) -> None:
        """Register a profile (if new) and make it the only active one."""
        with self.transaction() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO embedding_profiles
                (id, provider, model, dimensions, is_active, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
            """, (profile_id, provider, model, dimensions, utc_now()))
            conn.execute("UPDATE embedding_profiles SET is_active = 0")
            conn.execute(
                "UPDATE embedding_profiles SET is_active = 1 WHERE id = ?",
                (profile_id,),
            )

    def get_embedding_hash(self, author_type: str, block_id: str, profile_id: str) -> Optional[str]:
        row = self.query_one("""
            SELECT text_hash FROM block_embeddings
            WHERE author_type = ? AND block_id = ? AND profile_id = ?
        """, (author_type, block_id, profile_id))
        return row["text_hash"] if row else None

    def record_embedding(self, author_type: str, block_id: str, profile_id: str, text_hash: str) -> None:
        self.execute("""
            INSERT INTO block_embeddings (author_type, block_id, profile_id, text_hash, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (author_type, block_id, profile_id)
            DO UPDATE SET text_hash = excluded.text_hash, updated_at = excluded.updated_at
        """, (author_type, block_id, profile_id, text_hash, utc_now()))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()
