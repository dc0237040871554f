"""
Block service: validation, frontmatter, versioning and write-path side effects.

User blocks may start with a YAML frontmatter header:

    ---
    person: Alex Chen
    pinned: true
    ---
    call alex about the lease

Frontmatter keys are merged into the block's metadata; the remainder
is the block content.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import yaml

from .background import BackgroundTasks
from .block_store import BlockStore
from .errors import NotFoundError, ValidationError
from .indexer import BlockIndexer
from .processing_state import ProcessingStateStore
from .types import (
    BLOCK_KINDS,
    VISIBILITIES,
    Block,
    BlockVersion,
    content_hash,
    parse_utc_timestamp,
)

logger = logging.getLogger(__name__)

# Autosave checkpoints closer together than this are folded into the row
AUTOSAVE_MIN_INTERVAL_SECONDS = 60

_FRONTMATTER_OPEN = "---\n"
_FRONTMATTER_CLOSE = "\n---\n"


@dataclass
class ParsedContent:
    body: str
    metadata: dict = field(default_factory=dict)


def parse_frontmatter(raw: str) -> ParsedContent:
    """
    Split an optional leading YAML frontmatter block from the body.

    Only a header that opens the text with '---' and closes with a
    '---' line counts. Unparseable or non-mapping headers leave the
    text untouched.
    """
    text = raw.replace("\r\n", "\n")
    if not text.startswith(_FRONTMATTER_OPEN):
        return ParsedContent(body=text.strip())
    end = text.find(_FRONTMATTER_CLOSE, len(_FRONTMATTER_OPEN) - 1)
    if end == -1:
        return ParsedContent(body=text.strip())

    header = text[len(_FRONTMATTER_OPEN):end]
    try:
        data = yaml.safe_load(header) if header.strip() else {}
    except yaml.YAMLError as e:
        logger.debug("Ignoring unparseable frontmatter: %s", e)
        return ParsedContent(body=text.strip())
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return ParsedContent(body=text.strip())

    # Dates and other YAML scalars become JSON-safe strings
    metadata = json.loads(json.dumps({str(k): v for k, v in data.items()}, default=str))
    body = text[end + len(_FRONTMATTER_CLOSE):]
    return ParsedContent(body=body.strip(), metadata=metadata)


class BlockService:
    """
    Creates and updates blocks.

    After each write the service schedules, on the background queue:
    the embedding upsert, the enrichment queue entry (user blocks), and
    the disambiguation scan (user blocks, when one is attached).
    """

    def __init__(
        self,
        store: BlockStore,
        processing: ProcessingStateStore,
        background: BackgroundTasks,
        indexer: Optional[BlockIndexer] = None,
    ):
        self._store = store
        self._processing = processing
        self._background = background
        self._indexer = indexer
        self.disambiguation_scan: Optional[Callable[[Block], None]] = None

    @property
    def store(self) -> BlockStore:
        return self._store

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    def _schedule_index(self, block: Block) -> None:
        if self._indexer is not None:
            self._background.submit(f"embed {block.key}", self._indexer.index_block, block)

    def _after_user_write(self, block: Block) -> None:
        self._schedule_index(block)
        self._background.submit(
            f"queue {block.key}", self._processing.enqueue,
            "user_block", block.id, block.content_hash,
        )
        if self.disambiguation_scan is not None:
            self._background.submit(f"disambiguate {block.key}", self.disambiguation_scan, block)

    # -------------------------------------------------------------------------
    # User blocks
    # -------------------------------------------------------------------------

    def create_user_block(
        self,
        raw_content: str,
        *,
        visibility: str = "private",
        source: str = "manual",
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> Block:
        """
        Store a new user block and record version 1.

        Raises:
            ValidationError: If the body is empty or visibility is invalid
        """
        if visibility not in VISIBILITIES:
            raise ValidationError(f"Invalid visibility: {visibility!r}")
        parsed = parse_frontmatter(raw_content or "")
        if not parsed.body:
            raise ValidationError("Block content is empty")

        merged = dict(parsed.metadata)
        merged.update(metadata or {})
        block = self._store.insert_user_block(
            parsed.body,
            content_hash(parsed.body),
            visibility=visibility,
            source=source,
            source_ref=source_ref or {},
            metadata=merged,
        )
        logger.info("Created user block %s", block.id)
        self._after_user_write(block)
        return block

    def update_user_block(
        self,
        block_id: str,
        raw_content: str,
        *,
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
        capture_reason: str = "autosave",
    ) -> Block:
        """
        Replace a user block's content.

        Metadata merges existing < frontmatter < explicit override. A
        version is recorded when the content differs from the latest
        version, except that autosaves within AUTOSAVE_MIN_INTERVAL_SECONDS
        of the latest version are not recorded. 'finalize' always records.

        Raises:
            NotFoundError: If the block does not exist
            ValidationError: If the body is empty or the reason invalid
            ConcurrencyConflictError: If another writer updated the block first
        """
        if capture_reason not in ("autosave", "finalize"):
            raise ValidationError(f"Invalid capture reason: {capture_reason!r}")
        existing = self._store.get_user_block(block_id)
        if existing is None:
            raise NotFoundError(f"User block not found: {block_id}")
        parsed = parse_frontmatter(raw_content or "")
        if not parsed.body:
            raise ValidationError("Block content is empty")

        merged = dict(existing.metadata)
        merged.update(parsed.metadata)
        merged.update(metadata or {})
        with self._store.transaction():
            block = self._store.update_user_block(
                block_id,
                parsed.body,
                content_hash(parsed.body),
                expected_row_version=existing.row_version,
                source_ref=source_ref if source_ref is not None else existing.source_ref,
                metadata=merged,
            )
            self._checkpoint(block, capture_reason)
        self._after_user_write(block)
        return block

    def _checkpoint(self, block: Block, capture_reason: str) -> Optional[BlockVersion]:
        latest = self._store.latest_version(block.id)
        if capture_reason != "finalize" and latest is not None:
            if latest.content_hash == block.content_hash:
                return None
            age = datetime.now(timezone.utc) - parse_utc_timestamp(latest.captured_at)
            if age.total_seconds() < AUTOSAVE_MIN_INTERVAL_SECONDS:
                logger.debug("Skipping autosave checkpoint for %s (%.0fs old)",
                             block.id, age.total_seconds())
                return None
        return self._store.add_version(block, capture_reason)

    # -------------------------------------------------------------------------
    # System blocks
    # -------------------------------------------------------------------------

    def create_system_block(
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
    ) -> Block:
        """
        Store an immutable system block.

        A dedupe_key already in the store returns the stored block
        unchanged, without a new row or a new embedding.

        Raises:
            ValidationError: If content is empty or an enum value is invalid
        """
        text = (content or "").strip()
        if not text:
            raise ValidationError("Block content is empty")
        if block_kind not in BLOCK_KINDS:
            raise ValidationError(f"Invalid block kind: {block_kind!r}")
        if visibility not in VISIBILITIES:
            raise ValidationError(f"Invalid visibility: {visibility!r}")

        if dedupe_key:
            existing = self._store.get_system_block_by_dedupe_key(dedupe_key)
            if existing is not None:
                return existing

        block, created = self._store.insert_system_block(
            text,
            block_kind=block_kind,
            confidence=max(0.0, min(1.0, float(confidence))),
            visibility=visibility,
            source=source,
            source_ref=source_ref or {},
            metadata=metadata or {},
            dedupe_key=dedupe_key or None,
        )
        if created:
            self._schedule_index(block)
        return block

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_block(self, author_type: str, block_id: str) -> Optional[Block]:
        return self._store.get_block(author_type, block_id)

    def list_versions(self, block_id: str) -> list[BlockVersion]:
        if self._store.get_user_block(block_id) is None:
            raise NotFoundError(f"User block not found: {block_id}")
        return self._store.list_versions(block_id)

    def list_recent_blocks(self, *, include_system: bool = True, limit: int = 20) -> list[Block]:
        return self._store.list_recent(include_system=include_system, limit=limit)
