"""
Protocol definitions for block memory and its storage backends.

Defines interface contracts at two levels:
- BlockMemoryProtocol: the public API used by the CLI
- VectorStoreProtocol: the vector index (ChromaDB locally; any store
  with cosine search can stand in)
"""

from typing import Optional, Protocol, runtime_checkable

from .background import TaskError
from .types import (
    Artifact,
    Block,
    BlockVersion,
    ClarificationItem,
    CrmPerson,
    IngestResult,
    ProcessBatchResult,
    SearchResult,
)
from .vector_store import VectorHit


@runtime_checkable
class VectorStoreProtocol(Protocol):
    """Similarity index over block embeddings."""

    def upsert(
        self,
        author_type: str,
        block_id: str,
        embedding: list[float],
        *,
        text_hash: str,
        created_at: str,
        profile_id: str,
    ) -> None: ...

    def delete(self, author_type: str, block_id: str, *, profile_id: str) -> None: ...

    def search(
        self,
        query_embedding: list[float],
        *,
        include_user: bool = True,
        include_system: bool = True,
        threshold: float = 0.0,
        limit: int = 10,
        profile_id: str,
    ) -> list[VectorHit]: ...


@runtime_checkable
class BlockMemoryProtocol(Protocol):
    """
    The public interface for block memory operations.

    Implemented by BlockMemory (SQLite + ChromaDB backend).
    """

    # -- Blocks --

    def create_user_block(
        self,
        raw_content: str,
        *,
        visibility: str = "private",
        source: str = "manual",
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> Block: ...

    def update_user_block(
        self,
        block_id: str,
        raw_content: str,
        *,
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
        capture_reason: str = "autosave",
    ) -> Block: ...

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
    ) -> Block: ...

    def get_block(self, author_type: str, block_id: str) -> Optional[Block]: ...

    def list_versions(self, block_id: str) -> list[BlockVersion]: ...

    def list_recent_blocks(self, *, include_system: bool = True, limit: int = 20) -> list[Block]: ...

    # -- Retrieval --

    def search_related_blocks(
        self,
        query: str,
        *,
        scope: str = "all",
        limit: int = 8,
        offset: int = 0,
    ) -> list[SearchResult]: ...

    # -- Clarifications --

    def build_clarification_digest(self, limit: int = 10) -> Optional[str]: ...

    def list_pending_clarifications(self, limit: int = 20) -> list[ClarificationItem]: ...

    def resolve_clarification(self, item_id: str, option_index: int) -> str: ...

    # -- Background work --

    def process_pending_state(
        self,
        user_limit: Optional[int] = None,
        artifact_limit: Optional[int] = None,
    ) -> ProcessBatchResult: ...

    def ingest_files(
        self,
        intake_dir=None,
        source_type: Optional[str] = None,
    ) -> IngestResult: ...

    def list_artifacts(
        self,
        limit: int = 50,
        *,
        source_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Artifact]: ...

    def drain(self) -> list[TaskError]: ...

    def store_stats(self) -> dict: ...

    # -- CRM --

    def get_crm_summary(
        self,
        *,
        topic_filter: Optional[str] = None,
        people_filter: Optional[str] = None,
        limit: int = 25,
    ) -> list[CrmPerson]: ...

    def close(self) -> None: ...
