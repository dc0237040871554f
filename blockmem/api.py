"""
Core API for block memory.

This is the minimal working implementation focused on:
- create_user_block() / update_user_block(): store and version notes
- search_related_blocks(): hybrid lexical + vector retrieval
- process_pending_state() / ingest_files(): enrichment and intake
- clarification digest/answers and the CRM summary
"""

import logging
from pathlib import Path
from typing import Optional

from .artifact_store import ArtifactStore
from .background import BackgroundTasks, TaskError
from .block_store import BlockStore
from .blocks import BlockService
from .clarification_queue import ClarificationQueue
from .clarifications import ClarificationWorkflow
from .config import StoreConfig, get_store_path, load_or_create_config
from .crm import CrmAggregator
from .db import Database
from .entities import DisambiguationScanner, EntityResolver
from .entity_store import EntityStore, LinkStore
from .indexer import BlockIndexer
from .ingest import ArtifactIngestor
from .pipeline import EnrichmentPipeline
from .processing_state import ProcessingStateStore
from .protocol import VectorStoreProtocol
from .providers.base import (
    CompletionProvider,
    EmbeddingProvider,
    ObjectStore,
    get_registry,
)
from .providers.extraction import FileTextExtractor
from .retrieval import HybridRetriever
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

logger = logging.getLogger(__name__)


def embedding_profile_id(provider_name: str, provider: EmbeddingProvider) -> str:
    """Profile id naming the provider, model and dimensions."""
    return f"{provider_name}-{provider.model_name}-{provider.dimension}"


class BlockMemory:
    """
    Block memory - notes, files and people with hybrid retrieval.

    Example:
        mem = BlockMemory()
        block = mem.create_user_block("email alex about the lease renewal")
        results = mem.search_related_blocks("lease")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        vector_store: Optional[VectorStoreProtocol] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        completion_provider: Optional[CompletionProvider] = None,
        object_store: Optional[ObjectStore] = None,
        extractor: Optional[FileTextExtractor] = None,
        synchronous: bool = False,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Uses BLOCKMEM_STORE_PATH or ~/.blockmem if not given.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            vector_store: Injected vector store (skips ChromaDB creation).
            embedding_provider: Injected embedding provider.
            completion_provider: Injected completion provider.
            object_store: Injected object store for ingested files.
            extractor: Injected file text extractor.
            synchronous: Run write-path side effects inline instead of on
                the background thread.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
            self._store_path = config.path
        else:
            self._store_path = Path(store_path).expanduser().resolve() if store_path else get_store_path()
            self._store_path.mkdir(parents=True, exist_ok=True)
            self._config = load_or_create_config(self._store_path)
        self._store_path.mkdir(parents=True, exist_ok=True)

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        registry = get_registry()

        # --- Providers (injected or created from config) ---
        self._embedding_provider = embedding_provider
        if self._embedding_provider is None and self._config.embedding is not None:
            self._embedding_provider = registry.create_embedding(
                self._config.embedding.name, self._config.embedding.params,
            )
        self._completion_provider = completion_provider
        if self._completion_provider is None and self._config.completion is not None:
            self._completion_provider = registry.create_completion(
                self._config.completion.name, self._config.completion.params,
            )

        # --- Storage ---
        self._db = Database(self._config.db_path)
        self._block_store = BlockStore(self._db)
        self._entity_store = EntityStore(self._db)
        self._link_store = LinkStore(self._db)
        self._artifact_store = ArtifactStore(self._db)
        self._clarification_queue = ClarificationQueue(self._db)
        self._processing = ProcessingStateStore(self._db)

        self._vector_store = vector_store
        self._indexer: Optional[BlockIndexer] = None
        if self._embedding_provider is not None:
            name = self._config.embedding.name if self._config.embedding else "custom"
            self._db.activate_embedding_profile(
                embedding_profile_id(name, self._embedding_provider),
                name,
                self._embedding_provider.model_name,
                self._embedding_provider.dimension,
            )
            if self._vector_store is None:
                from .vector_store import ChromaStore
                self._vector_store = ChromaStore(self._config.chroma_path)
            self._indexer = BlockIndexer(self._db, self._vector_store, self._embedding_provider)

        # --- Services ---
        self._background = BackgroundTasks(synchronous=synchronous)
        self._blocks = BlockService(
            self._block_store, self._processing, self._background, self._indexer,
        )
        self._resolver = EntityResolver(self._entity_store)
        self._blocks.disambiguation_scan = DisambiguationScanner(
            self._resolver, self._link_store, self._clarification_queue, self._blocks,
        )
        self._clarifications = ClarificationWorkflow(
            self._clarification_queue, self._resolver, self._link_store,
        )
        self._retriever = HybridRetriever(self._block_store, self._vector_store, self._indexer)
        self._pipeline = EnrichmentPipeline(
            blocks=self._blocks,
            block_store=self._block_store,
            artifacts=self._artifact_store,
            links=self._link_store,
            resolver=self._resolver,
            processing=self._processing,
            retriever=self._retriever,
            completion=self._completion_provider,
            max_attempts=self._config.processing.max_attempts,
            processor_version=self._config.processing.processor_version,
        )
        self._crm = CrmAggregator(self._entity_store, self._link_store, self._block_store)

        # Intake pieces are created on first ingest (network clients)
        self._object_store = object_store
        self._extractor = extractor
        self._ingestor: Optional[ArtifactIngestor] = None

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def background(self) -> BackgroundTasks:
        return self._background

    @property
    def resolver(self) -> EntityResolver:
        return self._resolver

    @property
    def links(self) -> LinkStore:
        return self._link_store

    @property
    def processing(self) -> ProcessingStateStore:
        return self._processing

    # -------------------------------------------------------------------------
    # Blocks
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
        """Store a new user block (frontmatter allowed) and record version 1."""
        return self._blocks.create_user_block(
            raw_content, visibility=visibility, source=source,
            source_ref=source_ref, metadata=metadata,
        )

    def update_user_block(
        self,
        block_id: str,
        raw_content: str,
        *,
        source_ref: Optional[dict] = None,
        metadata: Optional[dict] = None,
        capture_reason: str = "autosave",
    ) -> Block:
        """Replace a user block's content, checkpointing a version when due."""
        return self._blocks.update_user_block(
            block_id, raw_content, source_ref=source_ref,
            metadata=metadata, capture_reason=capture_reason,
        )

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
        """Store an immutable system block; a known dedupe_key returns the stored row."""
        return self._blocks.create_system_block(
            content, block_kind=block_kind, confidence=confidence,
            visibility=visibility, source=source, source_ref=source_ref,
            metadata=metadata, dedupe_key=dedupe_key,
        )

    def get_block(self, author_type: str, block_id: str) -> Optional[Block]:
        return self._blocks.get_block(author_type, block_id)

    def list_versions(self, block_id: str) -> list[BlockVersion]:
        return self._blocks.list_versions(block_id)

    def list_recent_blocks(self, *, include_system: bool = True, limit: int = 20) -> list[Block]:
        return self._blocks.list_recent_blocks(include_system=include_system, limit=limit)

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    def search_related_blocks(
        self,
        query: str,
        *,
        scope: str = "all",
        limit: int = 8,
        offset: int = 0,
    ) -> list[SearchResult]:
        """Hybrid lexical + vector search. scope is 'user' or 'all'."""
        return self._retriever.search_related_blocks(
            query, scope=scope, limit=limit, offset=offset,
        )

    # -------------------------------------------------------------------------
    # Clarifications
    # -------------------------------------------------------------------------

    def build_clarification_digest(self, limit: int = 10) -> Optional[str]:
        return self._clarifications.build_clarification_digest(limit)

    def list_pending_clarifications(self, limit: int = 20) -> list[ClarificationItem]:
        return self._clarifications.list_pending_clarifications(limit)

    def resolve_clarification(self, item_id: str, option_index: int) -> str:
        return self._clarifications.resolve_clarification(item_id, option_index)

    # -------------------------------------------------------------------------
    # Enrichment and intake
    # -------------------------------------------------------------------------

    def process_pending_state(
        self,
        user_limit: Optional[int] = None,
        artifact_limit: Optional[int] = None,
    ) -> ProcessBatchResult:
        """
        Run one enrichment batch.

        Queued write-path tasks are drained first so recent writes are
        visible to the batch.
        """
        self._background.drain()
        processing = self._config.processing
        return self._pipeline.process_pending_state(
            user_limit if user_limit is not None else processing.user_limit,
            artifact_limit if artifact_limit is not None else processing.artifact_limit,
        )

    def _get_ingestor(self) -> ArtifactIngestor:
        if self._ingestor is None:
            registry = get_registry()
            if self._object_store is None:
                params = dict(self._config.object_store.params)
                if self._config.object_store.name == "file":
                    params.setdefault("root", str(self._store_path / "objects"))
                self._object_store = registry.create_object_store(
                    self._config.object_store.name, params,
                )
            if self._extractor is None:
                transcriber = vision = None
                if self._config.transcription is not None:
                    transcriber = registry.create_transcription(
                        self._config.transcription.name, self._config.transcription.params,
                    )
                if self._config.vision is not None:
                    vision = registry.create_vision(
                        self._config.vision.name, self._config.vision.params,
                    )
                self._extractor = FileTextExtractor(transcriber, vision)
            intake = self._config.ingest.intake_dir
            self._ingestor = ArtifactIngestor(
                self._artifact_store,
                self._processing,
                self._object_store,
                self._extractor,
                intake_dir=Path(intake).expanduser() if intake else self._store_path / "intake",
                source_type=self._config.ingest.source_type,
            )
        return self._ingestor

    def ingest_files(
        self,
        intake_dir: Optional[str | Path] = None,
        source_type: Optional[str] = None,
    ) -> IngestResult:
        """Ingest files from the intake directory (config default when not given)."""
        return self._get_ingestor().ingest_files(
            Path(intake_dir) if intake_dir else None, source_type,
        )

    def list_artifacts(
        self,
        limit: int = 50,
        *,
        source_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[Artifact]:
        return self._artifact_store.list_recent(limit=limit, source_type=source_type, status=status)

    def processing_stats(self) -> dict[str, dict[str, int]]:
        return self._processing.stats()

    def store_stats(self) -> dict:
        """Counts of blocks, links, open questions and queued work."""
        return {
            "store": str(self._store_path),
            "blocks": self._block_store.count(),
            "links": self._link_store.count(),
            "clarifications": self._clarification_queue.count_by_status(),
            "processing": self.processing_stats(),
            "embedding": self._config.embedding.name if self._config.embedding else None,
            "completion": self._config.completion.name if self._config.completion else None,
        }

    # -------------------------------------------------------------------------
    # CRM
    # -------------------------------------------------------------------------

    def get_crm_summary(
        self,
        *,
        topic_filter: Optional[str] = None,
        people_filter: Optional[str] = None,
        limit: int = 25,
    ) -> list[CrmPerson]:
        return self._crm.get_crm_summary(
            topic_filter=topic_filter, people_filter=people_filter, limit=limit,
        )

    # -------------------------------------------------------------------------
    # Background work
    # -------------------------------------------------------------------------

    def drain(self) -> list[TaskError]:
        """Wait for queued write-path tasks; return recorded failures."""
        self._background.drain()
        return self._background.errors

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Finish background work, then close the stores."""
        if getattr(self, "_background", None) is not None:
            self._background.close(drain=True)
        if getattr(self, "_vector_store", None) is not None and hasattr(self._vector_store, "close"):
            self._vector_store.close()
            self._vector_store = None
        if getattr(self, "_db", None) is not None:
            self._db.close()
        if getattr(self, "_ops_log_handler", None):
            logging.getLogger("blockmem").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
