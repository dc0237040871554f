"""
Keeps the vector index in step with block content.

A block is re-embedded only when its trimmed text hash differs from the
hash recorded for the active embedding profile.
"""

import logging

from .db import Database
from .protocol import VectorStoreProtocol
from .providers.base import EmbeddingProvider
from .types import Block, content_hash

logger = logging.getLogger(__name__)


class BlockIndexer:
    """Embeds blocks with the active profile and upserts their vectors."""

    def __init__(
        self,
        db: Database,
        vector_store: VectorStoreProtocol,
        embedding_provider: EmbeddingProvider,
    ):
        self._db = db
        self._vector_store = vector_store
        self._embedding_provider = embedding_provider

    @property
    def embedding_provider(self) -> EmbeddingProvider:
        return self._embedding_provider

    @property
    def profile_id(self) -> str:
        return self._db.active_embedding_profile().id

    def index_block(self, block: Block) -> bool:
        """
        Embed and store the block's vector if its text changed.

        Returns:
            True if a new vector was written
        """
        text = block.content.strip()
        if not text:
            return False
        profile_id = self.profile_id
        text_hash = content_hash(text)
        if self._db.get_embedding_hash(block.author_type, block.id, profile_id) == text_hash:
            return False

        embedding = self._embedding_provider.embed(text)
        self._vector_store.upsert(
            block.author_type, block.id, embedding,
            text_hash=text_hash, created_at=block.created_at, profile_id=profile_id,
        )
        self._db.record_embedding(block.author_type, block.id, profile_id, text_hash)
        logger.debug("Indexed %s (%s)", block.key, profile_id)
        return True

    def embed_query(self, text: str) -> list[float]:
        return self._embedding_provider.embed(text)
