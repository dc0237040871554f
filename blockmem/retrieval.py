"""
Hybrid retrieval over user and system blocks.

A lexical pass (substring match on query tokens) and a vector pass
(cosine similarity against the active embedding profile) are merged by
block key. Blocks found by both passes get a weighted blend of the two
scores; blocks found by one pass keep that pass's score.
"""

import logging
from typing import Optional

from .block_store import BlockStore
from .errors import ValidationError
from .indexer import BlockIndexer
from .protocol import VectorStoreProtocol
from .types import SearchResult, parse_utc_timestamp

logger = logging.getLogger(__name__)

MAX_QUERY_TOKENS = 6
MIN_TOKEN_LENGTH = 2
TOKEN_WEIGHT = 0.25

LEXICAL_WEIGHT = 0.45
VECTOR_WEIGHT = 0.55

VECTOR_THRESHOLD = 0.68
# Each pass fetches this many candidates per requested result
CANDIDATE_MULTIPLIER = 8

SCOPES = ("user", "all")


def tokenize_query(query: str) -> list[str]:
    """Lowercased whitespace tokens of at least two characters, at most six."""
    tokens = [t for t in query.lower().split() if len(t) >= MIN_TOKEN_LENGTH]
    return tokens[:MAX_QUERY_TOKENS]


def lexical_score(content: str, tokens: list[str]) -> float:
    """0.25 per token found in content (case-insensitive), capped at 1.0."""
    lowered = content.lower()
    matched = sum(1 for t in tokens if t in lowered)
    return min(TOKEN_WEIGHT * matched, 1.0)


def fuse_scores(lexical: Optional[float], vector: Optional[float]) -> float:
    if lexical is None:
        return vector or 0.0
    if vector is None:
        return lexical
    return lexical * LEXICAL_WEIGHT + vector * VECTOR_WEIGHT


class HybridRetriever:
    """Merges lexical and vector hits into one ranked list."""

    def __init__(
        self,
        blocks: BlockStore,
        vector_store: Optional[VectorStoreProtocol] = None,
        indexer: Optional[BlockIndexer] = None,
    ):
        self._blocks = blocks
        self._vector_store = vector_store
        self._indexer = indexer

    def search_related_blocks(
        self,
        query: str,
        *,
        scope: str = "all",
        limit: int = 8,
        offset: int = 0,
    ) -> list[SearchResult]:
        """
        Rank blocks related to query.

        Args:
            query: Free text
            scope: 'user' for user blocks only, 'all' to include system blocks
            limit: Page size
            offset: Results to skip

        Returns:
            Results ordered by score, then newest first
        """
        if scope not in SCOPES:
            raise ValidationError(f"Invalid scope: {scope!r}")
        limit = max(1, limit)
        offset = max(0, offset)
        include_system = scope == "all"
        fetch = limit * CANDIDATE_MULTIPLIER

        merged: dict[str, SearchResult] = {}

        tokens = tokenize_query(query)
        for block in self._blocks.search_substring(tokens, include_system=include_system, limit=fetch):
            score = lexical_score(block.content, tokens)
            merged[block.key] = SearchResult(block=block, score=score, lexical_score=score)

        for key, (block, similarity) in self._vector_pass(query, include_system, fetch).items():
            existing = merged.get(key)
            if existing is None:
                merged[key] = SearchResult(block=block, score=similarity, vector_score=similarity)
                continue
            existing.vector_score = similarity
            existing.score = fuse_scores(existing.lexical_score, similarity)

        # Stable sorts: newest first, then by score
        ranked = sorted(
            merged.values(),
            key=lambda r: parse_utc_timestamp(r.block.created_at),
            reverse=True,
        )
        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked[offset:offset + limit]

    def _vector_pass(self, query: str, include_system: bool, fetch: int) -> dict:
        if self._vector_store is None or self._indexer is None or not query.strip():
            return {}
        try:
            embedding = self._indexer.embed_query(query)
            hits = self._vector_store.search(
                embedding,
                include_user=True,
                include_system=include_system,
                threshold=VECTOR_THRESHOLD,
                limit=fetch,
                profile_id=self._indexer.profile_id,
            )
        except Exception as e:
            logger.warning("Vector search failed, using lexical results only: %s", e)
            return {}

        blocks = self._blocks.get_blocks([(h.author_type, h.block_id) for h in hits])
        found = {}
        for hit in hits:
            key = f"{hit.author_type}:{hit.block_id}"
            block = blocks.get(key)
            if block is not None:
                found[key] = (block, hit.similarity)
        return found
