"""
Vector store implementation using ChromaDB.

One collection per embedding profile, so swapping the embedding model
never mixes vectors of different dimensions. Records are keyed by
author_type:id and carry the text hash they were computed from.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import chromadb
from chromadb.config import Settings

logger = logging.getLogger(__name__)

_COLLECTION_PREFIX = "blocks_"
_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")


@dataclass
class VectorHit:
    """A similarity search hit."""
    author_type: str
    block_id: str
    similarity: float


def collection_name(profile_id: str) -> str:
    """ChromaDB-safe collection name for an embedding profile."""
    name = _COLLECTION_PREFIX + _UNSAFE_NAME_RE.sub("_", profile_id)
    return name[:63]


class ChromaStore:
    """
    Persistent ChromaDB vector index for blocks.

    Distances are cosine; similarity is reported as 1 - distance.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Directory for the ChromaDB persistent client
        """
        self._store_path = store_path
        store_path.mkdir(parents=True, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=str(store_path),
            settings=Settings(anonymized_telemetry=False, allow_reset=True),
        )
        self._collections: dict[str, object] = {}

    def _collection(self, profile_id: str):
        name = collection_name(profile_id)
        if name not in self._collections:
            self._collections[name] = self._client.get_or_create_collection(
                name=name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collections[name]

    def upsert(
        self,
        author_type: str,
        block_id: str,
        embedding: list[float],
        *,
        text_hash: str,
        created_at: str,
        profile_id: str,
    ) -> None:
        """Store or replace the vector for one block."""
        self._collection(profile_id).upsert(
            ids=[f"{author_type}:{block_id}"],
            embeddings=[embedding],
            metadatas=[{
                "author_type": author_type,
                "block_id": block_id,
                "text_hash": text_hash,
                "created_at": created_at,
            }],
        )

    def delete(self, author_type: str, block_id: str, *, profile_id: str) -> None:
        self._collection(profile_id).delete(ids=[f"{author_type}:{block_id}"])

    def search(
        self,
        query_embedding: list[float],
        *,
        include_user: bool = True,
        include_system: bool = True,
        threshold: float = 0.0,
        limit: int = 10,
        profile_id: str,
    ) -> list[VectorHit]:
        """
        Nearest blocks with similarity strictly above threshold.

        Returns:
            Hits ordered by descending similarity
        """
        if not (include_user or include_system) or limit <= 0:
            return []
        coll = self._collection(profile_id)
        total = coll.count()
        if total == 0:
            return []

        where: Optional[dict] = None
        if include_user and not include_system:
            where = {"author_type": "user"}
        elif include_system and not include_user:
            where = {"author_type": "system"}

        result = coll.query(
            query_embeddings=[query_embedding],
            n_results=min(limit, total),
            where=where,
            include=["metadatas", "distances"],
        )

        hits = []
        ids = result.get("ids") or [[]]
        metadatas = result.get("metadatas") or [[]]
        distances = result.get("distances") or [[]]
        for _id, meta, distance in zip(ids[0], metadatas[0], distances[0]):
            similarity = 1.0 - float(distance)
            if similarity <= threshold:
                continue
            hits.append(VectorHit(
                author_type=meta.get("author_type", _id.split(":", 1)[0]),
                block_id=meta.get("block_id", _id.split(":", 1)[-1]),
                similarity=similarity,
            ))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    def count(self, profile_id: str) -> int:
        return self._collection(profile_id).count()

    def close(self) -> None:
        """Release cached collection handles."""
        self._collections.clear()
