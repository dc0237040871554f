"""
Shared pytest fixtures for blockmem tests.

Provides mock providers so tests never call external services or load
ChromaDB.
"""

import hashlib
import math
from pathlib import Path
from typing import Any

import pytest

from blockmem.api import BlockMemory
from blockmem.config import StoreConfig
from blockmem.db import Database
from blockmem.vector_store import VectorHit


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider for testing.

    Generates consistent embeddings from a text hash - identical text
    gives similarity 1.0, unrelated text lands near 0.
    """

    dimension = 64
    model_name = "mock-model"

    def __init__(self):
        self.embed_calls = 0
        self.batch_calls = 0

    def embed(self, text: str) -> list[float]:
        """Generate deterministic embedding from text hash."""
        self.embed_calls += 1
        h = hashlib.sha512(text.encode()).digest()
        # Centered values in [-1, 1]
        return [(b / 127.5) - 1.0 for b in h[:self.dimension]]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        self.batch_calls += 1
        return [self.embed(t) for t in texts]


class MockCompletionProvider:
    """
    Mock completion provider.

    Returns queued responses in order, then the default. A queued
    exception instance is raised instead of returned.
    """

    def __init__(self, default: Any = None):
        self.default = default if default is not None else {
            "analysis": "nothing notable",
            "drafts": [],
            "related_block_ids": [],
            "entity_names": [],
        }
        self.responses: list = []
        self.calls: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def complete_json(self, system: str, prompt: str, schema: dict, *, timeout: float = 120.0):
        self.calls.append({"system": system, "prompt": prompt, "schema": schema, "timeout": timeout})
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class MockVectorStore:
    """
    In-memory vector store with cosine search.

    Tests can pin the similarity reported for a block by setting
    overrides["author_type:id"].
    """

    def __init__(self):
        self._data: dict[str, dict[str, dict]] = {}  # profile -> {key -> record}
        self.overrides: dict[str, float] = {}
        self.upsert_calls = 0
        self.fail_search = False

    def upsert(self, author_type: str, block_id: str, embedding: list[float], *,
               text_hash: str, created_at: str, profile_id: str) -> None:
        self.upsert_calls += 1
        self._data.setdefault(profile_id, {})[f"{author_type}:{block_id}"] = {
            "author_type": author_type,
            "block_id": block_id,
            "embedding": embedding,
            "text_hash": text_hash,
        }

    def delete(self, author_type: str, block_id: str, *, profile_id: str) -> None:
        self._data.get(profile_id, {}).pop(f"{author_type}:{block_id}", None)

    def search(self, query_embedding: list[float], *, include_user: bool = True,
               include_system: bool = True, threshold: float = 0.0,
               limit: int = 10, profile_id: str) -> list[VectorHit]:
        if self.fail_search:
            raise RuntimeError("vector index unavailable")
        hits = []
        for key, rec in self._data.get(profile_id, {}).items():
            if rec["author_type"] == "user" and not include_user:
                continue
            if rec["author_type"] == "system" and not include_system:
                continue
            similarity = self.overrides.get(key, _cosine(query_embedding, rec["embedding"]))
            if similarity > threshold:
                hits.append(VectorHit(rec["author_type"], rec["block_id"], similarity))
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit]

    def count(self, profile_id: str) -> int:
        return len(self._data.get(profile_id, {}))

    def close(self) -> None:
        self._data.clear()


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def mock_completion():
    return MockCompletionProvider()


@pytest.fixture
def vector_store():
    return MockVectorStore()


@pytest.fixture
def db(tmp_path: Path):
    """A fresh SQLite database."""
    database = Database(tmp_path / "blocks.db")
    yield database
    database.close()


@pytest.fixture
def memory(tmp_path: Path, vector_store, mock_embedding_provider, mock_completion):
    """
    BlockMemory over a temp store with mock providers.

    Side effects run synchronously so tests see them immediately.
    """
    mem = BlockMemory(
        config=StoreConfig(path=tmp_path / "store"),
        vector_store=vector_store,
        embedding_provider=mock_embedding_provider,
        completion_provider=mock_completion,
        synchronous=True,
    )
    yield mem
    mem.close()
