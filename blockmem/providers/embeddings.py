"""
Embedding providers.
"""

import os

from ..errors import ExternalServiceError
from .base import get_registry


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    text-embedding-3 models accept a reduced `dimensions`; 512 keeps the
    index small while preserving most retrieval quality.

    Requires: BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 512,
        api_key: str | None = None,
        timeout: float = 30.0,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        self._model = model
        self._dimension = int(dimensions)
        self._timeout = timeout

        key = api_key or os.environ.get("BLOCKMEM_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        import openai

        try:
            response = self._client.embeddings.create(
                model=self._model,
                input=texts,
                dimensions=self._dimension,
                timeout=self._timeout,
            )
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"OpenAI embedding failed: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise ExternalServiceError(
                f"OpenAI returned {len(data)} embeddings for {len(texts)} inputs"
            )
        return [list(d.embedding) for d in data]


# Register providers
_registry = get_registry()
_registry.register_embedding("openai", OpenAIEmbedding)
