"""Provider interfaces and the registry that creates them from config."""

from .base import (
    CompletionProvider,
    EmbeddingProvider,
    ImageTextExtractor,
    ObjectStore,
    ProviderRegistry,
    Transcriber,
    get_registry,
    parse_structured_output,
)

__all__ = [
    "CompletionProvider",
    "EmbeddingProvider",
    "ImageTextExtractor",
    "ObjectStore",
    "ProviderRegistry",
    "Transcriber",
    "get_registry",
    "parse_structured_output",
]
