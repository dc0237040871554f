"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import json
import re
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..errors import StructuredOutputParseError


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    The same provider instance must be used for both indexing and
    querying to ensure consistent vectors.
    """

    @property
    def dimension(self) -> int:
        """The dimensionality of the embedding vectors."""
        ...

    @property
    def model_name(self) -> str:
        ...

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Raises:
            ExternalServiceError: If the provider call fails
        """
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        ...


# -----------------------------------------------------------------------------
# Structured Completion
# -----------------------------------------------------------------------------

@runtime_checkable
class CompletionProvider(Protocol):
    """
    Produces JSON output constrained by a JSON schema.

    Implementations may return an already-parsed object or raw text
    that contains the JSON somewhere inside it; callers normalize with
    parse_structured_output().
    """

    def complete_json(
        self,
        system: str,
        prompt: str,
        schema: dict,
        *,
        timeout: float = 120.0,
    ) -> Any:
        ...


# -----------------------------------------------------------------------------
# Media Extraction
# -----------------------------------------------------------------------------

@runtime_checkable
class Transcriber(Protocol):
    """Converts an audio file to text."""

    def transcribe(self, path: Path, *, timeout: float = 180.0) -> str | None:
        ...


@runtime_checkable
class ImageTextExtractor(Protocol):
    """Extracts readable text from an image."""

    def extract_text(self, path: Path, mime_type: str, *, timeout: float = 180.0) -> str | None:
        ...


# -----------------------------------------------------------------------------
# Object Storage
# -----------------------------------------------------------------------------

@runtime_checkable
class ObjectStore(Protocol):
    """Durable storage for original file bytes."""

    def put(self, path: Path, checksum: str) -> str:
        """
        Store the file and return its object key.

        Raises:
            ExternalServiceError: If the upload fails
        """
        ...


# -----------------------------------------------------------------------------
# Structured output parsing
# -----------------------------------------------------------------------------

_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def _strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text.strip())


def extract_first_json_value(text: str) -> str:
    """
    Cut the first JSON object or array out of model output.

    Handles code fences and prose before or after the JSON. Brackets
    inside strings are skipped.
    """
    text = _strip_code_fences(text).strip()
    if not text:
        return ""

    obj_i = text.find("{")
    arr_i = text.find("[")
    if obj_i == -1 and arr_i == -1:
        return text

    if obj_i == -1:
        start = arr_i
        open_ch, close_ch = "[", "]"
    elif arr_i == -1:
        start = obj_i
        open_ch, close_ch = "{", "}"
    else:
        start = obj_i if obj_i < arr_i else arr_i
        open_ch, close_ch = ("{", "}") if start == obj_i else ("[", "]")

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]

    return text[start:]


def parse_structured_output(raw: Any) -> dict:
    """
    Normalize completion output to a JSON object.

    Raises:
        StructuredOutputParseError: If no JSON object can be recovered
    """
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        candidate = extract_first_json_value(raw)
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            raise StructuredOutputParseError(
                f"Completion output is not valid JSON: {e}"
            ) from e
        if isinstance(value, dict):
            return value
        raise StructuredOutputParseError(
            f"Completion output is JSON {type(value).__name__}, expected object"
        )
    raise StructuredOutputParseError(
        f"Unsupported completion output type: {type(raw).__name__}"
    )


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from
    configuration, so the store's TOML names providers rather than
    code choosing them.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("openai", OpenAIEmbedding)

        # Later, from config:
        provider = registry.create_embedding("openai", {"dimensions": 512})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._completion_providers: dict[str, type] = {}
        self._transcription_providers: dict[str, type] = {}
        self._vision_providers: dict[str, type] = {}
        self._object_store_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily import provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import embeddings, extraction, llm, storage  # noqa: F401

    # Registration methods

    def register_embedding(self, name: str, provider_class: type) -> None:
        self._embedding_providers[name] = provider_class

    def register_completion(self, name: str, provider_class: type) -> None:
        self._completion_providers[name] = provider_class

    def register_transcription(self, name: str, provider_class: type) -> None:
        self._transcription_providers[name] = provider_class

    def register_vision(self, name: str, provider_class: type) -> None:
        self._vision_providers[name] = provider_class

    def register_object_store(self, name: str, provider_class: type) -> None:
        self._object_store_providers[name] = provider_class

    # Factory methods

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except ValueError:
            raise
        except Exception as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        self._ensure_providers_loaded()
        return self._create_provider("embedding", name, self._embedding_providers, params)

    def create_completion(self, name: str, params: dict | None = None) -> CompletionProvider:
        self._ensure_providers_loaded()
        return self._create_provider("completion", name, self._completion_providers, params)

    def create_transcription(self, name: str, params: dict | None = None) -> Transcriber:
        self._ensure_providers_loaded()
        return self._create_provider("transcription", name, self._transcription_providers, params)

    def create_vision(self, name: str, params: dict | None = None) -> ImageTextExtractor:
        self._ensure_providers_loaded()
        return self._create_provider("vision", name, self._vision_providers, params)

    def create_object_store(self, name: str, params: dict | None = None) -> ObjectStore:
        self._ensure_providers_loaded()
        return self._create_provider("object_store", name, self._object_store_providers, params)

    # Introspection

    def list_embedding_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())

    def list_completion_providers(self) -> list[str]:
        self._ensure_providers_loaded()
        return list(self._completion_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
