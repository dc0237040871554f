"""
Pure processing functions for the enrichment pipeline.

These build the completion prompts and validate what the completion
service returns, without any store reads or writes. The pipeline applies
the validated results to the stores.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections import Counter
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError as SchemaValidationError

from .errors import StructuredOutputParseError
from .providers.base import CompletionProvider, parse_structured_output
from .types import BLOCK_KINDS, Artifact, Block, SearchResult

logger = logging.getLogger(__name__)

PROCESSOR_VERSION = "v1"

MAX_DRAFTS = 6
MAX_DRAFT_CHARS = 3000
DEFAULT_DRAFT_CONFIDENCE = 0.65
MAX_CANDIDATES = 10
MAX_ENTITY_NAMES = 10
CANDIDATE_PREVIEW_CHARS = 420
ARTIFACT_TEXT_CHARS = 18_000

BLOCK_TIMEOUT = 120.0
ARTIFACT_TIMEOUT = 180.0

# Draft kinds the model tends to use that map onto an open action
_ACTION_KINDS = frozenset({"followup", "follow_up", "todo", "task", "action"})

TOPIC_STOPWORDS = frozenset({
    "this", "that", "with", "from", "have", "will", "would", "there", "their",
    "about", "email", "draft", "note", "what", "when", "where", "should",
    "could", "also", "into", "over", "under", "only", "them", "they", "your",
})

_DRAFT_SCHEMA = {
    "type": "object",
    "properties": {
        "content": {"type": "string"},
        "kind": {"type": "string", "enum": list(BLOCK_KINDS)},
        "confidence": {"type": "number"},
    },
    "required": ["content"],
    "additionalProperties": False,
}

BLOCK_PROCESS_SCHEMA = {
    "type": "object",
    "properties": {
        "analysis": {"type": "string"},
        "drafts": {"type": "array", "items": _DRAFT_SCHEMA},
        "related_block_ids": {"type": "array", "items": {"type": "string"}},
        "entity_names": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["analysis", "drafts", "related_block_ids", "entity_names"],
    "additionalProperties": False,
}

ARTIFACT_PROCESS_SCHEMA = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "drafts": {"type": "array", "items": _DRAFT_SCHEMA},
        "entity_names": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["description", "drafts", "entity_names"],
    "additionalProperties": False,
}

BLOCK_SYSTEM_PROMPT = """You analyze one note from a personal knowledge base and produce structured updates.

Rules:
- Keep the analysis factual and concise.
- `drafts` are atomic, useful follow-ups, insights or questions (0-6 items). Use kind "action_open" for things someone still has to do, otherwise "note".
- `related_block_ids` must only use ids from candidate_related_blocks.
- `entity_names` should only include likely people (proper names), not generic nouns.
- Do not repeat the note verbatim."""

ARTIFACT_SYSTEM_PROMPT = """You analyze one ingested file and produce structured outputs.

Rules:
- `description` summarizes what the file is (1-2 sentences).
- `drafts` are atomic insights, questions or follow-ups taken from the file (0-6 items). Use kind "action_open" for things someone still has to do, otherwise "note".
- `entity_names` should only include likely people (proper names)."""


# --- Result models ---

class Draft(BaseModel):
    content: str = ""
    kind: Optional[str] = None
    confidence: Optional[float] = None


class BlockAnalysis(BaseModel):
    analysis: str = ""
    drafts: list[Draft] = Field(default_factory=list)
    related_block_ids: list[str] = Field(default_factory=list)
    entity_names: list[str] = Field(default_factory=list)


class ArtifactAnalysis(BaseModel):
    description: str = ""
    drafts: list[Draft] = Field(default_factory=list)
    entity_names: list[str] = Field(default_factory=list)


# --- Helpers ---

def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def truncate_for_prompt(text: str, max_chars: int = 1200) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...[truncated]"


def clamp_confidence(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number != number or number in (float("inf"), float("-inf")):
        return fallback
    return max(0.0, min(1.0, number))


def normalize_draft_kind(kind: Optional[str]) -> str:
    if not kind:
        return "note"
    lowered = kind.strip().lower()
    if lowered in BLOCK_KINDS:
        return lowered
    if lowered in _ACTION_KINDS:
        return "action_open"
    return "note"


def sanitize_processor_blocks(drafts: list[Draft]) -> list[Draft]:
    """Drop empty drafts; clip content, normalize kind and confidence; keep at most six."""
    out: list[Draft] = []
    for draft in drafts:
        content = normalize_whitespace(draft.content or "")
        if not content:
            continue
        out.append(Draft(
            content=content[:MAX_DRAFT_CHARS],
            kind=normalize_draft_kind(draft.kind),
            confidence=clamp_confidence(draft.confidence, DEFAULT_DRAFT_CONFIDENCE),
        ))
        if len(out) >= MAX_DRAFTS:
            break
    return out


def to_topic_tokens(text: str, top: int = 5) -> list[str]:
    """Most frequent words of four or more letters, stoplisted."""
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    counts = Counter(w for w in words if len(w) >= 4 and w not in TOPIC_STOPWORDS)
    return [word for word, _ in counts.most_common(top)]


def derived_dedupe_key(subject_type: str, subject_id: str, kind: str, content: str,
                       processor_version: str = PROCESSOR_VERSION) -> str:
    raw = f"{subject_type}:{subject_id}:{processor_version}:{kind}:{content}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def candidate_rows(related: list[SearchResult], self_id: str) -> list[dict]:
    """Prompt rows for related user blocks, excluding the block itself."""
    rows = []
    for r in related:
        if r.block.author_type != "user" or r.block.id == self_id:
            continue
        rows.append({
            "id": r.block.id,
            "author_type": r.block.author_type,
            "score": round(r.score, 3),
            "content_preview": truncate_for_prompt(r.block.content, CANDIDATE_PREVIEW_CHARS),
        })
        if len(rows) >= MAX_CANDIDATES:
            break
    return rows


def build_block_prompt(block: Block, candidates: list[dict]) -> str:
    return "\n".join([
        "note:",
        json.dumps({
            "id": block.id,
            "source": block.source,
            "created_at": block.created_at,
            "updated_at": block.updated_at,
            "content": block.content,
        }, indent=2),
        "",
        "candidate_related_blocks:",
        json.dumps(candidates, indent=2),
    ])


def build_artifact_prompt(artifact: Artifact) -> str:
    text = normalize_whitespace(artifact.text_content or "")
    return "\n".join([
        "artifact:",
        json.dumps({
            "id": artifact.id,
            "source_type": artifact.source_type,
            "title": artifact.title,
            "mime_type": artifact.mime_type,
            "object_key": artifact.object_key,
            "metadata": artifact.metadata,
            "extracted_text_available": bool(text),
        }, indent=2),
        "",
        "extracted_text:",
        truncate_for_prompt(text, ARTIFACT_TEXT_CHARS) if text else "(none)",
    ])


def _validate(model: type[BaseModel], raw: Any) -> BaseModel:
    data = parse_structured_output(raw)
    try:
        return model.model_validate(data)
    except SchemaValidationError as e:
        raise StructuredOutputParseError(f"Output does not match schema: {e}") from e


# --- Processing functions ---

def analyze_block(
    provider: CompletionProvider,
    block: Block,
    related: list[SearchResult],
) -> tuple[BlockAnalysis, list[dict]]:
    """
    Ask the completion service about one user block.

    Returns:
        The validated analysis and the candidate rows it was shown.
        related_block_ids are restricted to those candidates.

    Raises:
        ExternalServiceError: The call failed
        StructuredOutputParseError: The output was not valid JSON for the schema
    """
    candidates = candidate_rows(related, block.id)
    raw = provider.complete_json(
        BLOCK_SYSTEM_PROMPT,
        build_block_prompt(block, candidates),
        BLOCK_PROCESS_SCHEMA,
        timeout=BLOCK_TIMEOUT,
    )
    result = _validate(BlockAnalysis, raw)
    allowed = {c["id"] for c in candidates}
    related_ids: list[str] = []
    for rid in result.related_block_ids:
        rid = str(rid)
        if rid in allowed and rid not in related_ids:
            related_ids.append(rid)
    return BlockAnalysis(
        analysis=normalize_whitespace(result.analysis),
        drafts=sanitize_processor_blocks(result.drafts),
        related_block_ids=related_ids,
        entity_names=[str(n) for n in result.entity_names][:MAX_ENTITY_NAMES],
    ), candidates


def analyze_artifact(provider: CompletionProvider, artifact: Artifact) -> ArtifactAnalysis:
    """Ask the completion service about one artifact."""
    raw = provider.complete_json(
        ARTIFACT_SYSTEM_PROMPT,
        build_artifact_prompt(artifact),
        ARTIFACT_PROCESS_SCHEMA,
        timeout=ARTIFACT_TIMEOUT,
    )
    result = _validate(ArtifactAnalysis, raw)
    return ArtifactAnalysis(
        description=normalize_whitespace(result.description),
        drafts=sanitize_processor_blocks(result.drafts),
        entity_names=[str(n) for n in result.entity_names][:MAX_ENTITY_NAMES],
    )
