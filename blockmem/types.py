"""
Data types for block memory.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional


AuthorType = Literal["user", "system"]
Visibility = Literal["private", "public"]
BlockKind = Literal["note", "action_open", "action_closed"]
CaptureReason = Literal["create", "autosave", "finalize"]
NodeType = Literal["user_block", "system_block", "entity", "artifact"]
LinkType = Literal[
    "references", "about", "derived_from", "related",
    "supersedes", "mentions", "candidate_match",
]
ClarificationStatus = Literal["pending", "asked", "answered", "expired"]
Priority = Literal["low", "normal", "high"]
ProcessingStateValue = Literal["pending", "processing", "processed", "error"]
SubjectType = Literal["user_block", "artifact"]
IngestStatus = Literal["parsed", "linked", "error"]
SearchScope = Literal["user", "all"]

VISIBILITIES = ("private", "public")
BLOCK_KINDS = ("note", "action_open", "action_closed")
CAPTURE_REASONS = ("create", "autosave", "finalize")
NODE_TYPES = ("user_block", "system_block", "entity", "artifact")
LINK_TYPES = (
    "references", "about", "derived_from", "related",
    "supersedes", "mentions", "candidate_match",
)
PRIORITIES = ("low", "normal", "high")
SUBJECT_TYPES = ("user_block", "artifact")

# Node type for each block author
BLOCK_NODE_TYPES = {"user": "user_block", "system": "system_block"}


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS.ffffff.

    All timestamps are UTC, stored without timezone suffix. Microseconds
    keep newest-first ordering stable for writes in the same second.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format and variants with microseconds,
    'Z', or '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def content_hash(text: str) -> str:
    """SHA-256 hex digest of text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def make_source_ref(type: str, id: Any = None, **extras) -> dict:
    """Build a versioned source reference envelope."""
    ref = {"v": 1, "type": type}
    if id is not None:
        ref["id"] = id
    ref.update(extras)
    return ref


@dataclass
class Block:
    """
    A unit of stored content, authored by the user or by the system.

    User blocks are mutable and versioned; system blocks are immutable
    once created and may carry a dedupe key.
    """
    id: str
    author_type: AuthorType
    content: str
    visibility: str = "private"
    source: str = "manual"
    source_ref: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    # User blocks only
    content_hash: Optional[str] = None
    row_version: int = 1
    # System blocks only
    block_kind: Optional[str] = None
    confidence: Optional[float] = None
    dedupe_key: Optional[str] = None

    @property
    def node_type(self) -> str:
        return BLOCK_NODE_TYPES[self.author_type]

    @property
    def key(self) -> str:
        """Identity across both block tables: author_type:id."""
        return f"{self.author_type}:{self.id}"


@dataclass
class BlockVersion:
    """An append-only snapshot of a user block."""
    block_id: str
    version_no: int
    content: str
    content_hash: str
    capture_reason: str
    captured_at: str
    source: str = "manual"
    source_ref: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)


@dataclass
class Entity:
    """A resolved person."""
    id: str
    canonical_name: str
    aliases: list[str] = field(default_factory=list)
    verified: bool = False
    confidence: float = 0.5
    metadata: dict = field(default_factory=dict)
    entity_type: str = "person"
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Link:
    """Directed, typed edge between two nodes."""
    from_type: str
    from_id: str
    to_type: str
    to_id: str
    link_type: str
    confidence: float = 0.5
    metadata: dict = field(default_factory=dict)
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Artifact:
    """An ingested file with extracted text."""
    id: str
    source_type: str
    title: str
    mime_type: str
    checksum: Optional[str]
    ingest_status: str
    text_content: Optional[str] = None
    object_key: Optional[str] = None
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class ClarificationOption:
    label: str
    value: str


@dataclass
class PersonDisambiguationContext:
    """A contact phrase matched several known people."""
    mention: str
    block_id: str
    candidate_entity_ids: list[str] = field(default_factory=list)
    kind: str = "person_disambiguation"


@dataclass
class PersonNewConfirmContext:
    """A contact phrase matched nobody; a candidate entity was created."""
    mention: str
    block_id: str
    candidate_entity_id: str
    kind: str = "person_new_confirm"


ClarificationContext = PersonDisambiguationContext | PersonNewConfirmContext


def context_to_dict(context: ClarificationContext) -> dict:
    if isinstance(context, PersonDisambiguationContext):
        return {
            "kind": context.kind,
            "mention": context.mention,
            "block_id": context.block_id,
            "candidate_entity_ids": list(context.candidate_entity_ids),
        }
    if isinstance(context, PersonNewConfirmContext):
        return {
            "kind": context.kind,
            "mention": context.mention,
            "block_id": context.block_id,
            "candidate_entity_id": context.candidate_entity_id,
        }
    raise TypeError(f"Unknown clarification context: {type(context).__name__}")


def context_from_dict(data: dict) -> ClarificationContext:
    """Rebuild a typed context from its stored form.

    Raises:
        ValueError: If the stored kind is not recognized
    """
    kind = data.get("kind")
    if kind == "person_disambiguation":
        return PersonDisambiguationContext(
            mention=data.get("mention", ""),
            block_id=data.get("block_id", ""),
            candidate_entity_ids=list(data.get("candidate_entity_ids") or []),
        )
    if kind == "person_new_confirm":
        return PersonNewConfirmContext(
            mention=data.get("mention", ""),
            block_id=data.get("block_id", ""),
            candidate_entity_id=data.get("candidate_entity_id", ""),
        )
    raise ValueError(f"Unknown clarification kind: {kind!r}")


@dataclass
class ClarificationItem:
    """A question awaiting a human answer."""
    id: str
    kind: str
    question: str
    options: list[ClarificationOption]
    context: ClarificationContext
    status: str = "pending"
    priority: str = "normal"
    answer: Optional[dict] = None
    asked_at: Optional[str] = None
    answered_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class ProcessingState:
    """Enrichment bookkeeping for one subject."""
    subject_type: str
    subject_id: str
    state: str = "pending"
    attempts: int = 0
    input_hash: Optional[str] = None
    last_processed_hash: Optional[str] = None
    last_error: Optional[str] = None
    claimed_at: Optional[str] = None
    processed_at: Optional[str] = None
    updated_at: str = ""


@dataclass
class EmbeddingProfile:
    id: str
    provider: str
    model: str
    dimensions: int
    is_active: bool = True


@dataclass
class SearchResult:
    """A ranked retrieval hit."""
    block: Block
    score: float
    lexical_score: Optional[float] = None
    vector_score: Optional[float] = None


@dataclass
class CrmTimelineItem:
    block_id: str
    author_type: str
    link_type: str
    content: str
    created_at: str
    block_kind: Optional[str] = None


@dataclass
class CrmPerson:
    """Per-person relationship summary."""
    entity_id: str
    name: str
    verified: bool
    days_since_contact: Optional[int]
    open_loops: int
    recent_topics: list[str]
    roi: float
    timeline: list[CrmTimelineItem] = field(default_factory=list)
    last_contact_at: Optional[str] = None


@dataclass
class ProcessBatchResult:
    user_scanned: int = 0
    user_processed: int = 0
    user_errored: int = 0
    artifacts_scanned: int = 0
    artifacts_processed: int = 0
    artifacts_errored: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class IngestResult:
    scanned: int = 0
    ingested: int = 0
    skipped: int = 0
    errored: int = 0
