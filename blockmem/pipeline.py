"""
Enrichment pipeline: claims pending subjects and applies completion results.

One batch claims user blocks and artifacts from the processing state
table, analyzes each item in turn, and writes the derived blocks and
links. A failing item is recorded on its state row; the batch goes on.
"""

import logging
from typing import Optional

from .artifact_store import ArtifactStore
from .block_store import BlockStore
from .blocks import BlockService
from .entities import EntityResolver
from .entity_store import LinkStore
from .errors import NotFoundError
from .processing_state import ProcessingStateStore
from .processors import (
    PROCESSOR_VERSION,
    Draft,
    analyze_artifact,
    analyze_block,
    derived_dedupe_key,
    to_topic_tokens,
)
from .providers.base import CompletionProvider
from .retrieval import HybridRetriever
from .types import ProcessBatchResult, content_hash

logger = logging.getLogger(__name__)

DEFAULT_USER_LIMIT = 20
DEFAULT_ARTIFACT_LIMIT = 10
MAX_USER_LIMIT = 100
MAX_ARTIFACT_LIMIT = 50

RELATED_SEARCH_LIMIT = 12
MAX_REFERENCES = 8

ENTITY_CONFIDENCE = 0.65


def _clamp(value: Optional[int], default: int, upper: int) -> int:
    return max(1, min(default if value is None else value, upper))


class EnrichmentPipeline:
    """Runs processing batches against the completion service."""

    def __init__(
        self,
        *,
        blocks: BlockService,
        block_store: BlockStore,
        artifacts: ArtifactStore,
        links: LinkStore,
        resolver: EntityResolver,
        processing: ProcessingStateStore,
        retriever: HybridRetriever,
        completion: Optional[CompletionProvider],
        max_attempts: Optional[int] = None,
        processor_version: str = PROCESSOR_VERSION,
    ):
        self._blocks = blocks
        self._block_store = block_store
        self._artifacts = artifacts
        self._links = links
        self._resolver = resolver
        self._processing = processing
        self._retriever = retriever
        self._completion = completion
        self._max_attempts = max_attempts
        self._version = processor_version

    def process_pending_state(
        self,
        user_limit: Optional[int] = None,
        artifact_limit: Optional[int] = None,
    ) -> ProcessBatchResult:
        """
        Process one batch of pending user blocks, then pending artifacts.

        Limits are clamped to 1..100 (user blocks) and 1..50 (artifacts).

        Returns:
            Scanned/processed/errored counts per subject type
        """
        if self._completion is None:
            raise RuntimeError("No completion provider configured")

        result = ProcessBatchResult()

        claimed = self._processing.claim_batch(
            "user_block", _clamp(user_limit, DEFAULT_USER_LIMIT, MAX_USER_LIMIT),
            max_attempts=self._max_attempts,
        )
        result.user_scanned = len(claimed)
        for state in claimed:
            if self._run_item(state.subject_type, state.subject_id, self._process_user_block, result):
                result.user_processed += 1
            else:
                result.user_errored += 1

        claimed = self._processing.claim_batch(
            "artifact", _clamp(artifact_limit, DEFAULT_ARTIFACT_LIMIT, MAX_ARTIFACT_LIMIT),
            max_attempts=self._max_attempts,
        )
        result.artifacts_scanned = len(claimed)
        for state in claimed:
            if self._run_item(state.subject_type, state.subject_id, self._process_artifact, result):
                result.artifacts_processed += 1
            else:
                result.artifacts_errored += 1

        logger.info(
            "Processed batch: users %d/%d, artifacts %d/%d",
            result.user_processed, result.user_scanned,
            result.artifacts_processed, result.artifacts_scanned,
        )
        return result

    def _run_item(self, subject_type: str, subject_id: str, fn, result: ProcessBatchResult) -> bool:
        try:
            processed_hash = fn(subject_id)
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            logger.warning("Processing %s %s failed: %s", subject_type, subject_id, message)
            self._processing.fail(subject_type, subject_id, message)
            result.errors.append(f"{subject_type}:{subject_id}: {message}")
            return False
        state = self._processing.complete(subject_type, subject_id, processed_hash)
        if state == "pending":
            logger.debug("%s %s changed during processing; re-queued", subject_type, subject_id)
        return True

    # -------------------------------------------------------------------------
    # Subjects
    # -------------------------------------------------------------------------

    def _process_user_block(self, block_id: str) -> str:
        block = self._block_store.get_user_block(block_id)
        if block is None:
            raise NotFoundError(f"User block not found: {block_id}")

        related = self._retriever.search_related_blocks(
            block.content, scope="all", limit=RELATED_SEARCH_LIMIT,
        )
        output, _ = analyze_block(self._completion, block, related)

        entity_ids = self._link_entities(
            "user_block", block.id, output.entity_names, confidence=0.72,
        )

        related_ids = [rid for rid in output.related_block_ids if rid != block.id][:MAX_REFERENCES]
        for rid in related_ids:
            self._links.insert(
                "user_block", block.id, "user_block", rid, "references",
                confidence=0.58, metadata={"processor_version": self._version},
            )

        self._create_derived(
            output.drafts,
            subject_type="user_block",
            subject_id=block.id,
            metadata={
                "processor_version": self._version,
                "source_user_block_id": block.id,
                "analysis": output.analysis,
                "type": "block_processor",
            },
            related_ids=related_ids,
            entity_ids=entity_ids,
        )
        return block.content_hash

    def _process_artifact(self, artifact_id: str) -> Optional[str]:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None:
            raise NotFoundError(f"Artifact not found: {artifact_id}")

        output = analyze_artifact(self._completion, artifact)
        entity_ids = self._link_entities(
            "artifact", artifact.id, output.entity_names, confidence=0.7,
        )

        if output.description:
            self._create_derived(
                [Draft(content=output.description, kind="note", confidence=0.8)],
                subject_type="artifact",
                subject_id=artifact.id,
                metadata={
                    "processor_version": self._version,
                    "source_artifact_id": artifact.id,
                    "type": "artifact_description",
                },
                entity_ids=entity_ids,
            )
        self._create_derived(
            output.drafts,
            subject_type="artifact",
            subject_id=artifact.id,
            metadata={
                "processor_version": self._version,
                "source_artifact_id": artifact.id,
                "description": output.description,
                "type": "artifact_processor",
            },
            entity_ids=entity_ids,
        )

        metadata = dict(artifact.metadata)
        metadata["file_description"] = output.description or None
        metadata["topics"] = to_topic_tokens(output.description) if output.description else []
        self._artifacts.mark_linked(artifact.id, metadata)
        return content_hash(artifact.text_content or "")

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def _link_entities(self, from_type: str, from_id: str, names: list[str],
                       *, confidence: float) -> list[str]:
        entity_ids: list[str] = []
        for name in names:
            if not name.strip():
                continue
            entity = self._resolver.ensure_person_entity(name, ENTITY_CONFIDENCE)
            if entity.id not in entity_ids:
                entity_ids.append(entity.id)
            self._links.insert(
                from_type, from_id, "entity", entity.id, "mentions",
                confidence=confidence,
                metadata={"processor_version": self._version, "entity_name": name},
            )
        return entity_ids

    def _create_derived(
        self,
        drafts: list[Draft],
        *,
        subject_type: str,
        subject_id: str,
        metadata: dict,
        related_ids: Optional[list[str]] = None,
        entity_ids: Optional[list[str]] = None,
    ) -> int:
        """Create one system block per draft, linked back to its subject."""
        link_meta = {"processor_version": self._version}
        created = 0
        for draft in drafts:
            kind = draft.kind or "note"
            block = self._blocks.create_system_block(
                draft.content,
                block_kind=kind,
                confidence=draft.confidence if draft.confidence is not None else 0.65,
                source="processor",
                metadata=metadata,
                dedupe_key=derived_dedupe_key(
                    subject_type, subject_id, kind, draft.content, self._version,
                ),
            )
            created += 1
            self._links.insert(
                block.node_type, block.id, subject_type, subject_id, "derived_from",
                confidence=1.0, metadata=link_meta,
            )
            for rid in related_ids or []:
                self._links.insert(
                    block.node_type, block.id, "user_block", rid, "related",
                    confidence=0.7, metadata=link_meta,
                )
            for eid in entity_ids or []:
                self._links.insert(
                    block.node_type, block.id, "entity", eid, "about",
                    confidence=0.75, metadata=link_meta,
                )
        return created
