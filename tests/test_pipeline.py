"""Tests for the enrichment pipeline and its processing functions."""

import pytest

from blockmem.api import BlockMemory
from blockmem.config import StoreConfig
from blockmem.errors import StructuredOutputParseError
from blockmem.processors import (
    Draft,
    analyze_block,
    derived_dedupe_key,
    normalize_draft_kind,
    sanitize_processor_blocks,
    to_topic_tokens,
    truncate_for_prompt,
)
from blockmem.types import SearchResult, content_hash


def _response(**overrides) -> dict:
    base = {"analysis": "ok", "drafts": [], "related_block_ids": [], "entity_names": []}
    base.update(overrides)
    return base


def _add_artifact(memory, text: str = "Invoice from Maria Lopez for march rent"):
    artifact, _ = memory._artifact_store.insert(
        source_type="file",
        title="invoice.txt",
        mime_type="text/plain",
        checksum=content_hash(text),
        text_content=text,
        object_key="objects/invoice.txt",
        metadata={"local_path": "/tmp/invoice.txt"},
    )
    memory.processing.enqueue("artifact", artifact.id, content_hash(text))
    return artifact


class TestProcessorHelpers:
    """Tests for the pure helpers in processors."""

    def test_truncate(self):
        assert truncate_for_prompt("short", 10) == "short"
        assert truncate_for_prompt("x" * 20, 10) == "x" * 10 + "\n...[truncated]"

    def test_normalize_draft_kind(self):
        assert normalize_draft_kind("followup") == "action_open"
        assert normalize_draft_kind("ACTION_CLOSED") == "action_closed"
        assert normalize_draft_kind("insight") == "note"
        assert normalize_draft_kind(None) == "note"

    def test_sanitize_drops_empty_and_caps(self):
        drafts = [Draft(content="  ")] + [Draft(content=f"idea {i}") for i in range(10)]
        cleaned = sanitize_processor_blocks(drafts)
        assert len(cleaned) == 6
        assert cleaned[0].content == "idea 0"
        assert cleaned[0].confidence == pytest.approx(0.65)

    def test_sanitize_clamps_confidence(self):
        cleaned = sanitize_processor_blocks([Draft(content="x", confidence=4.2)])
        assert cleaned[0].confidence == 1.0

    def test_topic_tokens(self):
        tokens = to_topic_tokens("Lease renewal: lease terms, renewal date, lease deposit")
        assert tokens[:2] == ["lease", "renewal"]

    def test_dedupe_key_depends_on_version(self):
        a = derived_dedupe_key("user_block", "b1", "note", "text", "v1")
        b = derived_dedupe_key("user_block", "b1", "note", "text", "v2")
        assert a != b
        assert a == derived_dedupe_key("user_block", "b1", "note", "text", "v1")

    def test_invalid_output_raises(self, memory, mock_completion):
        block = memory.create_user_block("budget notes")
        mock_completion.queue("not json at all")
        with pytest.raises(StructuredOutputParseError):
            analyze_block(mock_completion, block, [])

    def test_schema_mismatch_raises(self, memory, mock_completion):
        block = memory.create_user_block("budget notes")
        mock_completion.queue({"analysis": "x", "drafts": "not a list"})
        with pytest.raises(StructuredOutputParseError):
            analyze_block(mock_completion, block, [])

    def test_candidates_exclude_self_and_system(self, memory, mock_completion):
        block = memory.create_user_block("budget notes")
        other = memory.create_user_block("budget review")
        system = memory.create_system_block("budget insight")
        related = [
            SearchResult(block=block, score=1.0),
            SearchResult(block=other, score=0.5),
            SearchResult(block=system, score=0.5),
        ]
        mock_completion.queue(_response(related_block_ids=[block.id, other.id, system.id]))
        output, candidates = analyze_block(mock_completion, block, related)
        assert [c["id"] for c in candidates] == [other.id]
        assert output.related_block_ids == [other.id]
        assert mock_completion.calls[-1]["timeout"] == 120.0


class TestProcessPendingState:
    """Tests for BlockMemory.process_pending_state."""

    def test_requires_completion_provider(self, tmp_path, vector_store, mock_embedding_provider):
        mem = BlockMemory(
            config=StoreConfig(path=tmp_path / "bare"),
            vector_store=vector_store,
            embedding_provider=mock_embedding_provider,
            synchronous=True,
        )
        try:
            with pytest.raises(RuntimeError):
                mem.process_pending_state()
        finally:
            mem.close()

    def test_empty_batch(self, memory):
        result = memory.process_pending_state()
        assert result.user_scanned == 0
        assert result.artifacts_scanned == 0

    def test_failure_then_retry(self, memory, mock_completion):
        block = memory.create_user_block("budget notes")
        mock_completion.queue(RuntimeError("service down"))

        first = memory.process_pending_state()
        assert (first.user_scanned, first.user_processed, first.user_errored) == (1, 0, 1)
        assert first.errors == [f"user_block:{block.id}: RuntimeError: service down"]
        state = memory.processing.get("user_block", block.id)
        assert state.state == "error"
        assert state.attempts == 1
        assert state.last_error == "RuntimeError: service down"

        second = memory.process_pending_state()
        assert second.user_processed == 1
        state = memory.processing.get("user_block", block.id)
        assert state.state == "processed"
        assert state.attempts == 2
        assert state.last_error is None
        assert state.last_processed_hash == block.content_hash

    def test_processed_block_not_reclaimed(self, memory):
        memory.create_user_block("budget notes")
        memory.process_pending_state()
        assert memory.process_pending_state().user_scanned == 0

    def test_derived_blocks_and_links(self, memory, mock_completion):
        block = memory.create_user_block("sign the lease renewal")
        mock_completion.queue(_response(
            analysis="lease renewal pending",
            drafts=[{"content": "Send the signed lease to the landlord", "kind": "followup",
                     "confidence": 0.8}],
        ))
        memory.process_pending_state()

        links = memory.links.links_to("user_block", block.id, link_types=("derived_from",))
        assert len(links) == 1
        derived = memory.get_block("system", links[0].from_id)
        assert derived.content == "Send the signed lease to the landlord"
        assert derived.block_kind == "action_open"
        assert derived.confidence == pytest.approx(0.8)
        assert derived.source == "processor"
        assert derived.metadata["type"] == "block_processor"
        assert derived.metadata["source_user_block_id"] == block.id
        assert derived.metadata["analysis"] == "lease renewal pending"
        assert links[0].confidence == 1.0

    def test_rerun_does_not_duplicate_derived_blocks(self, memory, mock_completion):
        response = _response(drafts=[{"content": "Book the venue", "kind": "note"}])
        mock_completion.default = response
        block = memory.create_user_block("plan the offsite")
        memory.process_pending_state()
        memory.update_user_block(block.id, "plan the offsite in june", capture_reason="finalize")
        memory.process_pending_state()

        assert memory._block_store.count()["system"] == 1

    def test_references_limited_to_candidates(self, memory, mock_completion):
        a = memory.create_user_block("budget planning for march")
        b = memory.create_user_block("budget planning review")
        mock_completion.default = _response(related_block_ids=[a.id, b.id, "made-up-id"])
        memory.process_pending_state()

        refs_a = memory.links.links_from("user_block", a.id, "references")
        refs_b = memory.links.links_from("user_block", b.id, "references")
        assert [l.to_id for l in refs_a] == [b.id]
        assert [l.to_id for l in refs_b] == [a.id]
        assert refs_a[0].confidence == pytest.approx(0.58)

    def test_entity_names_create_mentions(self, memory, mock_completion):
        block = memory.create_user_block("lunch with maria next week")
        mock_completion.queue(_response(entity_names=["Maria Lopez"]))
        memory.process_pending_state()

        mentions = memory.links.links_from("user_block", block.id, "mentions")
        assert len(mentions) == 1
        assert mentions[0].confidence == pytest.approx(0.72)
        entity = memory.resolver.store.get(mentions[0].to_id)
        assert entity.canonical_name == "Maria Lopez"
        assert entity.verified is False
        assert entity.confidence == pytest.approx(0.65)

    def test_user_limit_clamped(self, memory):
        for i in range(3):
            memory.create_user_block(f"budget note {i}")
        result = memory.process_pending_state(user_limit=0)
        assert result.user_scanned == 1
        assert memory.process_pending_state(user_limit=500).user_scanned == 2

    def test_change_during_processing_requeues(self, memory, mock_completion):
        block = memory.create_user_block("draft agenda")
        original = mock_completion.complete_json

        def edit_while_running(*args, **kwargs):
            memory.update_user_block(block.id, "draft agenda with budget item")
            return original(*args, **kwargs)

        mock_completion.complete_json = edit_while_running
        result = memory.process_pending_state()
        assert result.user_processed == 1
        assert memory.processing.get("user_block", block.id).state == "pending"

        mock_completion.complete_json = original
        memory.process_pending_state()
        state = memory.processing.get("user_block", block.id)
        assert state.state == "processed"
        assert state.last_processed_hash == content_hash("draft agenda with budget item")

    def test_max_attempts(self, memory, mock_completion):
        memory._pipeline._max_attempts = 1
        block = memory.create_user_block("budget notes")
        mock_completion.queue(RuntimeError("service down"))
        memory.process_pending_state()
        assert memory.process_pending_state().user_scanned == 0
        assert memory.processing.get("user_block", block.id).state == "error"


class TestArtifactProcessing:
    """Tests for artifact enrichment."""

    def test_artifact_linked_with_description(self, memory, mock_completion):
        artifact = _add_artifact(memory)
        mock_completion.queue({
            "description": "Invoice for march rent",
            "drafts": [{"content": "Pay the march rent invoice", "kind": "action_open"}],
            "entity_names": ["Maria Lopez"],
        })
        result = memory.process_pending_state()
        assert result.artifacts_processed == 1

        stored = memory._artifact_store.get(artifact.id)
        assert stored.ingest_status == "linked"
        assert stored.metadata["file_description"] == "Invoice for march rent"
        assert "invoice" in stored.metadata["topics"]
        assert stored.metadata["local_path"] == "/tmp/invoice.txt"

        derived = [
            memory.get_block("system", l.from_id)
            for l in memory.links.links_to("artifact", artifact.id, link_types=("derived_from",))
        ]
        by_type = {b.metadata["type"]: b for b in derived}
        assert set(by_type) == {"artifact_description", "artifact_processor"}
        assert by_type["artifact_description"].confidence == pytest.approx(0.8)
        assert by_type["artifact_processor"].block_kind == "action_open"

        mentions = memory.links.links_from("artifact", artifact.id, "mentions")
        assert [l.confidence for l in mentions] == [pytest.approx(0.7)]
        assert mock_completion.calls[-1]["timeout"] == 180.0

    def test_artifact_failure_keeps_status(self, memory, mock_completion):
        artifact = _add_artifact(memory)
        mock_completion.queue(RuntimeError("timeout"))
        result = memory.process_pending_state()
        assert result.artifacts_errored == 1
        assert memory._artifact_store.get(artifact.id).ingest_status == "parsed"
        assert memory.processing.get("artifact", artifact.id).state == "error"
