"""Tests for hybrid lexical + vector retrieval."""

import re

import pytest

from blockmem.errors import ValidationError
from blockmem.retrieval import fuse_scores, lexical_score, tokenize_query
from blockmem.types import parse_utc_timestamp, utc_now


def _set_created_at(memory, block_id: str, created_at: str) -> None:
    memory._db.execute(
        "UPDATE user_blocks SET created_at = ? WHERE id = ?", (created_at, block_id),
    )


class TestScoring:
    """Tests for the pure scoring helpers."""

    def test_tokenize(self):
        assert tokenize_query("The LEASE a b renewal") == ["the", "lease", "renewal"]

    def test_tokenize_caps_at_six(self):
        assert len(tokenize_query("aa bb cc dd ee ff gg hh")) == 6

    def test_lexical_score(self):
        tokens = ["lease", "renewal", "march"]
        assert lexical_score("Lease renewal notes", tokens) == pytest.approx(0.5)
        assert lexical_score("unrelated", tokens) == 0.0

    def test_lexical_score_capped(self):
        tokens = ["aa", "bb", "cc", "dd", "ee"]
        assert lexical_score("aa bb cc dd ee", tokens) == 1.0

    def test_fuse(self):
        assert fuse_scores(0.5, 0.8) == pytest.approx(0.665)
        assert fuse_scores(0.5, None) == 0.5
        assert fuse_scores(None, 0.9) == 0.9


class TestSearchRelatedBlocks:
    """Tests for BlockMemory.search_related_blocks."""

    def test_lexical_only_hit(self, memory):
        block = memory.create_user_block("lease renewal notes")
        memory.create_user_block("grocery list")
        results = memory.search_related_blocks("lease renewal")
        assert [r.block.id for r in results] == [block.id]
        assert results[0].lexical_score == pytest.approx(0.5)
        assert results[0].vector_score is None
        assert results[0].score == pytest.approx(0.5)

    def test_fused_score(self, memory, vector_store):
        block = memory.create_user_block("lease renewal notes")
        vector_store.overrides[f"user:{block.id}"] = 0.8
        results = memory.search_related_blocks("lease renewal")
        assert len(results) == 1
        assert results[0].score == pytest.approx(0.665)
        assert results[0].vector_score == pytest.approx(0.8)

    def test_vector_only_hit(self, memory, vector_store):
        block = memory.create_user_block("quarterly planning")
        vector_store.overrides[f"user:{block.id}"] = 0.9
        results = memory.search_related_blocks("roadmap")
        assert [r.block.id for r in results] == [block.id]
        assert results[0].lexical_score is None
        assert results[0].score == pytest.approx(0.9)

    def test_vector_below_threshold_dropped(self, memory, vector_store):
        block = memory.create_user_block("quarterly planning")
        vector_store.overrides[f"user:{block.id}"] = 0.6
        assert memory.search_related_blocks("roadmap") == []

    def test_vector_failure_degrades_to_lexical(self, memory, vector_store):
        block = memory.create_user_block("lease renewal notes")
        vector_store.overrides[f"user:{block.id}"] = 0.8
        vector_store.fail_search = True
        results = memory.search_related_blocks("lease renewal")
        assert [r.block.id for r in results] == [block.id]
        assert results[0].score == pytest.approx(0.5)

    def test_scope_user_excludes_system(self, memory):
        user = memory.create_user_block("budget draft")
        memory.create_system_block("budget insight")
        assert len(memory.search_related_blocks("budget", scope="all")) == 2
        results = memory.search_related_blocks("budget", scope="user")
        assert [r.block.id for r in results] == [user.id]

    def test_invalid_scope(self, memory):
        with pytest.raises(ValidationError):
            memory.search_related_blocks("budget", scope="system")

    def test_higher_score_first(self, memory):
        weak = memory.create_user_block("budget")
        strong = memory.create_user_block("budget review meeting")
        _set_created_at(memory, strong.id, "2020-01-01T00:00:00")
        results = memory.search_related_blocks("budget review")
        assert [r.block.id for r in results] == [strong.id, weak.id]

    def test_ties_newest_first_with_offset(self, memory):
        ids = []
        for day in (1, 2, 3):
            block = memory.create_user_block(f"budget item {day}")
            _set_created_at(memory, block.id, f"2024-01-0{day}T00:00:00")
            ids.append(block.id)

        first = memory.search_related_blocks("budget", limit=2)
        second = memory.search_related_blocks("budget", limit=2, offset=2)
        assert [r.block.id for r in first] == [ids[2], ids[1]]
        assert [r.block.id for r in second] == [ids[0]]

    def test_same_second_writes_newest_first(self, memory):
        ids = [memory.create_user_block(f"budget item {i}").id for i in range(3)]
        results = memory.search_related_blocks("budget")
        assert [r.block.id for r in results] == list(reversed(ids))

    def test_timestamps_keep_microseconds(self):
        stamp = utc_now()
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{6}", stamp)
        assert parse_utc_timestamp(stamp).tzinfo is not None

    def test_empty_query(self, memory):
        memory.create_user_block("budget")
        assert memory.search_related_blocks("  ") == []
