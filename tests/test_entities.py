"""Tests for entity resolution, links and the contact-phrase scan."""

import pytest

from blockmem.entities import (
    EntityResolver,
    extract_contact_mentions,
    normalize_entity_name,
)
from blockmem.entity_store import EntityStore, LinkStore
from blockmem.errors import ValidationError


class TestNormalization:
    """Tests for name and mention helpers."""

    def test_normalize_entity_name(self):
        assert normalize_entity_name("  alex   CHEN ") == "Alex Chen"
        assert normalize_entity_name("j smith") == "J Smith"

    def test_contact_mentions(self):
        found = extract_contact_mentions("Email alex about the lease, then call Jordan Lee.")
        assert found == [("email", "alex"), ("call", "Jordan Lee")]

    def test_pronouns_are_not_names(self):
        assert extract_contact_mentions("call me later, email them the notes") == []

    def test_repeated_mentions_are_distinct(self):
        found = extract_contact_mentions("email alex. call Alex again")
        assert found == [("email", "alex")]

    def test_no_contact_verbs(self):
        assert extract_contact_mentions("renew the lease before march") == []


class TestEntityResolver:
    """Tests for EntityResolver against a real database."""

    @pytest.fixture
    def resolver(self, db):
        return EntityResolver(EntityStore(db))

    def test_blank_name_rejected(self, resolver):
        with pytest.raises(ValidationError):
            resolver.ensure_person_entity("   ")

    def test_creates_candidate(self, resolver):
        entity = resolver.ensure_person_entity("maria  lopez")
        assert entity.canonical_name == "Maria Lopez"
        assert entity.aliases == ["maria lopez"]
        assert entity.verified is False
        assert entity.confidence == pytest.approx(0.65)
        assert entity.metadata == {"origin": "auto_candidate"}

    def test_substring_match_adds_alias(self, resolver):
        existing = resolver.store.create("Maria Lopez", aliases=[], verified=True)
        entity = resolver.ensure_person_entity("maria")
        assert entity.id == existing.id
        assert resolver.store.get(existing.id).aliases == ["Maria"]

    def test_exact_match_preferred(self, resolver):
        resolver.store.create("Sam Taylor", aliases=["sam t"])
        exact = resolver.store.create("Sam", aliases=[])
        assert resolver.ensure_person_entity("sam").id == exact.id

    def test_alias_not_duplicated(self, resolver):
        existing = resolver.store.create("Maria Lopez", aliases=["Maria"])
        resolver.ensure_person_entity("MARIA")
        assert resolver.store.get(existing.id).aliases == ["Maria"]

    def test_find_matches_aliases(self, resolver):
        entity = resolver.store.create("Robert Brown", aliases=["bobby"])
        assert [e.id for e in resolver.find_person_entities("BOB")] == [entity.id]
        assert resolver.find_person_entities("  ") == []

    def test_confirm_entity(self, resolver):
        entity = resolver.create_candidate("dana")
        confirmed = resolver.confirm_entity(entity.id, confidence=0.9)
        assert confirmed.verified is True
        assert confirmed.confidence == pytest.approx(0.9)


class TestLinkStore:
    """Tests for typed links."""

    def test_insert_is_idempotent(self, db):
        links = LinkStore(db)
        assert links.insert("user_block", "b1", "entity", "e1", "about", confidence=0.9)
        assert not links.insert("user_block", "b1", "entity", "e1", "about", confidence=0.2)
        stored = links.links_from("user_block", "b1")
        assert len(stored) == 1
        assert stored[0].confidence == pytest.approx(0.9)

    def test_same_pair_different_type(self, db):
        links = LinkStore(db)
        links.insert("user_block", "b1", "entity", "e1", "about")
        links.insert("user_block", "b1", "entity", "e1", "mentions")
        assert links.count() == 2

    def test_invalid_link_type(self, db):
        with pytest.raises(ValidationError):
            LinkStore(db).insert("user_block", "b1", "entity", "e1", "knows")

    def test_delete_by_target(self, db):
        links = LinkStore(db)
        links.insert("user_block", "b1", "entity", "e1", "candidate_match")
        links.insert("user_block", "b1", "entity", "e2", "candidate_match")
        removed = links.delete("user_block", "b1", "candidate_match", to_type="entity", to_id="e1")
        assert removed == 1
        assert [l.to_id for l in links.links_from("user_block", "b1")] == ["e2"]


class TestDisambiguationScan:
    """Tests for the write-path scan of contact phrases."""

    def test_single_match_links_about(self, memory):
        person = memory.resolver.store.create("Jordan Lee", verified=True, confidence=0.9)
        block = memory.create_user_block("call jordan tomorrow about the budget")

        about = memory.links.links_from("user_block", block.id, "about")
        assert [(l.to_id, l.confidence) for l in about] == [(person.id, 0.9)]
        assert about[0].metadata == {"trigger": "call_target"}
        assert memory.list_pending_clarifications() == []

    def test_several_matches_ask_which(self, memory):
        a = memory.resolver.store.create("Alex Chen", verified=True)
        b = memory.resolver.store.create("Alex Kim")
        block = memory.create_user_block("email alex about the lease")

        items = memory.list_pending_clarifications()
        assert len(items) == 1
        item = items[0]
        assert item.kind == "person_disambiguation"
        assert item.priority == "high"
        assert item.question == 'for "email alex", which person did you mean?'
        assert item.context.block_id == block.id
        assert set(item.context.candidate_entity_ids) == {a.id, b.id}
        values = [o.value for o in item.options]
        assert set(values[:2]) == {f"entity:{a.id}", f"entity:{b.id}"}
        assert values[2:] == ["new:alex", "dismiss"]
        assert "Alex Chen (verified)" in [o.label for o in item.options]
        assert memory.links.links_from("user_block", block.id) == []

    def test_no_match_creates_candidate(self, memory):
        block = memory.create_user_block("email priya about the invoice")

        candidates = memory.resolver.find_person_entities("priya")
        assert len(candidates) == 1
        candidate = candidates[0]
        assert candidate.verified is False
        assert candidate.confidence == pytest.approx(0.55)

        links = memory.links.links_from("user_block", block.id, "candidate_match")
        assert [l.to_id for l in links] == [candidate.id]
        assert links[0].metadata == {"trigger": "email_target", "mention": "priya"}

        items = memory.list_pending_clarifications()
        assert len(items) == 1
        assert items[0].kind == "person_new_confirm"
        assert items[0].context.candidate_entity_id == candidate.id
        assert [o.value for o in items[0].options] == [f"confirm_new:{candidate.id}", "dismiss"]

    def test_question_mirrored_as_system_block(self, memory):
        memory.create_user_block("email priya about the invoice")
        item = memory.list_pending_clarifications()[0]
        system = memory._block_store.get_system_block_by_dedupe_key(f"clarification:{item.id}")
        assert system is not None
        assert system.content == item.question
        assert system.metadata["kind"] == "clarification"
        assert system.metadata["mention"] == "priya"

    def test_resave_does_not_repeat_questions(self, memory):
        block = memory.create_user_block("email priya about the invoice")
        memory.update_user_block(block.id, "email priya about the invoice today")
        memory.update_user_block(block.id, "email Priya about the invoice", capture_reason="finalize")

        assert len(memory.list_pending_clarifications()) == 1
        assert len(memory.resolver.find_person_entities("priya")) == 1

    def test_plain_notes_are_ignored(self, memory):
        memory.create_user_block("renew the lease before march")
        assert memory.list_pending_clarifications() == []
        assert memory.resolver.store.list_persons() == []
