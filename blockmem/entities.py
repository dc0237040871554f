"""
Entity resolution: name normalization, loose matching, candidate creation,
and the write-path scan that links contact phrases to people.
"""

import logging
import re
from typing import TYPE_CHECKING, Optional

from .entity_store import MAX_ALIASES, EntityStore, LinkStore
from .errors import ValidationError
from .types import (
    Block,
    ClarificationOption,
    Entity,
    PersonDisambiguationContext,
    PersonNewConfirmContext,
)

if TYPE_CHECKING:
    from .blocks import BlockService
    from .clarification_queue import ClarificationQueue

logger = logging.getLogger(__name__)

# How many person rows a loose match scans
MATCH_SCAN_LIMIT = 200

CANDIDATE_CONFIDENCE = 0.55

# Contact verbs that name a person right after them
CONTACT_VERBS = ("email", "call")

# Words that follow a contact verb but are not names
_NOT_NAMES = frozenset({
    "a", "an", "the", "me", "him", "her", "them", "us", "you", "it",
    "my", "your", "our", "their", "his", "back", "about", "again",
    "later", "today", "tomorrow", "tonight", "re", "to", "and", "or",
})


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_entity_name(name: str) -> str:
    """Collapse whitespace and title-case each word ("alex  CHEN" -> "Alex Chen")."""
    words = normalize_whitespace(name).split(" ")
    out = []
    for w in words:
        if not w:
            continue
        out.append(w.upper() if len(w) == 1 else w[0].upper() + w[1:].lower())
    return " ".join(out)


def _contact_pattern(verbs: tuple[str, ...]) -> re.Pattern:
    alternatives = "|".join(re.escape(v) for v in verbs)
    return re.compile(
        rf"\b({alternatives})\s+([a-z][a-z]+(?:\s+[a-z][a-z]+)?)",
        re.IGNORECASE,
    )


def extract_contact_mentions(
    content: str, verbs: tuple[str, ...] = CONTACT_VERBS,
) -> list[tuple[str, str]]:
    """
    Find "<verb> <name>" phrases.

    Returns:
        Distinct (verb, mention) pairs in order of appearance, with the
        mention whitespace-normalized and trailing non-name words dropped
    """
    found: list[tuple[str, str]] = []
    seen: set[str] = set()
    for match in _contact_pattern(verbs).finditer(content):
        words = normalize_whitespace(match.group(2)).split(" ")
        if words[0].lower() in _NOT_NAMES:
            continue
        if len(words) > 1 and words[1].lower() in _NOT_NAMES:
            words = words[:1]
        mention = " ".join(words)
        if mention.lower() in seen:
            continue
        seen.add(mention.lower())
        found.append((match.group(1).lower(), mention))
    return found


class EntityResolver:
    """Finds, creates and confirms person entities."""

    def __init__(self, entities: EntityStore):
        self._entities = entities

    @property
    def store(self) -> EntityStore:
        return self._entities

    def find_person_entities(self, name: str, limit: int = MATCH_SCAN_LIMIT) -> list[Entity]:
        """
        Persons whose canonical name or any alias contains name,
        case-insensitively. Scans the most recently updated rows.
        """
        needle = normalize_whitespace(name).lower()
        if not needle:
            return []
        matches = []
        for entity in self._entities.list_persons(limit=limit):
            haystacks = [entity.canonical_name] + list(entity.aliases)
            if any(needle in h.lower() for h in haystacks if h):
                matches.append(entity)
        return matches

    def ensure_person_entity(self, name: str, confidence: float = 0.65) -> Entity:
        """
        Resolve name to a person, creating an unverified candidate if needed.

        An exact (case-insensitive) name or alias match wins over the first
        substring match. On a match the normalized name is added as an alias.

        Raises:
            ValidationError: If name is blank
        """
        cleaned = normalize_whitespace(name)
        if not cleaned:
            raise ValidationError("Entity name is empty")
        normalized = normalize_entity_name(cleaned)

        matches = self.find_person_entities(cleaned)
        if matches:
            lowered = cleaned.lower()
            exact = [
                m for m in matches
                if m.canonical_name.lower() == lowered
                or any(a.lower() == lowered for a in m.aliases)
            ]
            entity = exact[0] if exact else matches[0]
            if not any(a.lower() == normalized.lower() for a in entity.aliases):
                aliases = (list(entity.aliases) + [normalized])[:MAX_ALIASES]
                self._entities.set_aliases(entity.id, aliases)
                entity.aliases = aliases
            return entity

        return self.create_candidate(cleaned, confidence)

    def create_candidate(self, name: str, confidence: float = CANDIDATE_CONFIDENCE) -> Entity:
        """Create an unverified person from an observed mention."""
        cleaned = normalize_whitespace(name)
        entity = self._entities.create(
            normalize_entity_name(cleaned),
            aliases=[cleaned],
            verified=False,
            confidence=confidence,
            metadata={"origin": "auto_candidate"},
        )
        logger.info("Created candidate person %s (%s)", entity.canonical_name, entity.id)
        return entity

    def create_verified(self, name: str, confidence: float = 0.9) -> Entity:
        cleaned = normalize_whitespace(name)
        if not cleaned:
            raise ValidationError("Entity name is empty")
        return self._entities.create(
            normalize_entity_name(cleaned),
            aliases=[cleaned],
            verified=True,
            confidence=confidence,
            metadata={"origin": "clarification"},
        )

    def confirm_entity(self, entity_id: str, confidence: Optional[float] = None) -> Entity:
        """Mark an entity verified, optionally setting its confidence."""
        self._entities.require(entity_id)
        self._entities.set_verified(entity_id, True, confidence)
        return self._entities.get(entity_id)


class DisambiguationScanner:
    """
    Links contact phrases in user blocks to people.

    For each "<verb> <name>" phrase: one matching person gets an 'about'
    link; several matches queue a person_disambiguation question; no
    match creates a candidate person with a 'candidate_match' link and
    queues a person_new_confirm question. Each question is mirrored as a
    system block so it shows up in retrieval.
    """

    def __init__(
        self,
        resolver: EntityResolver,
        links: LinkStore,
        clarifications: "ClarificationQueue",
        blocks: "BlockService",
        *,
        verbs: tuple[str, ...] = CONTACT_VERBS,
    ):
        self._resolver = resolver
        self._links = links
        self._clarifications = clarifications
        self._blocks = blocks
        self._verbs = verbs

    def __call__(self, block: Block) -> None:
        self.scan(block)

    def scan(self, block: Block) -> int:
        """
        Scan one user block.

        Mentions already asked about for this block are skipped, so
        re-saving a block does not repeat questions.

        Returns:
            Number of mentions acted on
        """
        if block.author_type != "user":
            return 0
        handled = 0
        for verb, mention in extract_contact_mentions(block.content, self._verbs):
            if self._clarifications.exists_for_mention(block.id, mention):
                continue
            self._resolve_mention(block, verb, mention)
            handled += 1
        return handled

    def _resolve_mention(self, block: Block, verb: str, mention: str) -> None:
        trigger = f"{verb}_target"
        matches = self._resolver.find_person_entities(mention)

        if len(matches) == 1:
            self._links.insert(
                "user_block", block.id, "entity", matches[0].id, "about",
                confidence=0.9, metadata={"trigger": trigger},
            )
            return

        if len(matches) > 1:
            options = [
                ClarificationOption(
                    label=f"{m.canonical_name}{' (verified)' if m.verified else ''}",
                    value=f"entity:{m.id}",
                )
                for m in matches
            ]
            options.append(ClarificationOption(label=f"new person: {mention}", value=f"new:{mention}"))
            options.append(ClarificationOption(label="none of these", value="dismiss"))
            question = f'for "{verb} {mention}", which person did you mean?'
            item = self._clarifications.enqueue(
                question,
                options,
                PersonDisambiguationContext(
                    mention=mention,
                    block_id=block.id,
                    candidate_entity_ids=[m.id for m in matches],
                ),
                priority="high",
            )
            self._question_block(question, item.id, block.id, mention)
            return

        candidate = self._resolver.create_candidate(mention, CANDIDATE_CONFIDENCE)
        self._links.insert(
            "user_block", block.id, "entity", candidate.id, "candidate_match",
            confidence=CANDIDATE_CONFIDENCE, metadata={"trigger": trigger, "mention": mention},
        )
        question = f'you wrote "{verb} {mention}". should i treat {mention} as a new person?'
        item = self._clarifications.enqueue(
            question,
            [
                ClarificationOption(label=f"yes, create {mention}", value=f"confirm_new:{candidate.id}"),
                ClarificationOption(label="no, ignore this", value="dismiss"),
            ],
            PersonNewConfirmContext(
                mention=mention,
                block_id=block.id,
                candidate_entity_id=candidate.id,
            ),
            priority="normal",
        )
        self._question_block(question, item.id, block.id, mention, candidate_entity_id=candidate.id)

    def _question_block(self, question: str, clarification_id: str, block_id: str,
                        mention: str, **extra) -> None:
        metadata = {
            "kind": "clarification",
            "clarification_id": clarification_id,
            "block_id": block_id,
            "mention": mention,
        }
        metadata.update(extra)
        self._blocks.create_system_block(
            question,
            block_kind="note",
            confidence=0.5,
            source="clarification",
            metadata=metadata,
            dedupe_key=f"clarification:{clarification_id}",
        )
