"""
Per-person relationship summaries built from entity links.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .block_store import BlockStore
from .entity_store import EntityStore, LinkStore
from .errors import ValidationError
from .processors import to_topic_tokens
from .types import CrmPerson, CrmTimelineItem, Entity, parse_utc_timestamp

logger = logging.getLogger(__name__)

PERSON_SCAN_LIMIT = 200
LINKS_PER_PERSON = 300
TIMELINE_LIMIT = 12
TOPIC_WINDOW = 15

CONTACT_LINK_TYPES = ("about", "mentions", "candidate_match")
_AUTHOR_BY_NODE = {"user_block": "user", "system_block": "system"}


def compute_roi(open_loops: int, days_since_contact: Optional[int], has_timeline: bool) -> float:
    """
    Follow-up priority score.

    open_loops x 2, plus min(days/7, 5) (1.5 when never contacted),
    plus 0.6 for any recorded contact. Rounded to two decimals.
    """
    score = open_loops * 2
    score += 1.5 if days_since_contact is None else min(days_since_contact / 7, 5)
    if has_timeline:
        score += 0.6
    return round(score, 2)


def _matches_person(entity: Entity, token: str) -> bool:
    if token in entity.canonical_name.lower():
        return True
    return any(token in a.lower() for a in entity.aliases)


class CrmAggregator:
    """Builds CrmPerson summaries ranked by ROI."""

    def __init__(self, entities: EntityStore, links: LinkStore, blocks: BlockStore):
        self._entities = entities
        self._links = links
        self._blocks = blocks

    def get_crm_summary(
        self,
        *,
        topic_filter: Optional[str] = None,
        people_filter: Optional[str] = None,
        limit: int = 25,
        now: Optional[datetime] = None,
    ) -> list[CrmPerson]:
        """
        Summaries for person entities, highest ROI first.

        Args:
            topic_filter: Keep people whose timeline text or topics contain this
            people_filter: Keep people whose name or an alias contains this
            limit: Maximum people returned
            now: Reference time for days_since_contact

        Raises:
            ValidationError: If limit is less than 1
        """
        if limit < 1:
            raise ValidationError(f"limit must be at least 1, got {limit}")
        now = now or datetime.now(timezone.utc)
        people = self._entities.list_persons(limit=PERSON_SCAN_LIMIT)
        if people_filter and people_filter.strip():
            token = people_filter.strip().lower()
            people = [p for p in people if _matches_person(p, token)]
        topic = topic_filter.strip().lower() if topic_filter and topic_filter.strip() else None

        summaries = []
        for entity in people:
            summary = self._summarize(entity, now)
            if topic is not None:
                in_timeline = any(topic in t.content.lower() for t in summary.timeline)
                if not in_timeline and topic not in summary.recent_topics:
                    continue
            summary.timeline = summary.timeline[:TIMELINE_LIMIT]
            summaries.append(summary)

        summaries.sort(key=lambda s: s.roi, reverse=True)
        return summaries[:limit]

    def _summarize(self, entity: Entity, now: datetime) -> CrmPerson:
        links = self._links.links_to(
            "entity", entity.id,
            link_types=CONTACT_LINK_TYPES,
            from_types=tuple(_AUTHOR_BY_NODE),
            limit=LINKS_PER_PERSON,
        )

        timeline: list[CrmTimelineItem] = []
        seen: set[str] = set()
        for link in links:
            author_type = _AUTHOR_BY_NODE[link.from_type]
            key = f"{author_type}:{link.from_id}"
            if key in seen:
                continue
            block = self._blocks.get_block(author_type, link.from_id)
            if block is None:
                continue
            seen.add(key)
            timeline.append(CrmTimelineItem(
                block_id=block.id,
                author_type=author_type,
                link_type=link.link_type,
                content=block.content,
                created_at=block.created_at,
                block_kind=block.block_kind,
            ))
        timeline.sort(key=lambda t: parse_utc_timestamp(t.created_at), reverse=True)

        open_loops = sum(
            1 for t in timeline
            if t.author_type == "system" and t.block_kind == "action_open"
        )

        last_contact_at = timeline[0].created_at if timeline else None
        days_since = None
        if last_contact_at is not None:
            delta = now - parse_utc_timestamp(last_contact_at)
            days_since = max(0, int(delta.total_seconds() // 86400))

        recent_topics = to_topic_tokens(" ".join(t.content for t in timeline[:TOPIC_WINDOW]))

        return CrmPerson(
            entity_id=entity.id,
            name=entity.canonical_name,
            verified=entity.verified,
            days_since_contact=days_since,
            open_loops=open_loops,
            recent_topics=recent_topics,
            roi=compute_roi(open_loops, days_since, bool(timeline)),
            timeline=timeline,
            last_contact_at=last_contact_at,
        )
