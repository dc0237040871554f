"""
Clarification workflow: the digest shown to the user and answer handling.
"""

import logging
from typing import Optional

from .clarification_queue import ClarificationQueue
from .entities import EntityResolver
from .entity_store import LinkStore
from .errors import AlreadyAnsweredError, NotFoundError, OptionOutOfRangeError
from .types import (
    ClarificationItem,
    ClarificationOption,
    PersonDisambiguationContext,
    PersonNewConfirmContext,
)

logger = logging.getLogger(__name__)

DISMISSED_CANDIDATE_CONFIDENCE = 0.1


def format_digest(items: list[ClarificationItem]) -> str:
    lines = [
        "overnight clarification digest",
        "reply with /clarify <id> <option-number>",
        "",
    ]
    for item in items:
        lines.append(f"[{item.id}] {item.question}")
        for i, option in enumerate(item.options, start=1):
            lines.append(f"  {i}. {option.label}")
        lines.append("")
    return "\n".join(lines).rstrip()


class ClarificationWorkflow:
    """Lists open questions and applies the chosen answers."""

    def __init__(
        self,
        queue: ClarificationQueue,
        resolver: EntityResolver,
        links: LinkStore,
    ):
        self._queue = queue
        self._resolver = resolver
        self._links = links

    def build_clarification_digest(self, limit: int = 10) -> Optional[str]:
        """
        Render open items (oldest first) and mark them asked.

        Returns:
            The digest text, or None when nothing is open
        """
        items = self._queue.list_open(limit=max(1, limit))
        if not items:
            return None
        self._queue.mark_asked([item.id for item in items])
        return format_digest(items)

    def list_pending_clarifications(self, limit: int = 20) -> list[ClarificationItem]:
        return self._queue.list_open(limit=max(1, limit))

    def resolve_clarification(self, item_id: str, option_index: int) -> str:
        """
        Answer a clarification with a 1-based option number.

        The claim and its side effects share one transaction; if a side
        effect fails everything rolls back and the item stays open.

        Raises:
            NotFoundError: Unknown item
            AlreadyAnsweredError: The item was answered already
            OptionOutOfRangeError: option_index outside 1..len(options)
        """
        item = self._queue.get(item_id)
        if item is None:
            raise NotFoundError(f"Clarification not found: {item_id}")
        if item.status == "answered":
            raise AlreadyAnsweredError(f"Clarification already answered: {item_id}")
        if option_index < 1 or option_index > len(item.options):
            raise OptionOutOfRangeError(
                f"option index must be between 1 and {len(item.options)}"
            )

        option = item.options[option_index - 1]
        answer = {"option_index": option_index, "value": option.value, "label": option.label}
        with self._queue.transaction():
            if not self._queue.claim_answer(item.id, answer):
                raise AlreadyAnsweredError(f"Clarification already answered: {item_id}")
            self._apply(item, option)

        logger.info("Answered clarification %s: %s", item.id, option.value)
        return f"saved answer for {item.id}: {option.label}"

    def _apply(self, item: ClarificationItem, option: ClarificationOption) -> None:
        context = item.context
        if isinstance(context, PersonDisambiguationContext):
            self._apply_disambiguation(context, option.value)
        elif isinstance(context, PersonNewConfirmContext):
            self._apply_new_confirm(context, option.value)
        else:
            raise TypeError(f"Unhandled clarification context: {type(context).__name__}")

    def _apply_disambiguation(self, context: PersonDisambiguationContext, value: str) -> None:
        if value.startswith("entity:"):
            entity_id = value[len("entity:"):]
            self._resolver.store.require(entity_id)
            self._links.delete("user_block", context.block_id, "candidate_match")
            self._links.insert(
                "user_block", context.block_id, "entity", entity_id, "about",
                confidence=0.95, metadata={"trigger": "clarification"},
            )
            self._resolver.confirm_entity(entity_id)
        elif value.startswith("new:"):
            entity = self._resolver.create_verified(value[len("new:"):] or context.mention)
            self._links.insert(
                "user_block", context.block_id, "entity", entity.id, "about",
                confidence=0.9, metadata={"trigger": "clarification"},
            )
        elif value != "dismiss":
            raise ValueError(f"Unknown option value: {value!r}")

    def _apply_new_confirm(self, context: PersonNewConfirmContext, value: str) -> None:
        if value.startswith("confirm_new:"):
            entity_id = value[len("confirm_new:"):]
            self._resolver.confirm_entity(entity_id, confidence=0.9)
            self._links.delete(
                "user_block", context.block_id, "candidate_match",
                to_type="entity", to_id=entity_id,
            )
            self._links.insert(
                "user_block", context.block_id, "entity", entity_id, "about",
                confidence=0.9, metadata={"trigger": "clarification"},
            )
        elif value == "dismiss":
            if self._resolver.store.get(context.candidate_entity_id) is not None:
                self._resolver.store.set_confidence(
                    context.candidate_entity_id, DISMISSED_CANDIDATE_CONFIDENCE,
                )
        else:
            raise ValueError(f"Unknown option value: {value!r}")
