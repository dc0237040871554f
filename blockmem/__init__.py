"""
blockmem - notes, files and people with hybrid retrieval.

Stores user and system blocks with versioning, ingests files as
artifacts, links both to people, and enriches them in batches through a
completion service.

Example:
    from blockmem import BlockMemory

    mem = BlockMemory()
    mem.create_user_block("email alex about the lease renewal")
    results = mem.search_related_blocks("lease")
"""

from .api import BlockMemory
from .errors import (
    AlreadyAnsweredError,
    BlockmemError,
    ConcurrencyConflictError,
    ExternalServiceError,
    NotFoundError,
    OptionOutOfRangeError,
    StructuredOutputParseError,
    ValidationError,
)
from .types import Block, BlockVersion, ClarificationItem, CrmPerson, SearchResult

__version__ = "0.1.0"

__all__ = [
    "BlockMemory",
    "Block",
    "BlockVersion",
    "ClarificationItem",
    "CrmPerson",
    "SearchResult",
    "BlockmemError",
    "ValidationError",
    "NotFoundError",
    "AlreadyAnsweredError",
    "OptionOutOfRangeError",
    "ExternalServiceError",
    "StructuredOutputParseError",
    "ConcurrencyConflictError",
]
