"""
Error types and error logging utilities.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class BlockmemError(Exception):
    """Base class for all block memory errors."""


class ValidationError(BlockmemError):
    """Input rejected before anything was written (empty content, bad enum)."""


class NotFoundError(BlockmemError):
    """Referenced block, entity, artifact or clarification does not exist."""


class AlreadyAnsweredError(ValidationError):
    """Clarification was answered before this call."""


class OptionOutOfRangeError(ValidationError):
    """Clarification option index outside 1..len(options)."""


class ExternalServiceError(BlockmemError):
    """Embedding, completion, storage or extraction call failed."""


class StructuredOutputParseError(ExternalServiceError):
    """Completion output could not be parsed into the expected schema."""


class ConcurrencyConflictError(BlockmemError):
    """Optimistic version check lost against a concurrent writer."""


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting --store and BLOCKMEM_STORE_PATH."""
    store = store_path or os.environ.get("BLOCKMEM_STORE_PATH")
    if store:
        return Path(store) / "blockmem-errors.log"
    return Path.home() / ".blockmem" / "blockmem-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory, when known

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}] {type(exc).__name__}")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write(traceback.format_exc())
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
