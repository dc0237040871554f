"""
Logging configuration for blockmem.

Suppress verbose library output by default for better UX.
"""

import logging
import os
import sys
import warnings

# Library loggers that are chatty at INFO
_NOISY_LOGGERS = ("chromadb", "httpx", "openai", "anthropic", "pypdf", "urllib3")

if not os.environ.get("BLOCKMEM_VERBOSE"):
    os.environ["ANONYMIZED_TELEMETRY"] = "False"


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Silences HTTP client request logs, ChromaDB telemetry chatter and
    library warnings.

    Args:
        quiet: If True, suppress verbose output. If False, leave as is.
    """
    if not quiet:
        return
    os.environ["ANONYMIZED_TELEMETRY"] = "False"
    warnings.filterwarnings("ignore")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("blockmem",) + _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path):
    """Configure a persistent operations log for a store.

    Writes to {store_path}/blockmem-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    from logging.handlers import RotatingFileHandler
    from pathlib import Path

    log_path = Path(store_path) / "blockmem-ops.log"
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    pkg_logger = logging.getLogger("blockmem")
    pkg_logger.addHandler(handler)
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > logging.INFO:
        pkg_logger.setLevel(logging.INFO)

    return handler
