"""
Object storage for original file bytes.

Keys look like YYYY-MM-DD/<epoch-ms>-<file_name> with whitespace in the
name replaced by underscores.
"""

import logging
import os
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path

import requests

from ..errors import ExternalServiceError
from .base import get_registry

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")


def object_key_for(path: Path) -> str:
    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    millis = int(time.time() * 1000)
    name = _WHITESPACE_RE.sub("_", path.name)
    return f"{day}/{millis}-{name}"


class FileObjectStore:
    """Copies files into a local directory tree."""

    def __init__(self, root: str | os.PathLike):
        self.root = Path(root).expanduser()

    def put(self, path: Path, checksum: str) -> str:
        key = object_key_for(path)
        dest = self.root / key
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, dest)
        except OSError as e:
            raise ExternalServiceError(f"Failed to store {path.name}: {e}") from e
        logger.debug("Stored %s as %s (sha256 %s)", path.name, key, checksum[:12])
        return key


class HttpObjectStore:
    """
    Uploads files with HTTP PUT to {base_url}/{key}.

    Works with presigned-style gateways and simple blob servers. An
    optional bearer token is sent as Authorization.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token or os.environ.get("BLOCKMEM_OBJECT_STORE_TOKEN")
        self.timeout = timeout

    def put(self, path: Path, checksum: str) -> str:
        key = object_key_for(path)
        headers = {
            "Content-Type": "application/octet-stream",
            "x-checksum-sha256": checksum,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            with open(path, "rb") as f:
                response = requests.put(
                    f"{self.base_url}/{key}",
                    data=f,
                    headers=headers,
                    timeout=(10, self.timeout),  # (connect, read)
                )
        except (requests.RequestException, OSError) as e:
            raise ExternalServiceError(f"Upload of {path.name} failed: {e}") from e
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise ExternalServiceError(
                f"Upload of {path.name} failed: HTTP {response.status_code}. {detail}"
            )
        return key


# Register providers
_registry = get_registry()
_registry.register_object_store("file", FileObjectStore)
_registry.register_object_store("http", HttpObjectStore)
