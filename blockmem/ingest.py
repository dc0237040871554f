"""
File intake: turns files in an intake directory into artifacts.

Each file is hashed; a checksum already stored for the same source type
is skipped. New files are uploaded to object storage, their text is
extracted, and the artifact is queued for enrichment.
"""

import hashlib
import logging
from pathlib import Path
from typing import Iterator, Optional

from .artifact_store import ArtifactStore
from .errors import BlockmemError
from .processing_state import ProcessingStateStore
from .providers.base import ObjectStore
from .providers.extraction import FileTextExtractor, mime_type_for
from .types import IngestResult, content_hash

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000

_HASH_CHUNK = 1024 * 1024


def file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def walk_files(root: Path) -> Iterator[Path]:
    """Regular files under root, depth first, skipping hidden entries."""
    for entry in sorted(root.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            yield from walk_files(entry)
        elif entry.is_file():
            yield entry


class ArtifactIngestor:
    """Scans an intake directory and stores what it finds."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        processing: ProcessingStateStore,
        object_store: ObjectStore,
        extractor: FileTextExtractor,
        *,
        intake_dir: Path,
        source_type: str = "file",
    ):
        self._artifacts = artifacts
        self._processing = processing
        self._object_store = object_store
        self._extractor = extractor
        self._intake_dir = intake_dir
        self._source_type = source_type

    def ingest_files(
        self,
        intake_dir: Optional[Path] = None,
        source_type: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest every file under the intake directory.

        A failing file is stored as an 'error' artifact and the scan
        continues.

        Returns:
            Counts of files scanned, ingested, skipped and errored
        """
        root = Path(intake_dir or self._intake_dir).expanduser()
        source_type = source_type or self._source_type
        root.mkdir(parents=True, exist_ok=True)

        result = IngestResult()
        for path in walk_files(root):
            result.scanned += 1
            try:
                outcome = self._ingest_one(path, source_type)
            except (BlockmemError, OSError) as e:
                message = f"{type(e).__name__}: {e}"
                logger.warning("Failed to ingest %s: %s", path, message)
                self._artifacts.insert_error(
                    source_type=source_type,
                    title=path.name,
                    mime_type=mime_type_for(path),
                    error=message[:MAX_ERROR_LENGTH],
                    metadata={"local_path": str(path)},
                )
                result.errored += 1
                continue
            if outcome:
                result.ingested += 1
            else:
                result.skipped += 1

        logger.info(
            "Ingested %s: scanned %d, ingested %d, skipped %d, errored %d",
            root, result.scanned, result.ingested, result.skipped, result.errored,
        )
        return result

    def _ingest_one(self, path: Path, source_type: str) -> bool:
        """Returns True for a new artifact, False for a skipped file."""
        size = path.stat().st_size
        if size == 0:
            logger.debug("Skipping empty file %s", path)
            return False

        checksum = file_sha256(path)
        existing = self._artifacts.get_by_checksum(source_type, checksum)
        if existing is not None:
            self._requeue_existing(existing)
            return False

        mime_type = mime_type_for(path)
        object_key = self._object_store.put(path, checksum)
        text = self._extractor.extract(path, mime_type)

        artifact, created = self._artifacts.insert(
            source_type=source_type,
            title=path.name,
            mime_type=mime_type,
            checksum=checksum,
            text_content=text,
            object_key=object_key,
            metadata={
                "local_path": str(path),
                "size_bytes": size,
                "extension": path.suffix.lower(),
            },
        )
        if not created:
            # Another runner stored the same file first
            return False
        self._processing.enqueue("artifact", artifact.id, content_hash(text or ""))
        logger.info("Ingested %s as artifact %s", path.name, artifact.id)
        return True

    def _requeue_existing(self, artifact) -> None:
        text_hash = content_hash(artifact.text_content or "")
        state = self._processing.get("artifact", artifact.id)
        if state is not None and state.state == "processed" and state.last_processed_hash == text_hash:
            return
        self._processing.enqueue("artifact", artifact.id, text_hash)
