"""
Text extraction for ingested files.

Plain text is read directly, PDFs go through pypdf, audio through a
transcription provider, video is demuxed to 16 kHz mono WAV with ffmpeg
and then transcribed, and images go through a vision provider.
"""

import base64
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from ..errors import ExternalServiceError
from .base import ImageTextExtractor, Transcriber, get_registry

logger = logging.getLogger(__name__)

MAX_EXTRACTED_TEXT = 200_000

TEXT_EXTENSIONS = {
    ".md": "text/markdown",
    ".txt": "text/plain",
    ".rtf": "text/rtf",
    ".json": "application/json",
    ".csv": "text/csv",
    ".yaml": "application/yaml",
    ".yml": "application/yaml",
    ".xml": "application/xml",
    ".html": "text/html",
    ".js": "text/javascript",
    ".ts": "text/typescript",
    ".py": "text/x-python",
}
IMAGE_EXTENSIONS = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".heic": "image/heic",
    ".webp": "image/webp",
}
AUDIO_EXTENSIONS = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
}
VIDEO_EXTENSIONS = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".m4v": "video/x-m4v",
}
_TEXT_MIME_TYPES = frozenset(TEXT_EXTENSIONS.values())


def mime_type_for(path: Path) -> str:
    """MIME type by file extension; application/octet-stream when unknown."""
    ext = path.suffix.lower()
    if ext == ".pdf":
        return "application/pdf"
    for table in (TEXT_EXTENSIONS, IMAGE_EXTENSIONS, AUDIO_EXTENSIONS, VIDEO_EXTENSIONS):
        if ext in table:
            return table[ext]
    return "application/octet-stream"


def media_family(mime_type: str) -> str:
    """One of: text, pdf, image, audio, video, binary."""
    if mime_type == "application/pdf":
        return "pdf"
    if mime_type in _TEXT_MIME_TYPES or mime_type.startswith("text/"):
        return "text"
    for family in ("image", "audio", "video"):
        if mime_type.startswith(family + "/"):
            return family
    return "binary"


def _clip(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text[:MAX_EXTRACTED_TEXT] if text else None


def extract_pdf_text(path: Path) -> Optional[str]:
    """Text of all pages with a text layer, joined by blank lines."""
    from pypdf import PdfReader

    try:
        reader = PdfReader(path)
        parts = []
        for page in reader.pages:
            text = page.extract_text()
            if text and text.strip():
                parts.append(text)
    except Exception as e:
        raise ExternalServiceError(f"Failed to extract text from PDF {path}: {e}") from e
    return _clip("\n\n".join(parts))


def demux_audio(video_path: Path, wav_path: Path, *, timeout: float = 180.0) -> None:
    """Write the audio track of a video as 16 kHz mono PCM WAV."""
    ffmpeg = shutil.which("ffmpeg")
    if ffmpeg is None:
        raise ExternalServiceError("ffmpeg is required to extract audio from video")
    cmd = [
        ffmpeg, "-y", "-i", str(video_path),
        "-vn", "-acodec", "pcm_s16le", "-ar", "16000", "-ac", "1",
        str(wav_path),
    ]
    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ExternalServiceError(f"ffmpeg timed out after {timeout}s on {video_path}") from e
    if proc.returncode != 0:
        detail = (proc.stderr or "").strip()[-500:]
        raise ExternalServiceError(f"ffmpeg failed ({proc.returncode}): {detail}")


class OpenAITranscriber:
    """
    Audio transcription using OpenAI's transcription API.

    Requires: BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(self, model: str = "gpt-4o-mini-transcribe", api_key: str | None = None):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAITranscriber requires 'openai' library")
        self.model = model
        key = api_key or os.environ.get("BLOCKMEM_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key)

    def transcribe(self, path: Path, *, timeout: float = 180.0) -> str | None:
        import openai

        try:
            with open(path, "rb") as f:
                result = self._client.audio.transcriptions.create(
                    model=self.model, file=f, timeout=timeout,
                )
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"Transcription failed for {path.name}: {e}") from e
        return _clip(getattr(result, "text", None))


class OpenAIVision:
    """
    Image text extraction using an OpenAI vision model.

    Requires: BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(self, model: str = "gpt-4o-mini", api_key: str | None = None):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIVision requires 'openai' library")
        self.model = model
        key = api_key or os.environ.get("BLOCKMEM_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set BLOCKMEM_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key)

    def extract_text(self, path: Path, mime_type: str, *, timeout: float = 180.0) -> str | None:
        import openai

        data_url = f"data:{mime_type};base64," + base64.b64encode(path.read_bytes()).decode("ascii")
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[
                    {
                        "role": "system",
                        "content": "Extract readable text from the image. Return plain text only.",
                    },
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Extract any readable text from this image."},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    },
                ],
                timeout=timeout,
            )
        except openai.OpenAIError as e:
            raise ExternalServiceError(f"Image extraction failed for {path.name}: {e}") from e
        if not response.choices:
            return None
        return _clip(response.choices[0].message.content)


class FileTextExtractor:
    """
    Dispatches a file to the right extraction path by media family.

    Transcriber and vision provider are optional; without them audio,
    video and image files are stored with no text.
    """

    def __init__(
        self,
        transcriber: Optional[Transcriber] = None,
        vision: Optional[ImageTextExtractor] = None,
        *,
        timeout: float = 180.0,
    ):
        self._transcriber = transcriber
        self._vision = vision
        self._timeout = timeout

    def extract(self, path: Path, mime_type: str) -> Optional[str]:
        """
        Extracted text (at most MAX_EXTRACTED_TEXT chars), or None.

        Raises:
            ExternalServiceError: If an extraction service fails
        """
        family = media_family(mime_type)
        if family == "text":
            return _clip(path.read_text(encoding="utf-8", errors="replace"))
        if family == "pdf":
            return extract_pdf_text(path)
        if family == "audio":
            if self._transcriber is None:
                logger.info("No transcriber configured; storing %s without text", path.name)
                return None
            return self._transcriber.transcribe(path, timeout=self._timeout)
        if family == "video":
            if self._transcriber is None:
                logger.info("No transcriber configured; storing %s without text", path.name)
                return None
            with tempfile.TemporaryDirectory() as tmpdir:
                wav_path = Path(tmpdir) / f"{path.stem}.wav"
                demux_audio(path, wav_path, timeout=self._timeout)
                return self._transcriber.transcribe(wav_path, timeout=self._timeout)
        if family == "image":
            if self._vision is None:
                logger.info("No vision provider configured; storing %s without text", path.name)
                return None
            return self._vision.extract_text(path, mime_type, timeout=self._timeout)
        return None


# Register providers
_registry = get_registry()
_registry.register_transcription("openai", OpenAITranscriber)
_registry.register_vision("openai", OpenAIVision)
