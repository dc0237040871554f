"""Tests for providers and structured output parsing."""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from blockmem.errors import ExternalServiceError, StructuredOutputParseError
from blockmem.providers import get_registry, parse_structured_output
from blockmem.providers.base import extract_first_json_value
from blockmem.providers.extraction import (
    FileTextExtractor,
    OpenAITranscriber,
    OpenAIVision,
    demux_audio,
    extract_pdf_text,
)
from blockmem.providers.llm import AnthropicCompletion, OpenAICompletion
from blockmem.providers.storage import HttpObjectStore


class TestStructuredOutput:
    """Tests for recovering JSON from model replies."""

    def test_dict_passthrough(self):
        assert parse_structured_output({"a": 1}) == {"a": 1}

    def test_code_fence(self):
        raw = '```json\n{"analysis": "ok", "drafts": []}\n```'
        assert parse_structured_output(raw) == {"analysis": "ok", "drafts": []}

    def test_prose_around_json(self):
        raw = 'Here you go: {"a": "brace } inside", "b": [1, 2]} hope that helps'
        assert parse_structured_output(raw) == {"a": "brace } inside", "b": [1, 2]}

    def test_array_rejected(self):
        with pytest.raises(StructuredOutputParseError):
            parse_structured_output("[1, 2, 3]")

    def test_garbage_rejected(self):
        with pytest.raises(StructuredOutputParseError):
            parse_structured_output("no json here")

    def test_unsupported_type(self):
        with pytest.raises(StructuredOutputParseError):
            parse_structured_output(42)

    def test_extract_first_value(self):
        assert extract_first_json_value('x [1, {"a": 2}] y') == '[1, {"a": 2}]'
        assert extract_first_json_value("") == ""


class TestRegistry:
    """Tests for the provider registry."""

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown completion provider"):
            get_registry().create_completion("nonexistent")

    def test_builtin_providers_registered(self):
        registry = get_registry()
        assert {"anthropic", "openai"} <= set(registry.list_completion_providers())
        assert "openai" in registry.list_embedding_providers()

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            get_registry().create_completion("anthropic")

    def test_file_object_store_from_registry(self, tmp_path):
        store = get_registry().create_object_store("file", {"root": str(tmp_path)})
        assert store.root == tmp_path


class TestCompletionProviders:
    """Tests for the LLM providers with the SDK client mocked out."""

    def test_anthropic_returns_text(self):
        provider = AnthropicCompletion(api_key="test-key")
        provider.client = MagicMock()
        provider.client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(type="text", text='{"analysis": "ok"}')],
        )
        raw = provider.complete_json("sys", "prompt", {"type": "object"}, timeout=5)
        assert parse_structured_output(raw) == {"analysis": "ok"}

        kwargs = provider.client.messages.create.call_args.kwargs
        assert kwargs["timeout"] == 5
        assert '"type": "object"' in kwargs["system"]

    def test_anthropic_error_wrapped(self):
        import anthropic

        provider = AnthropicCompletion(api_key="test-key")
        provider.client = MagicMock()
        provider.client.messages.create.side_effect = anthropic.AnthropicError("overloaded")
        with pytest.raises(ExternalServiceError):
            provider.complete_json("sys", "prompt", {})

    def test_openai_response_format(self):
        provider = OpenAICompletion(api_key="test-key")
        provider._client = MagicMock()
        provider._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content='{"a": 1}'))],
        )
        assert provider.complete_json("sys", "prompt", {"type": "object"}) == '{"a": 1}'
        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"]["type"] == "json_schema"
        assert kwargs["temperature"] == 0.2

    def test_openai_new_api_kwargs(self):
        provider = OpenAICompletion(model="gpt-5-mini", api_key="test-key")
        assert provider._completion_kwargs(100) == {"max_completion_tokens": 100}


class TestHttpObjectStore:
    """Tests for HTTP uploads with requests mocked out."""

    @pytest.fixture
    def upload(self, tmp_path) -> Path:
        path = tmp_path / "scan 1.pdf"
        path.write_bytes(b"%PDF")
        return path

    def test_put_sends_checksum_and_token(self, upload):
        store = HttpObjectStore("https://blobs.example.com/", token="secret")
        with patch("blockmem.providers.storage.requests.put") as put:
            put.return_value = SimpleNamespace(ok=True, status_code=200, text="")
            key = store.put(upload, "abc")

        assert key.endswith("-scan_1.pdf")
        url = put.call_args.args[0]
        assert url == f"https://blobs.example.com/{key}"
        headers = put.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer secret"
        assert headers["x-checksum-sha256"] == "abc"

    def test_http_error(self, upload):
        store = HttpObjectStore("https://blobs.example.com")
        with patch("blockmem.providers.storage.requests.put") as put:
            put.return_value = SimpleNamespace(ok=False, status_code=503, text="busy")
            with pytest.raises(ExternalServiceError, match="HTTP 503"):
                store.put(upload, "abc")

    def test_connection_error(self, upload):
        store = HttpObjectStore("https://blobs.example.com")
        with patch("blockmem.providers.storage.requests.put",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(ExternalServiceError):
                store.put(upload, "abc")


class TestExtraction:
    """Tests for PDF, audio, video and image text extraction."""

    def test_blank_pdf_has_no_text(self, tmp_path):
        from pypdf import PdfWriter

        path = tmp_path / "blank.pdf"
        writer = PdfWriter()
        writer.add_blank_page(width=72, height=72)
        with open(path, "wb") as f:
            writer.write(f)
        assert extract_pdf_text(path) is None

    def test_unreadable_pdf(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"not a pdf at all")
        with pytest.raises(ExternalServiceError):
            extract_pdf_text(path)

    def test_demux_invokes_ffmpeg(self, tmp_path):
        video, wav = tmp_path / "clip.mp4", tmp_path / "clip.wav"
        with patch("blockmem.providers.extraction.shutil.which", return_value="/usr/bin/ffmpeg"), \
                patch("blockmem.providers.extraction.subprocess.run") as run:
            run.return_value = SimpleNamespace(returncode=0, stderr="")
            demux_audio(video, wav, timeout=30)

        cmd = run.call_args.args[0]
        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-ar") + 1] == "16000"
        assert cmd[cmd.index("-ac") + 1] == "1"
        assert cmd[-1] == str(wav)
        assert run.call_args.kwargs["timeout"] == 30

    def test_demux_failure(self, tmp_path):
        with patch("blockmem.providers.extraction.shutil.which", return_value="/usr/bin/ffmpeg"), \
                patch("blockmem.providers.extraction.subprocess.run") as run:
            run.return_value = SimpleNamespace(returncode=1, stderr="no audio stream")
            with pytest.raises(ExternalServiceError, match="no audio stream"):
                demux_audio(tmp_path / "clip.mp4", tmp_path / "clip.wav")

    def test_demux_without_ffmpeg(self, tmp_path):
        with patch("blockmem.providers.extraction.shutil.which", return_value=None):
            with pytest.raises(ExternalServiceError, match="ffmpeg"):
                demux_audio(tmp_path / "clip.mp4", tmp_path / "clip.wav")

    def test_transcriber_request(self, tmp_path):
        audio = tmp_path / "memo.m4a"
        audio.write_bytes(b"\x00\x01")
        transcriber = OpenAITranscriber(api_key="test-key")
        transcriber._client = MagicMock()
        transcriber._client.audio.transcriptions.create.return_value = SimpleNamespace(
            text="  call alex tomorrow  ",
        )
        assert transcriber.transcribe(audio, timeout=12) == "call alex tomorrow"
        kwargs = transcriber._client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini-transcribe"
        assert kwargs["timeout"] == 12

    def test_transcriber_error_wrapped(self, tmp_path):
        import openai

        audio = tmp_path / "memo.m4a"
        audio.write_bytes(b"\x00\x01")
        transcriber = OpenAITranscriber(api_key="test-key")
        transcriber._client = MagicMock()
        transcriber._client.audio.transcriptions.create.side_effect = openai.OpenAIError("quota")
        with pytest.raises(ExternalServiceError):
            transcriber.transcribe(audio)

    def test_vision_sends_data_url(self, tmp_path):
        image = tmp_path / "card.png"
        image.write_bytes(b"\x89PNG")
        vision = OpenAIVision(api_key="test-key")
        vision._client = MagicMock()
        vision._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Alex Kim, Acme"))],
        )
        assert vision.extract_text(image, "image/png") == "Alex Kim, Acme"

        kwargs = vision._client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        parts = kwargs["messages"][1]["content"]
        image_part = next(p for p in parts if p["type"] == "image_url")
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")

    def test_video_is_demuxed_then_transcribed(self, tmp_path):
        video = tmp_path / "standup.mp4"
        video.write_bytes(b"\x00")
        transcriber = MagicMock()
        transcriber.transcribe.return_value = "ship it friday"
        extractor = FileTextExtractor(transcriber=transcriber, timeout=40)

        with patch("blockmem.providers.extraction.demux_audio") as demux:
            assert extractor.extract(video, "video/mp4") == "ship it friday"

        wav_path = demux.call_args.args[1]
        assert wav_path.name == "standup.wav"
        assert transcriber.transcribe.call_args.args[0] == wav_path
        assert transcriber.transcribe.call_args.kwargs["timeout"] == 40

    def test_media_without_provider_has_no_text(self, tmp_path):
        image = tmp_path / "card.png"
        image.write_bytes(b"\x89PNG")
        assert FileTextExtractor().extract(image, "image/png") is None
