"""Tests for the command line interface."""

import json

import pytest
from typer.testing import CliRunner

from blockmem.cli import app

runner = CliRunner()


@pytest.fixture
def store(tmp_path, monkeypatch):
    """A fresh store with no provider keys in the environment."""
    for name in ("OPENAI_API_KEY", "BLOCKMEM_OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return str(tmp_path / "store")


def invoke(store: str, *args: str):
    return runner.invoke(app, ["--store", store, *args])


class TestCli:
    """End-to-end CLI runs against a temp store (lexical retrieval only)."""

    def test_write_and_search(self, store):
        result = invoke(store, "write", "renew the lease before march")
        assert result.exit_code == 0, result.output
        block_id = result.stdout.strip()

        result = invoke(store, "search", "lease")
        assert result.exit_code == 0, result.output
        assert f"user:{block_id}" in result.stdout

    def test_search_json(self, store):
        invoke(store, "write", "renew the lease before march")
        result = invoke(store, "--json", "search", "lease")
        rows = json.loads(result.stdout)
        assert rows[0]["block"]["content"] == "renew the lease before march"
        assert rows[0]["lexical_score"] == 0.25

    def test_search_no_results(self, store):
        result = invoke(store, "search", "nothing")
        assert result.stdout.strip() == "No results."

    def test_update_and_versions(self, store):
        block_id = invoke(store, "write", "draft one").stdout.strip()
        assert invoke(store, "update", block_id, "draft two", "--finalize").exit_code == 0
        result = invoke(store, "--json", "versions", block_id)
        versions = json.loads(result.stdout)
        assert [v["capture_reason"] for v in versions] == ["create", "finalize"]

    def test_clarify_flow(self, store):
        assert invoke(store, "clarify", "digest").stdout.strip() == "No open questions."

        invoke(store, "write", "email priya about the invoice")
        listing = invoke(store, "--json", "clarify", "list")
        items = json.loads(listing.stdout)
        assert len(items) == 1
        item_id = items[0]["id"]

        digest = invoke(store, "clarify", "digest")
        assert digest.stdout.startswith("overnight clarification digest")

        answer = invoke(store, "clarify", "answer", item_id, "1")
        assert answer.exit_code == 0, answer.output
        assert answer.stdout.strip() == f"saved answer for {item_id}: yes, create priya"

        again = invoke(store, "clarify", "answer", item_id, "1")
        assert again.exit_code != 0

    def test_ingest_and_artifacts(self, store, tmp_path):
        intake = tmp_path / "inbox"
        intake.mkdir()
        (intake / "notes.txt").write_text("lease notes")
        result = invoke(store, "ingest", "--dir", str(intake))
        assert result.stdout.strip() == "scanned 1, ingested 1, skipped 0, errored 0"

        listing = invoke(store, "artifacts")
        assert "notes.txt" in listing.stdout

    def test_process_requires_completion(self, store):
        result = invoke(store, "process")
        assert result.exit_code != 0
        assert isinstance(result.exception, RuntimeError)

    def test_crm_empty(self, store):
        assert invoke(store, "crm").stdout.strip() == "No people yet."

    def test_status(self, store):
        invoke(store, "write", "renew the lease before march")
        result = invoke(store, "--json", "status")
        assert result.exit_code == 0, result.output
        stats = json.loads(result.stdout)
        assert stats["blocks"] == {"user": 1, "system": 0}
        assert stats["processing"] == {"user_block": {"pending": 1}}
        assert stats["completion"] is None

        text = invoke(store, "status").stdout
        assert "user_block: 1 queued" in text
        assert "artifact: 0 queued" in text
