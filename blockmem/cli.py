"""
CLI interface for block memory.

Usage:
    blockmem write "call alex about the lease"
    blockmem search "lease renewal"
    blockmem clarify digest
    blockmem process
"""

import json
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import BlockMemory
from .logging_config import configure_quiet_mode, enable_debug_mode
from .protocol import BlockMemoryProtocol
from .types import Block

# Configure quiet mode by default (suppress verbose library output)
# Set BLOCKMEM_VERBOSE=1 to enable debug mode via environment
if os.environ.get("BLOCKMEM_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="blockmem",
    help="Notes, files and people with hybrid retrieval.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

clarify_app = typer.Typer(
    name="clarify",
    help="Questions about ambiguous people.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(clarify_app)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="BLOCKMEM_STORE_PATH",
        help="Path to the store directory (default: ~/.blockmem/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Notes, files and people with hybrid retrieval."""


LimitOption = Annotated[
    int,
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return"
    )
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_memory() -> BlockMemoryProtocol:
    """Open the store; close() runs at interpreter exit."""
    import atexit

    mem = BlockMemory(_store_override)
    atexit.register(mem.close)
    return mem


def _read_content(content: Optional[str]) -> str:
    if content is None or content == "-":
        if sys.stdin.isatty():
            typer.echo("Error: no content given (pass text or pipe it on stdin)", err=True)
            raise typer.Exit(1)
        return sys.stdin.read()
    return content


def _emit_json(value) -> None:
    typer.echo(json.dumps(value, indent=2, ensure_ascii=False, default=str))


def _one_line(text: str, width: int = 100) -> str:
    line = " ".join(text.split())
    return line if len(line) <= width else line[:width - 3] + "..."


def _finish_writes(mem: BlockMemoryProtocol) -> None:
    """Wait for embedding and scan tasks; the process exits right after."""
    for err in mem.drain():
        typer.echo(f"Warning: {err.task} failed: {err.error}", err=True)


def _print_block(block: Block) -> None:
    if _json_output:
        _emit_json(asdict(block))
    else:
        typer.echo(block.id)


# -----------------------------------------------------------------------------
# Blocks
# -----------------------------------------------------------------------------

@app.command()
def write(
    content: Annotated[Optional[str], typer.Argument(
        help="Block text ('-' or omitted reads stdin); may start with YAML frontmatter"
    )] = None,
    visibility: Annotated[str, typer.Option(
        "--visibility", help="private or public"
    )] = "private",
    source: Annotated[str, typer.Option(
        "--source", help="Source tag recorded on the block"
    )] = "cli",
):
    """Store a new user block."""
    mem = _get_memory()
    block = mem.create_user_block(
        _read_content(content), visibility=visibility, source=source,
    )
    _finish_writes(mem)
    _print_block(block)


@app.command()
def update(
    block_id: Annotated[str, typer.Argument(help="User block id")],
    content: Annotated[Optional[str], typer.Argument(
        help="New text ('-' or omitted reads stdin)"
    )] = None,
    finalize: Annotated[bool, typer.Option(
        "--finalize", help="Always record a version"
    )] = False,
):
    """Replace a user block's content."""
    mem = _get_memory()
    block = mem.update_user_block(
        block_id, _read_content(content),
        capture_reason="finalize" if finalize else "autosave",
    )
    _finish_writes(mem)
    _print_block(block)


@app.command()
def versions(
    block_id: Annotated[str, typer.Argument(help="User block id")],
):
    """List the recorded versions of a user block."""
    mem = _get_memory()
    rows = mem.list_versions(block_id)
    if _json_output:
        _emit_json([asdict(v) for v in rows])
        return
    for v in rows:
        typer.echo(f"v{v.version_no}  {v.captured_at}  {v.capture_reason:<8}  {_one_line(v.content, 80)}")


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search text")],
    scope: Annotated[str, typer.Option(
        "--scope", help="'user' for your blocks only, 'all' to include system blocks"
    )] = "all",
    limit: LimitOption = 8,
    offset: Annotated[int, typer.Option("--offset", help="Results to skip")] = 0,
):
    """Find related blocks (lexical + vector)."""
    mem = _get_memory()
    results = mem.search_related_blocks(query, scope=scope, limit=limit, offset=offset)
    if _json_output:
        _emit_json([asdict(r) for r in results])
        return
    if not results:
        typer.echo("No results.")
        return
    for r in results:
        typer.echo(f"{r.score:.3f}  {r.block.key}  {_one_line(r.block.content)}")


# -----------------------------------------------------------------------------
# Clarifications
# -----------------------------------------------------------------------------

@clarify_app.command("digest")
def clarify_digest(limit: LimitOption = 10):
    """Show open questions and mark them asked."""
    mem = _get_memory()
    digest = mem.build_clarification_digest(limit)
    typer.echo(digest if digest is not None else "No open questions.")


@clarify_app.command("list")
def clarify_list(limit: LimitOption = 20):
    """List open questions without marking them asked."""
    mem = _get_memory()
    items = mem.list_pending_clarifications(limit)
    if _json_output:
        _emit_json([asdict(i) for i in items])
        return
    for item in items:
        typer.echo(f"[{item.id}] ({item.status}, {item.priority}) {item.question}")
        for i, option in enumerate(item.options, start=1):
            typer.echo(f"  {i}. {option.label}")


@clarify_app.command("answer")
def clarify_answer(
    item_id: Annotated[str, typer.Argument(help="Clarification id")],
    option: Annotated[int, typer.Argument(help="Option number (from 1)")],
):
    """Answer a question with an option number."""
    mem = _get_memory()
    typer.echo(mem.resolve_clarification(item_id, option))


# -----------------------------------------------------------------------------
# Intake and enrichment
# -----------------------------------------------------------------------------

@app.command()
def ingest(
    directory: Annotated[Optional[Path], typer.Option(
        "--dir", "-d", help="Intake directory (default from config)"
    )] = None,
    source_type: Annotated[Optional[str], typer.Option(
        "--source-type", help="Source type recorded on new artifacts"
    )] = None,
):
    """Ingest files from the intake directory."""
    mem = _get_memory()
    result = mem.ingest_files(directory, source_type)
    if _json_output:
        _emit_json(asdict(result))
        return
    typer.echo(
        f"scanned {result.scanned}, ingested {result.ingested}, "
        f"skipped {result.skipped}, errored {result.errored}"
    )


@app.command()
def process(
    user_limit: Annotated[Optional[int], typer.Option(
        "--user-limit", help="User blocks per batch (1-100)"
    )] = None,
    artifact_limit: Annotated[Optional[int], typer.Option(
        "--artifact-limit", help="Artifacts per batch (1-50)"
    )] = None,
):
    """Run one enrichment batch."""
    mem = _get_memory()
    result = mem.process_pending_state(user_limit, artifact_limit)
    if _json_output:
        _emit_json(asdict(result))
        return
    typer.echo(
        f"user blocks: {result.user_processed}/{result.user_scanned} processed, "
        f"{result.user_errored} errored"
    )
    typer.echo(
        f"artifacts: {result.artifacts_processed}/{result.artifacts_scanned} processed, "
        f"{result.artifacts_errored} errored"
    )
    for error in result.errors:
        typer.echo(f"  {error}", err=True)


@app.command()
def artifacts(
    limit: LimitOption = 50,
    status: Annotated[Optional[str], typer.Option(
        "--status", help="parsed, linked or error"
    )] = None,
    source_type: Annotated[Optional[str], typer.Option(
        "--source-type", help="Only this source type"
    )] = None,
):
    """List ingested artifacts, newest first."""
    mem = _get_memory()
    rows = mem.list_artifacts(limit, source_type=source_type, status=status)
    if _json_output:
        _emit_json([
            {k: v for k, v in asdict(a).items() if k != "text_content"} for a in rows
        ])
        return
    for a in rows:
        line = f"{a.created_at}  {a.ingest_status:<6}  {a.id}  {a.title}"
        if a.error:
            line += f"  ({_one_line(a.error, 60)})"
        typer.echo(line)


def _queue_status_line(counts: dict[str, int]) -> str:
    """Like '2 queued, 1 processing + 1 failed'."""
    line = f"{counts.get('pending', 0)} queued"
    if counts.get("processing"):
        line += f", {counts['processing']} processing"
    if counts.get("error"):
        line += f" + {counts['error']} failed"
    return line


@app.command()
def status():
    """Show store location, providers and queue counts."""
    mem = _get_memory()
    stats = mem.store_stats()
    if _json_output:
        _emit_json(stats)
        return
    typer.echo(f"store: {stats['store']}")
    typer.echo(f"providers: embedding={stats['embedding'] or 'none'}, "
               f"completion={stats['completion'] or 'none'}")
    blocks = stats["blocks"]
    typer.echo(f"blocks: {blocks['user']} user, {blocks['system']} system, {stats['links']} links")
    open_questions = sum(n for s, n in stats["clarifications"].items() if s in ("pending", "asked"))
    typer.echo(f"open questions: {open_questions}")
    for subject_type in ("user_block", "artifact"):
        typer.echo(f"{subject_type}: {_queue_status_line(stats['processing'].get(subject_type, {}))}")


# -----------------------------------------------------------------------------
# CRM
# -----------------------------------------------------------------------------

@app.command()
def crm(
    topic: Annotated[Optional[str], typer.Option("--topic", help="Only people with this topic")] = None,
    people: Annotated[Optional[str], typer.Option("--people", help="Only people matching this name")] = None,
    limit: LimitOption = 25,
):
    """Rank people by follow-up priority."""
    mem = _get_memory()
    rows = mem.get_crm_summary(topic_filter=topic, people_filter=people, limit=limit)
    if _json_output:
        _emit_json([asdict(p) for p in rows])
        return
    if not rows:
        typer.echo("No people yet.")
        return
    for p in rows:
        days = "never" if p.days_since_contact is None else f"{p.days_since_contact}d"
        mark = "" if p.verified else " (unverified)"
        typer.echo(
            f"{p.roi:5.2f}  {p.name}{mark}  last contact {days}, "
            f"open loops {p.open_loops}, topics: {', '.join(p.recent_topics) or '-'}"
        )


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="blockmem CLI", store_path=_store_override)
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
