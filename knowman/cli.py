"""
CLI interface for the enrichment pipeline.

Usage:
    knowman capture "Some text. More text." --title "Notes" --user alice
    knowman work
    knowman jobs --status failed
    knowman retry <job-id>
"""

import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .errors import KnowmanError
from .logging_config import configure_console_log, configure_quiet_mode, enable_debug_mode
from .pipeline import Pipeline
from .types import JobRecord, KnowledgeItem

# Configure quiet mode by default (suppress verbose library output)
# Set KNOWMAN_VERBOSE=1 to enable debug mode via environment
if os.environ.get("KNOWMAN_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"knowman {version('knowman')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_data_dir_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _data_dir_callback(value: Optional[Path]):
    global _data_dir_override
    _data_dir_override = value


app = typer.Typer(
    name="knowman",
    help="Capture content and enrich it with summaries, tags and embeddings.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


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
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    data_dir: Annotated[Optional[Path], typer.Option(
        "--data-dir", "-d",
        envvar="KNOWMAN_DATA_DIR",
        help="Path to the data directory (default: ~/.knowman/)",
        callback=_data_dir_callback,
        is_eager=True,
    )] = None,
):
    """Asynchronous enrichment pipeline."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

UserOption = Annotated[
    Optional[str],
    typer.Option("--user", "-u", help="Restrict to one user's jobs and items"),
]

LimitOption = Annotated[
    int,
    typer.Option("--limit", "-n", help="Maximum results to return"),
]


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _to_jsonable(value: Any) -> Any:
    if isinstance(value, (JobRecord, KnowledgeItem)):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


def _emit_json(value: Any) -> None:
    typer.echo(json.dumps(_to_jsonable(value), indent=2))


def _format_job(job: JobRecord) -> str:
    line = f"{job.id}  {job.type:<13} {job.status:<10} p={job.priority} attempts={job.attempts}"
    if job.error:
        line += f"  error: {job.error}"
    return line


def _format_item(item: KnowledgeItem) -> str:
    lines = [
        f"id:        {item.id}",
        f"title:     {item.title}",
        f"status:    {item.status}",
        f"source:    {item.source_url or item.source_type}",
        f"summary:   {item.summary or '-'}",
        f"tags:      {', '.join(item.tags) if item.tags else '-'}",
        f"embedding: {len(item.embedding) if item.embedding else 0} dimensions",
    ]
    return "\n".join(lines)


def _get_pipeline() -> Pipeline:
    """Open the pipeline, turning setup errors into a clean exit."""
    try:
        return Pipeline(_data_dir_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _fail(e: Exception) -> None:
    typer.echo(f"Error: {e}", err=True)
    raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def capture(
    content: Annotated[Optional[str], typer.Argument(
        help="Text to capture (reads stdin when omitted)"
    )] = None,
    title: Annotated[str, typer.Option("--title", "-t", help="Item title")] = "",
    user: Annotated[str, typer.Option("--user", "-u", help="Owning user")] = "local",
    url: Annotated[Optional[str], typer.Option("--url", help="Source URL")] = None,
    html_file: Annotated[Optional[Path], typer.Option(
        "--html", help="HTML file to extract article text from"
    )] = None,
    process: Annotated[bool, typer.Option(
        "--process", "-p", help="Process the new jobs before returning"
    )] = False,
):
    """Capture content and enqueue its enrichment jobs."""
    if content is None and not sys.stdin.isatty():
        content = sys.stdin.read()
    html = html_file.read_text(encoding="utf-8") if html_file else None

    with _get_pipeline() as pipeline:
        try:
            item, jobs = pipeline.capture(
                content or "", title or (url or "Untitled"), user, url=url, html=html,
            )
        except KnowmanError as e:
            _fail(e)
        if process:
            pipeline.drain()
            snapshot = pipeline.orchestrator.capture_status(item.id)
            item, jobs = snapshot["knowledge_item"], snapshot["processing_jobs"]

        if _json_output:
            _emit_json({"knowledge_item": item, "processing_jobs": jobs})
            return
        typer.echo(_format_item(item) if process else f"Captured {item.id}")
        for job in jobs:
            typer.echo(f"  {_format_job(job)}")


@app.command()
def work(
    drain: Annotated[bool, typer.Option(
        "--drain", help="Process everything queued, then exit"
    )] = False,
):
    """
    Run the worker pool.

    Runs until interrupted (Ctrl-C or SIGTERM) unless --drain is given.
    """
    configure_console_log()
    with _get_pipeline() as pipeline:
        if drain:
            handled = pipeline.drain()
            typer.echo(f"Processed {handled} jobs.")
            return

        stop_requested = threading.Event()

        def handle_signal(signum, frame):
            stop_requested.set()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        pipeline.start()
        typer.echo("Workers running. Ctrl-C to stop.", err=True)
        while not stop_requested.wait(1.0):
            pass
        typer.echo("Stopping workers...", err=True)


@app.command("jobs")
def list_jobs_cmd(
    status: Annotated[Optional[str], typer.Option(
        "--status", "-s", help="pending, processing, completed or failed"
    )] = None,
    job_type: Annotated[Optional[str], typer.Option(
        "--type", help="extraction, summarization, tagging or embedding"
    )] = None,
    item_id: Annotated[Optional[str], typer.Option("--item", help="Knowledge item id")] = None,
    user: UserOption = None,
    limit: LimitOption = 20,
    offset: Annotated[int, typer.Option("--offset", help="Skip this many jobs")] = 0,
):
    """List processing jobs, newest first."""
    with _get_pipeline() as pipeline:
        try:
            page = pipeline.orchestrator.list_jobs(
                status=status, type=job_type, knowledge_item_id=item_id,
                user_id=user, limit=limit, offset=offset,
            )
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json(page)
            return
        for job in page["jobs"]:
            typer.echo(_format_job(job))
        shown = offset + len(page["jobs"])
        typer.echo(f"{shown} of {page['total']} jobs" + (" (more with --offset)" if page["has_more"] else ""))


@app.command("job")
def get_job_cmd(
    job_id: Annotated[str, typer.Argument(help="Job id")],
    user: UserOption = None,
):
    """Show one processing job."""
    with _get_pipeline() as pipeline:
        try:
            job = pipeline.orchestrator.get_job(job_id, user)
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json(job.to_dict(include_input=True))
            return
        typer.echo(_format_job(job))
        if job.output:
            typer.echo(f"output: {json.dumps(job.output)}")


@app.command()
def retry(
    job_id: Annotated[str, typer.Argument(help="Failed job id")],
    user: UserOption = None,
):
    """Re-enqueue a failed job."""
    with _get_pipeline() as pipeline:
        try:
            job = pipeline.orchestrator.retry(job_id, user)
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json({"success": True, "message": "Job queued for retry", "job": job})
        else:
            typer.echo(f"Job {job.id} queued for retry")


@app.command()
def cancel(
    job_id: Annotated[str, typer.Argument(help="Pending job id")],
    user: UserOption = None,
):
    """Cancel a pending job."""
    with _get_pipeline() as pipeline:
        try:
            job = pipeline.orchestrator.cancel(job_id, user)
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json({"success": True, "message": "Job cancelled", "job": job})
        else:
            typer.echo(f"Job {job.id} cancelled")


@app.command()
def status(user: UserOption = None):
    """Processing overview: job counts and queue depths."""
    with _get_pipeline() as pipeline:
        overview = pipeline.orchestrator.status_overview(user)
        if _json_output:
            _emit_json(overview)
            return
        summary = overview["summary"]
        typer.echo(
            f"jobs: {summary['total']} total, {summary['pending']} pending, "
            f"{summary['processing']} processing, {summary['completed']} completed, "
            f"{summary['failed']} failed"
        )
        for q in overview["queue_stats"]:
            typer.echo(
                f"  {q['name']:<13} waiting={q['waiting']} active={q['active']} "
                f"delayed={q['delayed']} completed={q['completed']} failed={q['failed']}"
            )
        reasons = pipeline.resolver.fallback_reasons
        for role, reason in reasons.items():
            typer.echo(f"  warning: {role} backend fell back to offline: {reason}", err=True)


@app.command()
def item(
    item_id: Annotated[str, typer.Argument(help="Knowledge item id")],
    user: UserOption = None,
):
    """Show a knowledge item and its processing jobs."""
    with _get_pipeline() as pipeline:
        try:
            result = pipeline.orchestrator.capture_status(item_id, user)
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json(result)
            return
        typer.echo(_format_item(result["knowledge_item"]))
        for job in result["processing_jobs"]:
            typer.echo(f"  {_format_job(job)}")


@app.command()
def cleanup(
    days: Annotated[int, typer.Option(
        "--days", help="Delete finished jobs older than this many days"
    )] = 30,
    user: UserOption = None,
):
    """Delete old completed and failed job records."""
    with _get_pipeline() as pipeline:
        try:
            deleted = pipeline.orchestrator.cleanup(days, user)
        except KnowmanError as e:
            _fail(e)
        if _json_output:
            _emit_json({"success": True, "deleted": deleted})
        else:
            typer.echo(f"Cleaned up {deleted} old jobs")


@app.command("provider-test")
def provider_test(
    embeddings: Annotated[bool, typer.Option(
        "--embeddings", "-e", help="Test the embedding backend instead of the main one"
    )] = False,
):
    """Check that the configured AI backend answers."""
    with _get_pipeline() as pipeline:
        result = pipeline.test_provider(for_embeddings=embeddings)
        if _json_output:
            _emit_json(result)
        else:
            state = "healthy" if result["health"] else "UNHEALTHY"
            typer.echo(f"{result['provider']} ({result['config']['model']}): {state}")
            if "fallback_reason" in result:
                typer.echo(f"fell back to offline: {result['fallback_reason']}", err=True)
        if not result["health"]:
            raise typer.Exit(1)


@app.command("config-init")
def config_init(
    force: Annotated[bool, typer.Option("--force", help="Overwrite an existing file")] = False,
):
    """Write the current configuration to knowman.toml (API keys excluded)."""
    from .config import load_config, save_config

    config = load_config(_data_dir_override)
    if config.exists() and not force:
        typer.echo(f"{config.config_path} already exists (use --force)", err=True)
        raise typer.Exit(1)
    save_config(config)
    typer.echo(f"Wrote {config.config_path}")


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
        log_path = log_exception(e, context="knowman CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
