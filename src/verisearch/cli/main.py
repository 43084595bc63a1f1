"""
Verisearch CLI

Command-line interface for verified code search and escalated answering.

Usage::

    verisearch search "find the Widget component" --root ./web
    verisearch ask "how is UserForm validated?" --root ./web
    verisearch extract ./web/src/components/Widget.tsx
    verisearch feedback                # Summarize the escalation feedback log
"""

import dataclasses
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

import click

from verisearch.client import Verisearch
from verisearch.core.config import VerisearchConfig
from verisearch.core.escalation import JsonFileFeedbackSink, summarize_feedback
from verisearch.core.formatter import ReportFormatter
from verisearch.exceptions import QueryCancelledError, VerisearchError


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

def _configure_logging(config: VerisearchConfig, verbose: bool) -> None:
    """Set up logging for the CLI session."""
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.log_format)
    # Suppress noisy HTTP loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _config_from_context(ctx: click.Context) -> VerisearchConfig:
    config = VerisearchConfig.from_env()
    provider = ctx.obj.get("provider")
    if provider:
        config = dataclasses.replace(config, llm_provider=provider)
    return config


# ---------------------------------------------------------------------------
# Top-level group
# ---------------------------------------------------------------------------

@click.group()
@click.version_option(package_name="verisearch")
@click.option(
    "--provider",
    type=click.Choice(["anthropic", "openai", "gemini"]),
    default=None,
    envvar="VERISEARCH_LLM_PROVIDER",
    help="LLM provider override (default: $VERISEARCH_LLM_PROVIDER or 'anthropic').",
)
@click.pass_context
def cli(ctx: click.Context, provider: str | None):
    """Verisearch — verified code search with model-tier escalation."""
    ctx.ensure_object(dict)
    ctx.obj["provider"] = provider


def _search_options(func):
    """Options shared by ``search`` and ``ask``."""
    options = [
        click.option("-r", "--root", type=click.Path(exists=True, file_okay=False),
                     default=".", help="Directory to search (default: current directory)."),
        click.option("-t", "--file-type", default=None,
                     help="Only search files with this extension (e.g. tsx)."),
        click.option("-d", "--directory", default=None,
                     help="Only search paths containing this directory."),
        click.option("-n", "--max-results", type=int, default=None,
                     help="Maximum number of file-level results."),
        click.option("--no-deps", is_flag=True,
                     help="Skip cross-file import linking."),
        click.option("-v", "--verbose", is_flag=True, help="Enable debug logging."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


# ---------------------------------------------------------------------------
# verisearch search
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("query")
@_search_options
@click.option("-f", "--format", "fmt",
              type=click.Choice(["text", "json", "compact"]),
              default="text", help="Output format.")
@click.pass_context
def search(ctx: click.Context, query: str, root: str, file_type: str | None,
           directory: str | None, max_results: int | None, no_deps: bool,
           verbose: bool, fmt: str):
    """Find, rank, and verify code that answers QUERY."""
    config = _config_from_context(ctx)
    _configure_logging(config, verbose)
    t0 = time.perf_counter()

    client = Verisearch(config=config)
    try:
        report = client.search(
            query,
            root=root,
            file_type=file_type,
            directory=directory,
            include_dependencies=False if no_deps else None,
            max_results=max_results,
            show_progress=verbose,
        )
    except VerisearchError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    elapsed = time.perf_counter() - t0
    if fmt == "json":
        click.echo(ReportFormatter.format_json(report))
        return
    if fmt == "compact":
        click.echo(ReportFormatter.format_compact(report))
    else:
        click.echo(report.text)
    click.echo(f"  Completed in {elapsed:.3f} seconds")


# ---------------------------------------------------------------------------
# verisearch ask
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("query")
@_search_options
@click.option("--thorough", is_flag=True, help="Skip the fast tier.")
@click.pass_context
def ask(ctx: click.Context, query: str, root: str, file_type: str | None,
        directory: str | None, max_results: int | None, no_deps: bool,
        verbose: bool, thorough: bool):
    """Answer QUERY with the fast model tier, escalating when needed.

    Press Ctrl+C to cancel a tier that is in flight.
    """
    config = _config_from_context(ctx)
    _configure_logging(config, verbose)

    client = Verisearch(config=config)
    cancel = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(
            client.ask,
            query,
            root=root,
            file_type=file_type,
            directory=directory,
            include_dependencies=False if no_deps else None,
            max_results=max_results,
            tier_hint="thorough" if thorough else None,
            cancel_event=cancel,
        )
        try:
            while True:
                try:
                    result = future.result(timeout=0.2)
                    break
                except FutureTimeoutError:
                    continue
        except KeyboardInterrupt:
            cancel.set()
            click.echo("\n  Cancelling...", err=True)
            try:
                future.result()
            except VerisearchError:
                pass
            click.echo("Query cancelled.", err=True)
            raise SystemExit(130)
        except QueryCancelledError:
            click.echo("Query cancelled.", err=True)
            raise SystemExit(130)
        except VerisearchError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(1)

    click.echo(result.response)
    click.echo(
        f"  [{result.model_used}: {result.model_name}, {result.duration_ms} ms, "
        f"{result.input_tokens}/{result.output_tokens} tokens]",
        err=True,
    )
    if not result.successful:
        raise SystemExit(2)


# ---------------------------------------------------------------------------
# verisearch extract
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("-f", "--format", "fmt", type=click.Choice(["text", "json"]),
              default="text", help="Output format.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def extract(ctx: click.Context, file: str, fmt: str, verbose: bool):
    """List the entities, imports, and exports of one source FILE."""
    config = _config_from_context(ctx)
    _configure_logging(config, verbose)

    client = Verisearch(config=config)
    try:
        entities, deps = client.extract(file)
    except VerisearchError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)

    if fmt == "json":
        click.echo(json.dumps({
            "entities": [e.to_dict() for e in entities],
            "dependencies": deps.to_dict(),
        }, indent=2))
        return

    click.echo("─" * 50)
    click.echo(f"  {file}")
    click.echo("─" * 50)
    for e in entities:
        owner = f"{e.parent_name}." if e.parent_name else ""
        flag = " (exported)" if e.is_exported else ""
        click.echo(f"  {e.kind:<13} {owner}{e.name}  lines {e.start_line}-{e.end_line}{flag}")
        for child in e.child_entities:
            optional = "?" if child.optional else ""
            click.echo(f"      {child.name}{optional}: {child.type}")
    if deps.imports:
        click.echo()
        for imp in deps.imports:
            names = ", ".join(imp.imported_names) or "*"
            click.echo(f"  import {names} from '{imp.source}'")
    if deps.exports:
        click.echo()
        click.echo(f"  exports: {', '.join(deps.exported_names())}")
    click.echo("─" * 50)


# ---------------------------------------------------------------------------
# verisearch feedback
# ---------------------------------------------------------------------------

@cli.command()
@click.option("--log", "log_path", type=click.Path(dir_okay=False), default=None,
              help="Feedback log to read (default: $VERISEARCH_FEEDBACK_LOG or ~/.verisearch).")
@click.pass_context
def feedback(ctx: click.Context, log_path: str | None):
    """Summarize the escalation feedback log."""
    config = _config_from_context(ctx)
    sink = JsonFileFeedbackSink(log_path or config.feedback_log_path)
    summary = summarize_feedback(sink.records())
    if not summary["records"]:
        click.echo(f"No feedback records in {sink.path}.", err=True)
        raise SystemExit(1)

    click.echo("─" * 50)
    click.echo("  VERISEARCH — Escalation Feedback")
    click.echo("─" * 50)
    click.echo(f"  Log location : {sink.path}")
    click.echo()
    click.echo(f"  Records                   {summary['records']:>8,}")
    click.echo(f"  Fast tier success rate    {summary['fast_tier_success_rate']:>8.1%}")
    click.echo(f"  Escalation rate           {summary['escalation_rate']:>8.1%}")
    click.echo(f"  Thorough tier success     {summary['thorough_tier_success_rate']:>8.1%}")
    click.echo(f"  Reformulations            {summary['reformulations']:>8,}")
    click.echo(f"  Avg fast tier (ms)        {summary['avg_fast_duration_ms']:>8,.1f}")
    click.echo(f"  Avg thorough tier (ms)    {summary['avg_thorough_duration_ms']:>8,.1f}")
    click.echo("─" * 50)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
