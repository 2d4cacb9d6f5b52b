"""Command line interface for the inkwell journal."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import shlex
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.table import Table

from inkwell.config import ConfigError, InkwellConfig, load_config
from inkwell.conversation import Conversation, ask_once, reflect_on_entry, run_chat
from inkwell.embeddings import EmbeddingIndex
from inkwell.errors import InkwellError, SessionExpiredError
from inkwell.logging import setup_logging
from inkwell.models import NoConstraint, RelativeConstraint, SummaryLevel
from inkwell.patterns import detect_patterns
from inkwell.reflection import RetrievalReflector
from inkwell.search import search
from inkwell.services import OpenAIChatService, OpenAIEmbeddingService
from inkwell.staging import staged_plaintext
from inkwell.store import Vault
from inkwell.summaries import summarize as summarize_period

if TYPE_CHECKING:
    from collections.abc import Iterator

    from inkwell.models import Summary
    from inkwell.session import Session

LOGGER = logging.getLogger(__name__)

console = Console()

app = typer.Typer(
    name="inkwell",
    help="An encrypted journal with semantic search and a conversational assistant.",
    add_completion=False,
    no_args_is_help=True,
)


@dataclass
class Runtime:
    """Collaborators built from the configuration for one command."""

    config: InkwellConfig
    vault: Vault
    embedder: OpenAIEmbeddingService
    chat: OpenAIChatService
    embeddings: EmbeddingIndex

    async def aclose(self) -> None:
        """Release HTTP resources."""
        await self.embedder.aclose()


def _build_runtime(config: InkwellConfig) -> Runtime:
    vault = Vault(config.vault_dir, session_timeout=config.session_timeout_seconds)
    embedder = OpenAIEmbeddingService(
        base_url=config.openai_base_url,
        model=config.embed_model,
        api_key=config.openai_api_key,
        timeout=config.request_timeout,
    )
    chat = OpenAIChatService(
        base_url=config.openai_base_url,
        model=config.chat_model,
        api_key=config.openai_api_key,
    )
    embeddings = EmbeddingIndex(
        vault,
        embedder,
        chunk_size=config.chunk_size,
        chunk_overlap=config.chunk_overlap,
        max_concurrency=config.embed_concurrency,
    )
    return Runtime(config, vault, embedder, chat, embeddings)


def _prompt_passphrase() -> str:
    env_passphrase = os.environ.get("INKWELL_PASSPHRASE")
    if env_passphrase:
        return env_passphrase
    return typer.prompt("Passphrase", hide_input=True)


@contextmanager
def _unlocked(ctx: typer.Context) -> Iterator[tuple[Runtime, Session]]:
    """Unlock the vault for one command and report inkwell errors cleanly."""
    runtime: Runtime = ctx.obj
    try:
        with runtime.vault.unlock(_prompt_passphrase) as session:
            yield runtime, session
    except InkwellError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(1) from e
    finally:
        runtime.vault.index.close()


def _parse_date(value: str | None) -> dt.date:
    if value is None:
        return dt.date.today()
    try:
        return dt.date.fromisoformat(value)
    except ValueError as e:
        msg = f"Invalid date {value!r}; expected YYYY-MM-DD"
        raise typer.BadParameter(msg) from e


@app.callback()
def main(
    ctx: typer.Context,
    config_file: str | None = typer.Option(None, "--config", help="Path to a TOML config file."),
    vault_dir: str | None = typer.Option(None, "--vault-dir", help="Journal directory."),
    log_level: str = typer.Option("warning", help="Logging level (debug, info, warning, error)."),
) -> None:
    """An encrypted journal with semantic search."""
    import dotenv  # noqa: PLC0415

    dotenv.load_dotenv()
    setup_logging(log_level)
    try:
        config = load_config(config_file, vault_dir=vault_dir)
    except ConfigError as e:
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(1) from e
    ctx.obj = _build_runtime(config)


@app.command()
def edit(
    ctx: typer.Context,
    date: str | None = typer.Argument(None, help="Entry date (YYYY-MM-DD), default today."),
) -> None:
    """Open an entry in $EDITOR and save it encrypted."""
    day = _parse_date(date)
    editor = os.environ.get("EDITOR", "vi")
    with _unlocked(ctx) as (runtime, session):
        existing = runtime.vault.read_entry(session, day)
        original = existing.content if existing else f"# {day.isoformat()}\n\n"
        expected_checksum = existing.checksum if existing else None
        with staged_plaintext(original) as path:
            LOGGER.debug("Editing %s in %s", day, path)
            completed = subprocess.run([*shlex.split(editor), str(path)], check=False)  # noqa: S603
            if completed.returncode != 0:
                console.print(f"[bold red]Editor exited with status {completed.returncode}; not saving.[/bold red]")
                raise typer.Exit(1)
            text = path.read_text(encoding="utf-8")
        if text == original:
            console.print("[yellow]No changes.[/yellow]")
            return

        async def save() -> None:
            try:
                try:
                    result = await runtime.embeddings.save_entry(
                        session,
                        day,
                        text,
                        expected_checksum=expected_checksum,
                    )
                except SessionExpiredError:
                    # The edited text only exists in memory now.
                    console.print("[yellow]Session expired while editing; unlock again to save your changes.[/yellow]")
                    with runtime.vault.unlock(_prompt_passphrase) as fresh:
                        result = await runtime.embeddings.save_entry(
                            fresh,
                            day,
                            text,
                            expected_checksum=expected_checksum,
                        )
            finally:
                await runtime.aclose()
            if result.conflict:
                console.print(
                    f"[yellow]Entry {day} was changed elsewhere while you edited; your version was kept.[/yellow]",
                )
            console.print(f"[green]Saved {day} ({result.word_count} words).[/green]")

        asyncio.run(save())


@app.command()
def entries(
    ctx: typer.Context,
    since: str | None = typer.Option(None, help="Only entries on or after this date."),
    until: str | None = typer.Option(None, help="Only entries on or before this date."),
) -> None:
    """List journal entries."""
    with _unlocked(ctx) as (runtime, session):
        date_range = None
        if since or until:
            date_range = (
                _parse_date(since) if since else dt.date.min,
                _parse_date(until) if until else dt.date.max,
            )
        records = runtime.vault.list_entries(session, date_range)
        table = Table(title=f"{len(records)} entries")
        table.add_column("Date")
        table.add_column("Words", justify="right")
        table.add_column("Embedded")
        for record in records:
            table.add_row(
                record.date.isoformat(),
                str(record.word_count),
                "no" if record.needs_embedding else "yes",
            )
        console.print(table)


@app.command()
def delete(
    ctx: typer.Context,
    date: str = typer.Argument(..., help="Entry date (YYYY-MM-DD)."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),  # noqa: FBT001, FBT003
) -> None:
    """Delete an entry and its embeddings."""
    day = _parse_date(date)
    if not yes:
        typer.confirm(f"Delete the entry for {day}?", abort=True)
    with _unlocked(ctx) as (runtime, session):
        if runtime.vault.delete_entry(session, day):
            console.print(f"[green]Deleted {day}.[/green]")
        else:
            console.print(f"[yellow]No entry for {day}.[/yellow]")


@app.command()
def reindex(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Re-embed every entry."),  # noqa: FBT001, FBT003
) -> None:
    """Embed every entry whose content changed since it was last embedded."""
    with _unlocked(ctx) as (runtime, session):

        async def run() -> None:
            try:
                report = await runtime.embeddings.reindex(session, force=force)
            finally:
                await runtime.aclose()
            console.print(
                f"[green]Embedded {report.embedded}/{report.total} entries "
                f"in {report.duration:.1f}s.[/green]",
            )
            for date, error in report.errors.items():
                console.print(f"[red]  {date}: {error}[/red]")

        asyncio.run(run())


@app.command("search")
def search_command(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="What to look for."),
    days: int | None = typer.Option(None, help="Only the last N days."),
    top_k: int | None = typer.Option(None, "--top-k", help="Number of results."),
) -> None:
    """Semantic search over the journal."""
    with _unlocked(ctx) as (runtime, session):
        constraint = RelativeConstraint(days_ago=days) if days is not None else NoConstraint()

        async def run() -> None:
            try:
                vector = await runtime.embeddings.embed_query(query)
            finally:
                await runtime.aclose()
            hits = search(
                session,
                runtime.vault.index,
                vector,
                top_k or runtime.config.top_k,
                constraint,
            )
            if not hits:
                console.print("[yellow]No matching entries.[/yellow]")
                return
            table = Table()
            table.add_column("Date")
            table.add_column("Chunk", justify="right")
            table.add_column("Similarity", justify="right")
            for hit in hits:
                table.add_row(hit.date.isoformat(), str(hit.chunk_index), f"{hit.similarity:.3f}")
            console.print(table)

        asyncio.run(run())


@app.command()
def ask(
    ctx: typer.Context,
    question: str = typer.Argument(..., help="Question about your journal."),
) -> None:
    """Ask one question and stream the answer."""
    with _unlocked(ctx) as (runtime, session):

        async def run() -> None:
            try:
                async for delta in ask_once(
                    runtime.vault,
                    runtime.embeddings,
                    runtime.chat,
                    session,
                    question,
                    top_k=runtime.config.top_k,
                    reflector=RetrievalReflector(runtime.chat, window=runtime.config.reflection_window),
                ):
                    console.print(delta, end="", markup=False, highlight=False)
                console.print()
            finally:
                await runtime.aclose()

        asyncio.run(run())


@app.command()
def chat(ctx: typer.Context) -> None:
    """Interactive conversation with your journal."""
    with _unlocked(ctx) as (runtime, session):
        cfg = runtime.config
        conversation = Conversation(
            runtime.vault,
            runtime.embeddings,
            runtime.chat,
            session,
            reflector=RetrievalReflector(runtime.chat, window=cfg.reflection_window),
            top_k=cfg.top_k,
            max_turns=cfg.max_history_turns,
        )
        console.print("[dim]Type 'quit' or an empty line to leave.[/dim]")

        async def run() -> None:
            try:
                await run_chat(conversation, console)
            finally:
                await runtime.aclose()

        asyncio.run(run())


@app.command()
def reflect(
    ctx: typer.Context,
    date: str | None = typer.Argument(None, help="Entry date (YYYY-MM-DD), default today."),
) -> None:
    """Generate a short reflection on one entry."""
    day = _parse_date(date)
    with _unlocked(ctx) as (runtime, session):

        async def run() -> str | None:
            try:
                return await reflect_on_entry(runtime.vault, runtime.chat, session, day)
            finally:
                await runtime.aclose()

        text = asyncio.run(run())
        if text is None:
            console.print(f"[yellow]No entry for {day}.[/yellow]")
            return
        console.print(text, markup=False)


@app.command()
def summarize(
    ctx: typer.Context,
    date: str | None = typer.Argument(None, help="Any day in the period (YYYY-MM-DD), default today."),
    level: SummaryLevel = typer.Option(SummaryLevel.DAILY, "--level", "-l", help="Period to summarize."),
    force: bool = typer.Option(False, "--force", help="Regenerate even if the entries are unchanged."),  # noqa: FBT001, FBT003
) -> None:
    """Summarize a day, week or month of entries and store the summary encrypted."""
    day = _parse_date(date)
    with _unlocked(ctx) as (runtime, session):

        async def run() -> Summary | None:
            try:
                return await summarize_period(runtime.vault, runtime.chat, session, level, day, force=force)
            finally:
                await runtime.aclose()

        summary = asyncio.run(run())
        if summary is None:
            start, end = level.period(day)
            console.print(f"[yellow]No entries between {start} and {end}.[/yellow]")
            return
        console.print(f"[bold]{level.describe(summary.period)}[/bold]")
        console.print(summary.content, markup=False)


@app.command()
def summaries(
    ctx: typer.Context,
    level: SummaryLevel | None = typer.Option(None, "--level", "-l", help="Only this period length."),
) -> None:
    """Show stored summaries."""
    with _unlocked(ctx) as (runtime, session):
        stored = runtime.vault.list_summaries(session, level)
        if not stored:
            console.print("[yellow]No summaries yet; run `inkwell summarize`.[/yellow]")
            return
        for summary in stored:
            console.print(f"[bold]{summary.level.describe(summary.period)}[/bold] [dim]({summary.level})[/dim]")
            console.print(summary.content, markup=False)
            console.print()


@app.command()
def patterns(
    ctx: typer.Context,
    since: str | None = typer.Option(None, help="Only entries on or after this date."),
) -> None:
    """Show when and how often you write."""
    with _unlocked(ctx) as (runtime, session):
        date_range = (_parse_date(since), dt.date.max) if since else None
        found = detect_patterns(runtime.vault, session, date_range)
        if found.total_entries:
            console.print(
                f"[bold]{found.total_entries} entries[/bold] from {found.first_date} to {found.last_date}, "
                f"{found.avg_words:.0f} words on average",
            )
            table = Table()
            table.add_column("Day")
            table.add_column("Entries", justify="right")
            for name, count in found.day_distribution.items():
                table.add_row(name, str(count))
            console.print(table)
        for observation in found.observations:
            console.print(f"- {observation}")
