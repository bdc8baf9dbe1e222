"""Concierge CLI: inspect sources, route and ask queries, run a chat session."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from concierge.config import get_settings
from concierge.errors import CatalogueError
from concierge.models import DataSourceCatalogue

console = Console()

CHAT_HELP = (
    "Type a question and press Enter.\n"
    "[bold]/mic[/] listen for a spoken question, "
    "[bold]/stop[/] stop listening and speaking, "
    "[bold]/clear[/] forget the conversation, "
    "[bold]/quit[/] exit."
)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Concierge: voice and text front end for a talking avatar."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_catalogue() -> DataSourceCatalogue:
    from concierge.rag.sources import load_catalogue

    try:
        return load_catalogue()
    except CatalogueError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        sys.exit(1)


# ======================================================================
# SOURCES: list configured retrieval sources
# ======================================================================
@main.command()
def sources() -> None:
    """List the configured retrieval sources."""
    catalogue = _load_catalogue()

    table = Table(title="Retrieval Sources", show_lines=True)
    table.add_column("#", width=3)
    table.add_column("Name", max_width=30)
    table.add_column("Index", max_width=30)
    table.add_column("Description", max_width=60)
    table.add_column("Keywords", max_width=40)

    for i, entry in enumerate(catalogue.sources):
        table.add_row(
            str(i),
            entry.name,
            entry.data_source.parameters.index_name,
            entry.description,
            ", ".join(entry.keywords),
        )
    console.print(table)


# ======================================================================
# ROUTE: show which source a query is routed to
# ======================================================================
@main.command()
@click.argument("question")
def route(question: str) -> None:
    """Show which retrieval source QUESTION would be answered from."""
    from concierge.rag.router import DataSourceRouter

    catalogue = _load_catalogue()

    async def _route() -> int:
        router = DataSourceRouter(catalogue.descriptors)
        try:
            return await router.select(question)
        finally:
            await router.aclose()

    index = asyncio.run(_route())
    console.print(f"[bold cyan]{index}[/] {catalogue[index].name}")


# ======================================================================
# ASK: answer a single query
# ======================================================================
@main.command()
@click.argument("question")
def ask(question: str) -> None:
    """Answer QUESTION once and print the result."""
    from concierge.rag.pipeline import AnswerPipeline
    from concierge.store import ConversationStore

    catalogue = _load_catalogue()
    store = ConversationStore(history_limit=get_settings().history_limit)

    async def _ask() -> None:
        pipeline = AnswerPipeline(store, catalogue)
        try:
            await pipeline.handle_query(question)
        finally:
            await pipeline.aclose()

    with console.status("[bold cyan]Thinking..."):
        asyncio.run(_ask())
    _display_answer(store.state.recognised_text)


def _display_answer(text: str) -> None:
    console.print()
    console.print(Panel(
        Markdown(text),
        title="[bold cyan]Answer[/]",
        border_style="cyan",
    ))


# ======================================================================
# CHAT: interactive session with optional voice and avatar
# ======================================================================
@main.command()
@click.option("--voice/--no-voice", default=True, help="Enable microphone input")
@click.option("--avatar/--no-avatar", default=True, help="Enable the talking avatar")
def chat(voice: bool, avatar: bool) -> None:
    """Interactive conversation."""
    settings = get_settings()
    if (voice or avatar) and not settings.speech_available:
        console.print("[yellow]AZURE_SPEECH_KEY/REGION not set, voice and avatar disabled.[/]")
        voice = avatar = False

    catalogue = _load_catalogue()
    console.print(Panel(CHAT_HELP, title="Concierge"))
    asyncio.run(_chat_loop(catalogue, voice, avatar))


async def _chat_loop(catalogue: DataSourceCatalogue, voice: bool, avatar: bool) -> None:
    from concierge.interface.session import ConversationSession
    from concierge.rag.pipeline import THINKING_TEXT

    session = ConversationSession(catalogue=catalogue, voice=voice, avatar=avatar)

    def _on_change(old, new) -> None:  # type: ignore[no-untyped-def]
        if new.recognised_text != old.recognised_text and new.recognised_text:
            if new.recognised_text == THINKING_TEXT:
                console.print(f"[dim]{THINKING_TEXT}[/]")
            else:
                _display_answer(new.recognised_text)
        if new.is_listening != old.is_listening:
            console.print("[dim]Listening...[/]" if new.is_listening else "[dim]Stopped listening.[/]")

    session.store.subscribe(_on_change)
    loop = asyncio.get_running_loop()
    query_task: asyncio.Task | None = None

    async with session:
        while True:
            try:
                line = await loop.run_in_executor(
                    None, console.input, "\n[bold cyan]You>[/] "
                )
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                break
            if line == "/mic":
                if not session.start_listening():
                    console.print("[yellow]Voice input is not available.[/]")
                continue
            if line == "/stop":
                session.stop()
                continue
            if line == "/clear":
                session.clear_history()
                console.print("[dim]Conversation cleared.[/]")
                continue
            if line.startswith("/"):
                console.print(f"[yellow]Unknown command {line}[/]")
                continue

            if query_task is not None and not query_task.done():
                console.print("[yellow]Still answering the previous question.[/]")
                continue
            query_task = asyncio.ensure_future(session.submit_text(line))

        if query_task is not None and not query_task.done():
            session.stop()
            await asyncio.gather(query_task, return_exceptions=True)


if __name__ == "__main__":
    main()
