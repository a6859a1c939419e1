"""
DocAssist - CLI Entry Point
----------------------------
Exposes Typer commands over the RAG pipeline with a local FAISS index.

Usage:
    python -m docassist.main ingest handbook.md --session demo
    python -m docassist.main chat --session demo                   # Interactive
    python -m docassist.main chat --session demo -q "..."          # Single-shot
    python -m docassist.main chat --session demo --source handbook.md
    python -m docassist.main chat --session demo --history chat.json
    python -m docassist.main end-session demo
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from docassist.config import Settings, load_settings
from docassist.exceptions import DocAssistError, GenerationError
from docassist.schemas import (
    AnswerEventType,
    ConversationTurn,
    MemoryState,
    QueryRequest,
    Role,
    TokenUsage,
)
from docassist.serving.pipeline import RAGPipeline
from docassist.utils.helpers import load_json, save_json
from docassist.utils.logger import setup_logger

app = typer.Typer(
    name="docassist",
    help="DocAssist - chat with your documents",
    add_completion=False,
)
console = Console()

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config YAML")


# --- Helpers ------------------------------------------------------------------

def _settings(config: Optional[str]) -> Settings:
    settings = load_settings(config)
    setup_logger(log_level=settings.logging.level, log_file=settings.logging.file)
    return settings


def _build_pipeline(settings: Settings) -> RAGPipeline:
    return RAGPipeline.from_settings(settings)


class ChatSession:
    """Turn history and memory for one terminal conversation."""

    def __init__(self, history_path: Optional[Path] = None) -> None:
        self.history_path = history_path
        self.turns: list[ConversationTurn] = []
        self.memory = MemoryState()
        self.usage = TokenUsage()
        if history_path is not None and history_path.exists():
            raw = load_json(history_path)
            self.turns = [ConversationTurn(**t) for t in raw.get("turns", [])]
            self.memory = MemoryState(**raw.get("memory", {}))
            logger.info(f"[CLI] Resumed {len(self.turns)} turns from {history_path}")

    def save(self) -> None:
        if self.history_path is None:
            return
        save_json(
            {
                "turns": [t.model_dump(mode="json") for t in self.turns],
                "memory": self.memory.model_dump(),
            },
            self.history_path,
        )


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    paths: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Documents to index"),
    session: str = typer.Option(..., "--session", "-s", help="Session namespace"),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Chunk, embed and index documents into a session namespace."""
    pipeline = _build_pipeline(_settings(config))
    asyncio.run(_ingest_async(pipeline, paths, session))


async def _ingest_async(pipeline: RAGPipeline, paths: list[Path], session: str) -> None:
    table = Table(
        "Document", "Parents", "Children", "Size",
        box=box.SIMPLE,
        header_style="bold dim",
    )
    failed = 0
    for path in paths:
        try:
            with console.status(f"[cyan]Indexing {path.name}...[/cyan]"):
                result = await pipeline.ingest(path.read_bytes(), path.name, session)
        except DocAssistError as exc:
            failed += 1
            console.print(f"[red]{path.name}: {exc}[/red]")
            continue
        table.add_row(
            result.source_name,
            str(result.parent_count),
            str(result.child_count),
            f"{result.file_size:,} B",
        )

    if table.row_count:
        console.print(table)
    info = pipeline.session_info(session)
    console.print(
        f"[dim]Session '{session}': {info['vectors']} chunks across "
        f"{len(info['documents'])} document(s)[/dim]"
    )
    if failed:
        raise typer.Exit(1)


@app.command()
def chat(
    session: str = typer.Option(..., "--session", "-s", help="Session namespace"),
    query: Optional[str] = typer.Option(
        None, "--query", "-q", help="Single query (omit for interactive loop)"
    ),
    sources: Optional[list[str]] = typer.Option(
        None, "--source", help="Restrict retrieval to these documents (repeatable)"
    ),
    history: Optional[Path] = typer.Option(
        None, "--history", help="JSON file to resume and save the conversation"
    ),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Ask questions about the documents of a session."""
    pipeline = _build_pipeline(_settings(config))
    chat_session = ChatSession(history)

    if query:
        ok = asyncio.run(_ask(pipeline, session, chat_session, query, sources))
        if not ok:
            raise typer.Exit(1)
        return

    asyncio.run(_chat_loop(pipeline, session, chat_session, sources))


async def _chat_loop(
    pipeline: RAGPipeline,
    session: str,
    chat_session: ChatSession,
    sources: Optional[list[str]],
) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold cyan]DocAssist[/bold cyan]\n[white]Session: {session}[/white]",
            box=box.DOUBLE_EDGE,
            expand=False,
        )
    )
    if chat_session.turns:
        console.print(f"[dim]Resumed conversation with {len(chat_session.turns)} turns.[/dim]")
    console.print("[dim]Type 'exit', 'quit', or press Ctrl+C to quit.[/dim]\n")

    while True:
        try:
            raw = console.input("[bold cyan]You[/bold cyan] > ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not raw:
            continue
        if raw.lower() in {"exit", "quit", "q"}:
            console.print("[dim]Goodbye.[/dim]")
            break

        await _ask(pipeline, session, chat_session, raw, sources)


async def _ask(
    pipeline: RAGPipeline,
    session: str,
    chat_session: ChatSession,
    question: str,
    sources: Optional[list[str]],
) -> bool:
    """Stream one answer; record the turn only when the answer completed."""
    turns = [*chat_session.turns, ConversationTurn(role=Role.USER, content=question)]
    request = QueryRequest(
        namespace=session,
        turns=turns,
        memory=chat_session.memory,
        sources=sources or None,
    )

    answer = ""
    usage: Optional[TokenUsage] = None
    memory = chat_session.memory
    console.print()
    try:
        with Live(console=console, refresh_per_second=12) as live:
            async for event in pipeline.stream_query(request):
                if event.type == AnswerEventType.TOKEN:
                    answer += event.text
                    live.update(_answer_panel(answer))
                elif event.type == AnswerEventType.USAGE:
                    usage = event.usage
                elif event.type == AnswerEventType.MEMORY and event.memory is not None:
                    memory = event.memory
    except GenerationError as exc:
        if exc.mid_stream:
            console.print("[yellow]Answer interrupted; it is incomplete.[/yellow]")
        console.print(f"[red]{exc}[/red]")
        return False
    except DocAssistError as exc:
        console.print(f"[red]{exc}[/red]")
        return False

    chat_session.turns = [*turns, ConversationTurn(role=Role.ASSISTANT, content=answer)]
    chat_session.memory = memory
    if usage is not None:
        chat_session.usage = chat_session.usage + usage
        _print_usage(usage, chat_session.usage, pipeline.generator.model)
    chat_session.save()
    return True


def _answer_panel(answer: str) -> Panel:
    return Panel(
        Markdown(answer),
        title="[bold green]Answer[/bold green]",
        border_style="green",
        expand=True,
    )


def _print_usage(usage: TokenUsage, session_usage: TokenUsage, model: str) -> None:
    console.print(
        f"[dim]"
        f"tokens={usage.prompt_tokens}+{usage.completion_tokens}  "
        f"cost=${usage.estimated_cost_usd(model):.5f}  |  "
        f"session tokens={session_usage.total_tokens:,}  "
        f"cost=${session_usage.estimated_cost_usd(model):.5f}"
        f"[/dim]\n"
    )


@app.command("end-session")
def end_session(
    session: str = typer.Argument(..., help="Session namespace to delete"),
    config: Optional[str] = CONFIG_OPTION,
) -> None:
    """Delete every indexed vector of a session."""
    pipeline = _build_pipeline(_settings(config))
    asyncio.run(pipeline.end_session(session))
    console.print(f"[green][OK] Session '{session}' deleted[/green]")


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
