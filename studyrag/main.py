"""
StudyRAG - CLI Entry Point
---------------------------
Typer commands over the same StudyPipeline the API server uses, backed by a
local FAISS index and JSON-file credit ledger / team store.

Usage:
    python -m studyrag.main ingest notes.txt --user alice
    python -m studyrag.main ask "What is osmosis?" --user alice
    python -m studyrag.main flashcards --source notes.txt --count 12 --user alice
    python -m studyrag.main balance --user alice
    python -m studyrag.main grant --user alice --amount 100
    python -m studyrag.main delete-source notes.txt
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from studyrag.billing.ledger import InMemoryCreditLedger
from studyrag.billing.teams import InMemoryTeamKeyStore
from studyrag.config import Settings
from studyrag.embedding.faiss_index import FAISSIndex
from studyrag.errors import StudyRAGError, UpstreamProviderError
from studyrag.schemas import Provider
from studyrag.serving.pipeline import StudyPipeline
from studyrag.serving.schemas import AskRequest, FlashcardRequest, IngestRequest
from studyrag.utils.logger import setup_logger

app = typer.Typer(
    name="studyrag",
    help="StudyRAG - ask questions and build flashcards from your documents",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

class _Workspace:
    """Settings plus the locally persisted stores a command works against."""

    def __init__(self, config: Optional[str]) -> None:
        self.settings = Settings.from_env(config)
        setup_logger(self.settings.log_level, self.settings.log_file)
        self.index = FAISSIndex.load(
            Path(self.settings.index_dir), dimensions=self.settings.embedding_dimensions
        )
        self.ledger = InMemoryCreditLedger.load(self.settings.ledger_path)
        self.teams = InMemoryTeamKeyStore.load(self.settings.teams_path)
        self.pipeline = StudyPipeline(self.settings, self.index, self.ledger, self.teams)

    def persist(self) -> None:
        self.index.save(Path(self.settings.index_dir))
        self.ledger.save()


def _fail(exc: StudyRAGError) -> None:
    console.print(f"[red]Error ({exc.status_code}):[/red] {exc.message}")
    raise typer.Exit(1)


_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Optional YAML settings override")


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plain-text document"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id billed in credits mode"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Your own OpenAI key (BYOK)"),
    pages: Optional[int] = typer.Option(None, "--pages", min=1, help="Page count, if known"),
    name: Optional[str] = typer.Option(None, "--name", help="Source name (defaults to the file name)"),
    retries: int = typer.Option(1, "--retries", min=1, help="Attempts on upstream failure"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """
    Chunk, embed and index a document.

    \b
    Re-ingesting the same source overwrites its vectors, so retrying a
    failed ingestion is safe.
    """
    ws = _Workspace(config)
    request = IngestRequest(
        text=path.read_text(encoding="utf-8", errors="replace"),
        filename=name or path.name,
        user_id=user,
        api_key=api_key,
        page_count=pages,
    )

    try:
        for attempt in Retrying(
            stop=stop_after_attempt(retries),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(UpstreamProviderError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"[CLI] Retrying ingestion (attempt {attempt.retry_state.attempt_number}/{retries})")
                with console.status(f"[cyan]Ingesting {request.filename}...[/cyan]"):
                    result = ws.pipeline.ingest(request)
    except StudyRAGError as exc:
        _fail(exc)

    ws.persist()
    console.print(
        f"[green][OK] {result.filename}[/green] | {result.chunks} chunks | "
        f"{result.page_count} page(s) | {result.embedding_tokens} tokens | "
        f"key={result.key_source.value}"
    )
    if result.remaining_balance is not None:
        console.print(f"[dim]{result.credits_used} credits used, {result.remaining_balance} remaining[/dim]")
    if result.warning:
        console.print(f"[yellow]{result.warning}[/yellow]")


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about your documents"),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Your own provider key (BYOK)"),
    provider: Provider = typer.Option(Provider.OPENAI, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    source: Optional[list[str]] = typer.Option(None, "--source", "-s", help="Restrict to these sources"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Answer a question from the indexed documents, citing sources."""
    ws = _Workspace(config)
    try:
        with console.status("[cyan]Thinking...[/cyan]"):
            result = ws.pipeline.ask(
                AskRequest(
                    question=question,
                    user_id=user,
                    api_key=api_key,
                    provider=provider,
                    model=model,
                    source_filenames=source or None,
                )
            )
    except StudyRAGError as exc:
        _fail(exc)
    ws.ledger.save()

    if json_out:
        console.print_json(json.dumps(result.model_dump(mode="json", by_alias=True)))
        return

    console.print()
    console.print(
        Panel(
            Markdown(result.answer),
            title="[bold green]Answer[/bold green]",
            border_style="green" if not result.no_results else "yellow",
            expand=True,
        )
    )
    if result.sources:
        table = Table("No.", "Source", "Relevance", box=box.SIMPLE, header_style="bold dim")
        for src in result.sources:
            table.add_row(str(src.number), src.source[:60], f"{src.relevance}%")
        console.print(table)
    _print_footer(result.key_source.value, result.tokens_used, result.remaining_balance)


@app.command()
def flashcards(
    source: list[str] = typer.Option(..., "--source", "-s", help="Source(s) to study"),
    count: int = typer.Option(10, "--count", "-n", min=1),
    user: Optional[str] = typer.Option(None, "--user", "-u"),
    api_key: Optional[str] = typer.Option(None, "--api-key"),
    provider: Provider = typer.Option(Provider.OPENAI, "--provider", "-p"),
    model: Optional[str] = typer.Option(None, "--model", "-m"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Generate flashcards from one or more indexed sources."""
    ws = _Workspace(config)
    try:
        with console.status("[cyan]Writing flashcards...[/cyan]"):
            result = ws.pipeline.flashcards(
                FlashcardRequest(
                    source_filenames=source,
                    count=count,
                    user_id=user,
                    api_key=api_key,
                    provider=provider,
                    model=model,
                )
            )
    except StudyRAGError as exc:
        _fail(exc)
    ws.ledger.save()

    if json_out:
        console.print_json(json.dumps(result.model_dump(mode="json", by_alias=True)))
        return

    if result.message:
        console.print(f"[yellow]{result.message}[/yellow]")
        return

    for name, cards in result.flashcards_by_source.items():
        table = Table("Front", "Back", title=name, box=box.ROUNDED, show_lines=True)
        for card in cards:
            table.add_row(card.front, card.back)
        console.print(table)
    _print_footer(result.key_source.value, result.tokens_used, result.remaining_balance)


@app.command()
def balance(
    user: str = typer.Option(..., "--user", "-u"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show a user's credit balance and recent transactions."""
    ws = _Workspace(config)
    console.print(f"\n  Balance : [green]{ws.ledger.get_balance(user)}[/green] credits\n")

    history = ws.ledger.transactions(user, limit=10)
    if history:
        table = Table("When", "Amount", "Balance", "Description", box=box.SIMPLE, header_style="bold dim")
        for tx in history:
            colour = "green" if tx.amount > 0 else "red"
            table.add_row(
                tx.created_at.strftime("%Y-%m-%d %H:%M"),
                f"[{colour}]{tx.amount:+d}[/{colour}]",
                str(tx.balance_after),
                tx.description or (tx.action or ""),
            )
        console.print(table)


@app.command()
def grant(
    user: str = typer.Option(..., "--user", "-u"),
    amount: int = typer.Option(..., "--amount", "-a", min=1),
    reason: str = typer.Option("manual grant", "--reason"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Add credits to a user's balance."""
    ws = _Workspace(config)
    new_balance = ws.ledger.add(user, amount, reason)
    ws.ledger.save()
    console.print(f"[green][OK][/green] {user} now has {new_balance} credits")


@app.command("delete-source")
def delete_source(
    filename: str = typer.Argument(..., help="Source name as it was ingested"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Remove every chunk of a source from the index."""
    ws = _Workspace(config)
    try:
        removed = ws.pipeline.delete_source(filename)
    except StudyRAGError as exc:
        _fail(exc)
    ws.index.save(Path(ws.settings.index_dir))
    if removed:
        console.print(f"[green][OK][/green] Deleted {removed} chunk(s) from {filename}")
    else:
        console.print(f"[yellow]No chunks found for {filename}[/yellow]")


def _print_footer(key_source: str, tokens: int, remaining: Optional[int]) -> None:
    balance_part = f"  |  balance={remaining}" if remaining is not None else ""
    console.print(f"[dim]key={key_source}  tokens={tokens}{balance_part}[/dim]\n")


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
