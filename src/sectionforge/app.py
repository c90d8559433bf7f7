# /sectionforge/app.py
"""
Main application file for the SectionForge CLI.
Wires the stores, capabilities and session lifecycle together and drives
ingestion, outline browsing, section search and quizzes from a rich menu.
"""
import os
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path

# Rich UI Components
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

# Local module imports
from .capabilities import build_llm_capabilities
from .chunk_store import SectionChunkStore
from .config import DB_PATH, MAX_FILES_PER_BATCH, MAX_QUIZ_QUESTIONS, QUIZ_DIFFICULTIES, console
from .content_filter import SectionScopedRetriever
from .errors import InputValidationError, InsufficientContentError, StorageError
from .ingestion import DocumentIngestor
from .metrics import MetricsCollector
from .observability import get_logger
from .outline_store import OutlineStore
from .quiz_builder import QuizBuilder
from .quiz_ledger import QuizLedger
from .sessions import SessionLifecycleManager, SessionRegistry

logger = get_logger(__name__)


@dataclass
class Services:
    chunk_store: SectionChunkStore
    outline_store: OutlineStore
    ledger: QuizLedger
    registry: SessionRegistry
    lifecycle: SessionLifecycleManager
    ingestor: DocumentIngestor
    quiz_builder: QuizBuilder
    metrics: MetricsCollector

    def close(self):
        self.lifecycle.stop()
        for store in (self.chunk_store, self.outline_store, self.ledger, self.registry):
            store.close()


def build_services(db_path=DB_PATH, capabilities=None) -> Services:
    """Creates every store on one SQLite file and the services on top of them."""
    capabilities = capabilities or build_llm_capabilities()
    metrics = MetricsCollector()
    chunk_store = SectionChunkStore(db_path)
    outline_store = OutlineStore(db_path)
    ledger = QuizLedger(db_path)
    registry = SessionRegistry(db_path)
    lifecycle = SessionLifecycleManager(registry, chunk_store, outline_store, ledger, metrics=metrics)
    ingestor = DocumentIngestor(
        chunk_store,
        outline_store,
        capabilities.extractor,
        summarizer=capabilities.summarizer,
        lifecycle=lifecycle,
        metrics=metrics,
    )
    quiz_builder = QuizBuilder(
        chunk_store,
        outline_store,
        ledger,
        capabilities.question_generator,
        capabilities.topic_generator,
        capabilities.explainer,
    )
    return Services(chunk_store, outline_store, ledger, registry, lifecycle, ingestor, quiz_builder, metrics)


# --- UI & Formatting Functions ---

def display_welcome_banner(session_id: str):
    console.print(Panel(
        "[bold magenta]SectionForge - Sectioned Document Study CLI[/bold magenta]",
        subtitle="[cyan]Outlines, Section Search & Quizzes[/cyan]",
        expand=False
    ))
    console.print(f"[green]Session: {session_id}[/green]")


def _resolve_upload_path(raw_input: str) -> tuple[Path | None, str | None]:
    """Normalizes and validates a user-provided upload path."""
    cleaned = str(raw_input or "").strip().strip('"').strip("'")
    if not cleaned:
        return None, "Error: Empty path provided."
    try:
        resolved = Path(cleaned).expanduser().resolve(strict=True)
    except FileNotFoundError:
        return None, f"Error: File not found at '{cleaned}'"
    except OSError as exc:
        return None, f"Error: Invalid path '{cleaned}' ({exc})"
    if not resolved.is_file():
        return None, f"Error: Path is not a regular file: '{resolved}'"
    return resolved, None


def render_outline(services: Services, session_id: str):
    outline = services.outline_store.get_session_outline(session_id)
    if outline is None or not outline.unified_sections:
        console.print("[yellow]No outline yet. Upload a document first.[/yellow]")
        return None
    table = Table(title="Session Outline", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Section", style="cyan")
    table.add_column("Document", style="green")
    table.add_column("Page", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Also in", style="magenta")
    for position, section in enumerate(outline.unified_sections, start=1):
        indent = "  " * (section.level - 1)
        table.add_row(
            str(position),
            f"{indent}{section.title}",
            section.filename,
            "" if section.page_number is None else str(section.page_number),
            str(section.chunk_count),
            ", ".join(related.filename for related in section.related_sections),
        )
    console.print(table)
    return outline


def _choose_sections(services: Services, session_id: str) -> list[str]:
    outline = render_outline(services, session_id)
    if outline is None:
        return []
    raw = Prompt.ask("Section numbers (comma separated, blank for all)", default="")
    picked = []
    for token in raw.split(","):
        token = token.strip()
        if token.isdigit() and 1 <= int(token) <= len(outline.unified_sections):
            picked.extend(outline.unified_sections[int(token) - 1].member_ids())
    return picked


# --- Menu Handlers ---

def handle_document_upload(services: Services, session_id: str):
    raw_paths = Prompt.ask(f"Enter up to {MAX_FILES_PER_BATCH} PDF paths (comma separated)")
    paths = []
    for raw_path in raw_paths.split(","):
        path, error_message = _resolve_upload_path(raw_path)
        if path is None:
            console.print(f"[bold red]{error_message}[/bold red]")
            continue
        paths.append(path)
    if not paths:
        return
    try:
        with console.status("[bold cyan]Building outlines...[/bold cyan]", spinner="dots"):
            results = services.ingestor.ingest_files(session_id, paths)
    except InputValidationError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        return
    for result in results:
        if result.error:
            console.print(f"[bold red]FAILED {result.filename}: {result.error}[/bold red]")
            continue
        source = "fallback outline" if result.used_fallback else "extracted outline"
        console.print(
            f"[green]OK {result.filename}: {result.chunk_count} chunks, {len(result.sections)} sections ({source})[/green]"
        )


def handle_section_search(services: Services, session_id: str):
    section_ids = _choose_sections(services, session_id)
    query = Prompt.ask("[bold cyan]Search text[/bold cyan]")
    services.lifecycle.heartbeat(session_id)
    retriever = SectionScopedRetriever(
        chunk_store=services.chunk_store,
        session_id=session_id,
        section_ids=section_ids,
    )
    docs = retriever.invoke(query)
    if not docs:
        console.print("[yellow]No matching content.[/yellow]")
        return
    for doc in docs[:5]:
        metadata = doc.metadata or {}
        title = f"{metadata.get('section_title')} ({metadata.get('filename')}, chunk {metadata.get('chunk_index')})"
        console.print(Panel(doc.page_content.strip()[:800], title=title, border_style="yellow"))


def handle_quiz(services: Services, session_id: str):
    section_ids = _choose_sections(services, session_id)
    count = int(Prompt.ask("Number of questions", choices=[str(n) for n in range(1, MAX_QUIZ_QUESTIONS + 1)], default="5"))
    difficulty = Prompt.ask("Difficulty", choices=list(QUIZ_DIFFICULTIES), default="medium")
    services.lifecycle.heartbeat(session_id)
    try:
        with console.status("[bold cyan]Generating quiz...[/bold cyan]", spinner="dots"):
            with services.metrics.track("quiz", questions=count):
                result = services.quiz_builder.generate(session_id, section_ids, count, difficulty)
    except InsufficientContentError as exc:
        console.print(f"[bold red]{exc}. Upload more content or pick more sections.[/bold red]")
        return
    except StorageError as exc:
        console.print(f"[bold red]Storage unavailable, please try again: {exc}[/bold red]")
        return

    score = 0
    for number, question in enumerate(result.questions, start=1):
        body = "\n".join(f"{index + 1}. {option}" for index, option in enumerate(question.options))
        label = "from your document" if question.origin == "document" else "general knowledge"
        console.print(Panel(f"{question.question}\n\n{body}", title=f"Q{number} ({label})", border_style="blue"))
        answer = int(Prompt.ask("Your answer", choices=["1", "2", "3", "4"])) - 1
        if answer == question.correct_answer:
            score += 1
            console.print("[bold green]Correct![/bold green]")
        else:
            console.print(Panel(services.quiz_builder.explain_answer(question, answer), title="Explanation", border_style="red"))
    console.print(f"[bold magenta]Score: {score}/{len(result.questions)}[/bold magenta]")


def handle_session_status(services: Services, session_id: str):
    console.print(f"[cyan]Session {session_id}: {services.lifecycle.status(session_id)}[/cyan]")
    stats = services.lifecycle.sweep(dry_run=True)
    console.print(f"[dim]Sweep preview: {stats.sessions_cleaned} session(s) would be evicted.[/dim]")
    summary = services.metrics.get_summary()
    for name, values in summary["operations"].items():
        console.print(f"[dim][perf] {name}: n={values['count']} avg={values['avg_ms']} ms errors={values['errors']}[/dim]")


def main():
    """Main application loop."""
    session_id = os.getenv("SECTIONFORGE_SESSION_ID") or f"cli-{uuid.uuid4().hex[:8]}"
    display_welcome_banner(session_id)
    services = build_services()
    services.lifecycle.heartbeat(session_id)
    services.lifecycle.start()

    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Upload Document(s)[/green]")
                console.print("[cyan]2. Show Session Outline[/cyan]")
                console.print("[cyan]3. Search Sections[/cyan]")
                console.print("[blue]4. Take a Quiz[/blue]")
                console.print("[magenta]5. Session Status[/magenta]")
                console.print("[red]6. End Session & Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4", "5", "6"])

                if choice == "1":
                    handle_document_upload(services, session_id)
                elif choice == "2":
                    services.lifecycle.heartbeat(session_id)
                    render_outline(services, session_id)
                elif choice == "3":
                    handle_section_search(services, session_id)
                elif choice == "4":
                    handle_quiz(services, session_id)
                elif choice == "5":
                    handle_session_status(services, session_id)
                elif choice == "6":
                    services.lifecycle.teardown(session_id)
                    break
            except KeyboardInterrupt:
                break
    finally:
        services.close()

    console.print("\n[bold magenta]Goodbye! Hope you had a productive session.[/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
