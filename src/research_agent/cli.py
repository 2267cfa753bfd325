"""CLI for the Research Agent."""

import asyncio
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from .interaction import DeckStatus, SectionInteractionHub
from .openai_service import DEFAULT_MODEL, RESEARCH_MODEL, OpenAIGenerationService
from .plan_merge import merge_plan_suggestion
from .plan_model import Plan
from .prompts import DEFAULT_LANGUAGE
from .segmenter import segment_report
from .service import GenerationFailure
from .workflow import InvalidTransition, WorkflowController, WorkflowState

app = typer.Typer(
    name="research-agent",
    help="Research Agent CLI for planning, running and studying research reports.",
    no_args_is_help=True,
)
console = Console()

PLAN_HELP = (
    "[dim]Commands: t N | t N.M (toggle) · a TITLE (add section) · p N TEXT (add point) · "
    "d N | d N.M (delete) · m INSTRUCTION (modify) · r (run) · q (quit)[/dim]"
)
REPORT_HELP = (
    "[dim]Commands: s (sections) · v N (view) · c N (chat) · f N (flashcards) · "
    "e N INSTRUCTION (refine) · w FILE (save report) · x (new query) · q (quit)[/dim]"
)


class OutputFormat(str, Enum):
    table = "table"
    json = "json"


def _build_service(model: str, research_model: str, language: str) -> OpenAIGenerationService:
    return OpenAIGenerationService(model=model, research_model=research_model, language=language)


def _make_progress_callback(status_obj=None):
    """Create a progress callback that updates console or status spinner."""
    def callback(message: str) -> None:
        if status_obj:
            status_obj.update(f"[bold blue]{message}[/bold blue]")
        else:
            console.print(f"[dim]→ {message}[/dim]")
    return callback


def _print_cost(service) -> None:
    usage = getattr(service, "usage", None)
    if usage is not None:
        console.print(f"\n[dim]Cost: ${usage.cost_usd:.4f}[/dim]")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _render_plan(plan: Plan) -> Table:
    table = Table(title=plan.title, caption=plan.objective)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("On", justify="center")
    table.add_column("Section / Point")

    for i, section in enumerate(plan.sections, 1):
        mark = "[green]✓[/green]" if section.is_enabled else "[red]✗[/red]"
        table.add_row(str(i), mark, f"[bold]{section.title}[/bold]")
        for j, point in enumerate(section.points, 1):
            point_mark = "[green]✓[/green]" if point.is_enabled else "[red]✗[/red]"
            table.add_row(f"{i}.{j}", point_mark, f"  {point.content}")
    return table


def _parse_ref(plan: Plan, ref: str) -> tuple[str, str | None]:
    """Resolve '2' or '2.3' to (section_id, point_id)."""
    section_part, _, point_part = ref.partition(".")
    section = plan.sections[_index(section_part, len(plan.sections))]
    if not point_part:
        return section.id, None
    return section.id, section.points[_index(point_part, len(section.points))].id


def _index(number: str, size: int) -> int:
    idx = int(number) - 1
    if not 0 <= idx < size:
        raise IndexError(f"No item numbered {number}")
    return idx


@app.command("plan")
def plan(
    query: str = typer.Option(..., "--query", "-q", help="Research topic"),
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model for plan generation"),
    language: str = typer.Option(DEFAULT_LANGUAGE, "--language", "-l", help="Output language"),
    format: OutputFormat = typer.Option(OutputFormat.table, "--format", "-f", help="Output format"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Generate a research plan for a query and print it."""
    load_dotenv()
    _configure_logging(verbose)

    if not query.strip():
        console.print("[red]Error:[/red] Query must not be empty")
        raise typer.Exit(1)

    service = _build_service(model, RESEARCH_MODEL, language)
    try:
        with console.status("[bold blue]Generating research plan...[/bold blue]"):
            suggestion = asyncio.run(service.generate_plan(query.strip()))
            result = merge_plan_suggestion(suggestion)
    except GenerationFailure as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if format == OutputFormat.json:
        console.print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False), soft_wrap=True, markup=False)
    else:
        console.print(_render_plan(result))
        _print_cost(service)


@app.command("segment")
def segment(
    report: Path = typer.Option(..., "--report", "-r", help="Path to a markdown report"),
    format: OutputFormat = typer.Option(OutputFormat.table, "--format", "-f", help="Output format"),
) -> None:
    """Show how a report splits into addressable sections."""
    if not report.exists():
        console.print(f"[red]Error:[/red] Report file not found: {report}")
        raise typer.Exit(1)

    sections = segment_report(report.read_text(encoding="utf-8"))

    if format == OutputFormat.json:
        output = [{"id": s.id, "title": s.title, "content": s.content} for s in sections]
        console.print(json.dumps(output, indent=2, ensure_ascii=False), soft_wrap=True, markup=False)
        return

    if not sections:
        console.print("[dim]No sections found[/dim]")
        return

    table = Table(title=f"Sections in {report}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Characters", justify="right")
    table.add_column("Preview", max_width=50, overflow="ellipsis", style="dim")

    for section in sections:
        preview = section.content.replace("\n", " ")
        table.add_row(
            section.id,
            section.title,
            str(len(section.content)),
            preview[:80] + "..." if len(preview) > 80 else preview or "-",
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(sections)} sections[/dim]")


@app.command("session")
def session(
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Research topic"),
    model: str = typer.Option(DEFAULT_MODEL, "--model", "-m", help="Model for plans and section tools"),
    research_model: str = typer.Option(RESEARCH_MODEL, "--research-model", help="Model for research"),
    language: str = typer.Option(DEFAULT_LANGUAGE, "--language", "-l", help="Output language"),
    image: bool = typer.Option(True, "--image/--no-image", help="Generate a cover image"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run an interactive research session: plan, review, research, study."""
    load_dotenv()
    _configure_logging(verbose)

    service = _build_service(model, research_model, language)
    controller = WorkflowController(
        service,
        on_progress=_make_progress_callback(),
        generate_image=image,
    )
    asyncio.run(_run_session(controller, query))
    _print_cost(service)


async def _run_session(controller: WorkflowController, query: str | None) -> None:
    while True:
        if controller.state == WorkflowState.IDLE:
            if not query:
                query = typer.prompt(
                    "What do you want to research? (blank to quit)",
                    default="",
                    show_default=False,
                )
            if not query.strip():
                return
            try:
                await controller.submit_query(query)
            except GenerationFailure:
                console.print(f"[red]Error:[/red] {controller.error}")
            query = None
        elif controller.state == WorkflowState.REVIEWING_PLAN:
            if not await _review_plan(controller):
                return
        elif controller.state == WorkflowState.COMPLETED:
            if not await _study_report(controller):
                return
            controller.reset()
        else:
            return


async def _review_plan(controller: WorkflowController) -> bool:
    """Plan edit loop. Returns False when the user quits."""
    console.print(_render_plan(controller.plan))
    console.print(PLAN_HELP)

    while controller.state == WorkflowState.REVIEWING_PLAN:
        command = typer.prompt("plan", default="", show_default=False).strip()
        if not command:
            continue
        verb, _, arg = command.partition(" ")
        arg = arg.strip()
        plan = controller.plan

        try:
            if verb == "q":
                return False
            elif verb == "t":
                section_id, point_id = _parse_ref(plan, arg)
                if point_id:
                    controller.toggle_point(section_id, point_id)
                else:
                    controller.toggle_section(section_id)
            elif verb == "a":
                controller.add_section(arg)
            elif verb == "p":
                ref, _, content = arg.partition(" ")
                section_id, _ = _parse_ref(plan, ref)
                controller.add_point(section_id, content)
            elif verb == "d":
                section_id, point_id = _parse_ref(plan, arg)
                if point_id:
                    controller.delete_point(section_id, point_id)
                else:
                    confirmed = typer.confirm("Delete this section?", default=False)
                    controller.delete_section(section_id, confirmed=confirmed)
            elif verb == "m":
                await controller.request_modification(arg)
            elif verb == "r":
                report = await controller.confirm_and_run()
                if report is not None:
                    return True
            else:
                console.print(PLAN_HELP)
                continue
        except (ValueError, IndexError) as e:
            console.print(f"[red]Error:[/red] {e}")
            continue
        except GenerationFailure:
            console.print(f"[red]Error:[/red] {controller.error}")
        except InvalidTransition as e:
            console.print(f"[red]Error:[/red] {e}")
            return False

        if controller.state == WorkflowState.REVIEWING_PLAN:
            console.print(_render_plan(controller.plan))
    return True


def _render_sections(hub: SectionInteractionHub) -> Table:
    table = Table(title="Report sections")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Title")
    table.add_column("Characters", justify="right")
    for i, section in enumerate(hub.sections, 1):
        table.add_row(str(i), section.title, str(len(section.content)))
    return table


async def _study_report(controller: WorkflowController) -> bool:
    """Per-section interaction loop. Returns False when the user quits."""
    report = controller.report
    hub = controller.interactions
    summary = (
        f"{report.word_count} characters · {len(report.sources)} sources · "
        f"{report.time_elapsed_seconds}s"
    )
    if report.cover_image:
        summary += " · cover image ready"
    console.print(Panel(summary, title=report.title))
    for source in report.sources:
        console.print(f"[dim]- {source.title}: {source.uri}[/dim]")
    console.print(_render_sections(hub))
    console.print(REPORT_HELP)

    while True:
        command = typer.prompt("report", default="", show_default=False).strip()
        if not command:
            continue
        verb, _, arg = command.partition(" ")
        arg = arg.strip()

        if verb == "q":
            return False
        if verb == "x":
            return True
        if verb == "s":
            console.print(_render_sections(hub))
            continue
        if verb == "w":
            _save_report(hub, arg)
            continue

        ref, _, rest = arg.partition(" ")
        try:
            sections = hub.sections
            section = sections[_index(ref, len(sections))]
        except (ValueError, IndexError):
            console.print(REPORT_HELP)
            continue

        if verb == "v":
            console.print(Markdown(f"## {section.title}\n\n{section.content}"))
        elif verb == "c":
            await _chat(hub, section.id)
        elif verb == "f":
            await _flashcards(hub, section.id)
        elif verb == "e":
            try:
                updated = await hub.refine_section(section.id, rest)
            except ValueError as e:
                console.print(f"[red]Error:[/red] {e}")
            except GenerationFailure as e:
                console.print(f"[red]Refine failed:[/red] {e}")
            else:
                if updated is not None:
                    console.print(Markdown(f"## {updated.title}\n\n{updated.content}"))
        else:
            console.print(REPORT_HELP)


def _save_report(hub: SectionInteractionHub, path: str) -> None:
    if not path:
        console.print("[red]Error:[/red] Give a file to save the report to")
        return
    target = Path(path)
    try:
        target.write_text(hub.render_markdown(), encoding="utf-8")
    except OSError as e:
        console.print(f"[red]Error:[/red] Could not save report: {e}")
        return
    console.print(f"[green]✓[/green] Report saved to {target}")


async def _chat(hub: SectionInteractionHub, section_id: str) -> None:
    hub.start_chat(section_id)
    console.print("[dim]Ask about this section (blank line to stop)[/dim]")
    while True:
        text = typer.prompt("you", default="", show_default=False)
        if not text.strip():
            return
        reply = await hub.send_message(section_id, text)
        if reply is not None:
            console.print(Markdown(reply.content))


async def _flashcards(hub: SectionInteractionHub, section_id: str) -> None:
    with console.status("[bold blue]Generating flashcards...[/bold blue]"):
        deck = await hub.generate_flashcards(section_id)
    if deck is None:
        return
    if deck.status == DeckStatus.FAILED:
        console.print(f"[red]Flashcards failed:[/red] {deck.error}")
        return
    if not deck.cards:
        console.print("[dim]No flashcards for this section[/dim]")
        return

    while True:
        card = deck.current
        side = card.back if deck.flipped else card.front
        label = "Back" if deck.flipped else "Front"
        console.print(Panel(side, title=f"{label} · {deck.cursor + 1}/{deck.count}"))
        command = typer.prompt("n/p/f/q", default="q", show_default=False).strip()
        if command == "n":
            deck.next()
        elif command == "p":
            deck.previous()
        elif command == "f":
            deck.flip()
        else:
            return
