"""Command line entry point for running one analysis turn."""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path

import typer
from rich.console import Console

from drishti.bus import TurnUpdate
from drishti.config import get_settings
from drishti.errors import DrishtiError, StageFailureError
from drishti.logging_utils import configure_logging
from drishti.models import Turn, UserProfile, Verdict
from drishti.session import SessionController

app = typer.Typer(
    name="drishti",
    help="Staged label analysis with incremental results.",
    add_completion=False,
    rich_markup_mode="rich",
)

_VERDICT_STYLES: dict[Verdict, str] = {
    Verdict.SAFE: "bold green",
    Verdict.CAUTION: "bold yellow",
    Verdict.AVOID: "bold red",
}


@app.callback()
def main() -> None:
    """Staged label analysis with incremental results."""


def read_image(path: Path) -> str:
    """Read an image file as a base64 data URL."""
    suffix = path.suffix.lstrip(".").lower() or "octet-stream"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:image/{suffix};base64,{encoded}"


def _render_update(console: Console, update: TurnUpdate, seen: set[str]) -> None:
    if update.status and update.status not in seen:
        seen.add(update.status)
        console.print(f"[dim]{update.status}[/dim]")


def _render_turn(console: Console, turn: Turn) -> None:
    result = turn.result
    if result is None:
        return
    if result.extracted is not None:
        product = result.extracted
        console.print(f"[bold]Product:[/bold] {product.product_name or '?'} ({product.company_name or '?'})")
        console.print(f"[bold]Ingredients:[/bold] {', '.join(product.ingredients)}")
    if result.plan:
        console.print(f"[bold]Plan:[/bold] {result.plan}")
    if result.search_queries:
        console.print(f"[bold]Searches:[/bold] {'; '.join(result.search_queries)}")
    if result.verdict is not None:
        style = _VERDICT_STYLES[result.verdict]
        console.print(f"[{style}]{result.verdict}[/{style}]")
    if result.rationale:
        console.print(result.rationale)
    for suggestion in result.follow_ups or ():
        console.print(f"  -> {suggestion}")


async def _run_turn(
    query: str,
    image: str | None,
    profile: UserProfile,
    *,
    delay_scale: float | None,
    console: Console,
    as_json: bool,
) -> Turn:
    settings = get_settings() if delay_scale is None else get_settings(delay_scale=delay_scale)
    session = SessionController.from_settings(settings, profile=profile)
    seen: set[str] = set()
    if not as_json:
        session.subscribe(lambda update: _render_update(console, update, seen))
    return await session.submit(query, image)


@app.command()
def ask(
    query: str = typer.Argument("", help="Question about the product"),
    image: Path | None = typer.Option(None, "--image", "-i", exists=True, dir_okay=False, help="Label image"),  # noqa: B008
    allergy: list[str] = typer.Option([], "--allergy", "-a", help="Known allergy, repeatable"),  # noqa: B008
    condition: list[str] = typer.Option([], "--condition", "-c", help="Health condition, repeatable"),  # noqa: B008
    goal: list[str] = typer.Option([], "--goal", "-g", help="Dietary goal, repeatable"),  # noqa: B008
    fast: bool = typer.Option(False, "--fast", help="Skip simulated stage latency"),
    as_json: bool = typer.Option(False, "--json", help="Print the finished turn as JSON"),
) -> None:
    """Analyze one product and print the staged result."""

    settings = get_settings()
    configure_logging(profile="plain" if settings.log_format == "plain" else "default", level=settings.log_level)
    console = Console()
    profile = UserProfile(allergies=tuple(allergy), conditions=tuple(condition), goals=tuple(goal))
    payload = read_image(image) if image is not None else None

    try:
        turn = asyncio.run(
            _run_turn(
                query,
                payload,
                profile,
                delay_scale=0.0 if fast else None,
                console=console,
                as_json=as_json,
            )
        )
    except StageFailureError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        if not exc.retryable:
            console.print("[dim]The input could not be analyzed; try a different image.[/dim]")
        raise typer.Exit(1) from exc
    except DrishtiError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(2) from exc

    if as_json:
        typer.echo(json.dumps(turn.to_dict(), ensure_ascii=False, indent=2))
        return
    _render_turn(console, turn)
