"""CLI interface for PostLab."""

import asyncio
import base64
import mimetypes
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.table import Table

from postlab.api.config import Settings
from postlab.api.dependencies import get_settings
from postlab.api.database import Database
from postlab.api.exceptions import PostLabError, QuotaExceededError
from postlab.api.history import get_stat
from postlab.api.identity import resolve_identity
from postlab.api.services import AnalysisService, validate_post
from postlab.api.usage import DAILY_LIMIT, PREMIUM_LIMIT, UsageLedger
from postlab.llm.openrouter_client import build_provider
from postlab.models.schemas import ImageData, Session, SessionUser

app = typer.Typer(help="PostLab - simulate engagement for a draft post")
console = Console()


def _open_database(settings: Settings) -> Database:
    database = Database(settings.database_url)
    database.create_all()
    return database


def _load_image(path: Path) -> ImageData:
    mime_type, _ = mimetypes.guess_type(path.name)
    if not mime_type or not mime_type.startswith("image/"):
        raise typer.BadParameter(f"Not an image file: {path}")
    return ImageData(base64=base64.b64encode(path.read_bytes()).decode("ascii"), mime_type=mime_type)


@app.command()
def simulate(
    text: str = typer.Argument(..., help="Post text to analyze"),
    anonymous_id: Optional[str] = typer.Option(
        None, "--anonymous-id", "-a", help="Anonymous id to bill the analysis to"
    ),
    user_id: Optional[str] = typer.Option(
        None, "--user-id", "-u", help="Signed-in user id to bill the analysis to"
    ),
    image: Optional[Path] = typer.Option(
        None, "--image", "-i", exists=True, dir_okay=False, help="Image attached to the post"
    ),
    raw: bool = typer.Option(False, "--json", help="Print the raw JSON result"),
):
    """
    Analyze a post and show predicted engagement.
    """
    settings = get_settings()
    try:
        validate_post(text)
    except PostLabError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    database = _open_database(settings)
    provider = build_provider(settings)
    if provider is None:
        console.print("[red]Error: OPENROUTER_API_KEY environment variable not set[/red]")
        raise typer.Exit(1)

    service = AnalysisService(database, UsageLedger(database), provider)
    session = Session(user=SessionUser(id=user_id)) if user_id else None
    image_data = _load_image(image) if image else None

    async def _run():
        try:
            run = await service.prepare(
                text, session=session, anonymous_id=anonymous_id, image=image_data
            )
            payload = await service.simulate(run)
        finally:
            await provider.aclose()
        service.record_side_effects(run)
        return payload

    console.print("[cyan]Simulating engagement...[/cyan]")
    try:
        payload = asyncio.run(_run())
    except QuotaExceededError as e:
        console.print(f"[yellow]{e} Resets at {e.reset_at:%Y-%m-%d %H:%M} UTC.[/yellow]")
        raise typer.Exit(2)
    except PostLabError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if raw:
        console.print(JSON.from_data(payload))
        return

    if "error" in payload:
        console.print("[red]The model returned an unreadable analysis. No quota was used.[/red]")
        raise typer.Exit(1)

    table = Table(title="Predicted engagement")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for key in ("likes", "retweets", "replies", "quotes", "views"):
        table.add_row(key.capitalize(), str(payload[f"predicted_{key}"]))
    table.add_row("Outlook", payload["engagement_outlook"])
    console.print(table)
    console.print(Panel(payload["engagement_justification"], title="Verdict", border_style="cyan"))

    for point in payload["analysis"]:
        console.print(f"  • {point}")

    for variant in payload["suggestions"]:
        reactions = "\n".join(f"  - {r}" for r in variant["audience_reactions"])
        console.print(
            Panel(
                f"{variant['tweet']}\n\n[dim]{variant['reason']}[/dim]\n{reactions}",
                title=variant["version"],
                border_style="green",
            )
        )

    tier = payload["_tierInfo"]
    console.print(
        f"\n[dim]{'Premium' if tier['isPremiumTier'] else 'Lite'} model · "
        f"{payload['_usage']['remaining']} analyses left today[/dim]"
    )


@app.command()
def usage(
    identifier: str = typer.Argument(..., help="User id or anonymous id"),
    anonymous: bool = typer.Option(
        False, "--anonymous", help="Treat the identifier as an anonymous id"
    ),
):
    """
    Show today's usage for an identity.
    """
    database = _open_database(get_settings())
    identity = (
        resolve_identity(anonymous_id=identifier)
        if anonymous
        else resolve_identity(user_id=identifier)
    )
    stats = UsageLedger(database).stats(identity)

    table = Table(title=f"Usage for {identifier}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Used", f"{stats['used']} / {stats['limit']}")
    table.add_row("Remaining", str(stats["remaining"]))
    table.add_row("Premium remaining", f"{stats['premiumRemaining']} / {PREMIUM_LIMIT}")
    table.add_row("Resets at", stats["resetAt"])
    console.print(table)


@app.command()
def stats():
    """
    Show the global simulation counter.
    """
    database = _open_database(get_settings())
    console.print(f"[green]Total simulations:[/green] {get_stat(database)}")


@app.command()
def check():
    """
    Check configuration and dependencies.
    """
    console.print("[cyan]Checking configuration...[/cyan]\n")
    settings = get_settings()

    if settings.openrouter_api_key:
        console.print("[green]✓[/green] OPENROUTER_API_KEY is set")
    else:
        console.print("[red]✗[/red] OPENROUTER_API_KEY is not set")

    console.print(f"[green]✓[/green] Premium model: {settings.premium_model}")
    console.print(f"[green]✓[/green] Lite model: {settings.lite_model}")
    console.print(
        f"[green]✓[/green] Daily limit: {DAILY_LIMIT} analyses, first {PREMIUM_LIMIT} on premium"
    )

    try:
        database = _open_database(settings)
        get_stat(database)
        console.print(f"[green]✓[/green] Database reachable: {database.engine.url!r}")
    except Exception as e:
        console.print(f"[red]✗[/red] Database not reachable at {settings.database_url}: {e}")
        raise typer.Exit(1)


@app.command("init-db")
def init_db(
    reset: bool = typer.Option(False, "--reset", help="Drop existing tables first"),
):
    """
    Create the database tables.
    """
    settings = get_settings()
    if reset:
        database = Database(settings.database_url)
        database.drop_all()
        database.dispose()
        console.print("[yellow]Existing tables dropped[/yellow]")
    _open_database(settings)
    console.print(f"[green]Tables ready at {settings.database_url}[/green]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    dev: bool = typer.Option(
        False, "--dev", help="Accept requests from any origin (local development)"
    ),
):
    """
    Start the API server.
    """
    # Read when the app module is imported, so it must be set first
    if dev:
        os.environ.setdefault("ALLOW_ALL_ORIGINS", "true")

    from postlab.api.main import run_server

    console.print(f"[cyan]Starting API server at http://{host}:{port}[/cyan]")
    console.print("[yellow]Press Ctrl+C to stop[/yellow]")
    run_server(host=host, port=port)


if __name__ == "__main__":
    app()
