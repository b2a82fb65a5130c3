"""CLI commands for the dental booking engine."""

import asyncio
from datetime import date, datetime

import typer
from rich.console import Console
from rich.table import Table

from dental_booking.config import get_settings
from dental_booking.core.database import get_session_factory, init_db
from dental_booking.scheduling.availability import AvailabilityResolver
from dental_booking.scheduling.errors import BookingError

app = typer.Typer(
    name="dental-booking",
    help="Appointment scheduling and constraint validation for dental clinics",
    add_completion=False,
)
console = Console()


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        console.print(f"[red]Invalid date: {value}. Use YYYY-MM-DD[/red]")
        raise typer.Exit(1)


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: int = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting dental booking API server on {host}:{port}")
    uvicorn.run(
        "dental_booking.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command("init-db")
def init_database():
    """Create database tables."""
    asyncio.run(init_db())
    console.print("[green]Database initialized[/green]")


@app.command()
def version():
    """Show version information."""
    from dental_booking import __version__

    console.print(f"Dental Booking v{__version__}")


async def _find_slots(day: date, doctor_code: str, duration: int):
    async with get_session_factory()() as session:
        return await AvailabilityResolver(session).resolve_slots(day, doctor_code, duration)


@app.command()
def slots(
    doctor_code: str = typer.Argument(..., help="Doctor employee code"),
    day: str = typer.Option(..., "--date", "-d", help="Date (YYYY-MM-DD)"),
    duration: int = typer.Option(30, "--duration", "-m", help="Required minutes"),
):
    """Show free slots for a doctor on a date."""
    target = _parse_date(day)
    try:
        result = asyncio.run(_find_slots(target, doctor_code, duration))
    except BookingError as e:
        console.print(f"[red]{e.rule_code}: {e.message}[/red]")
        raise typer.Exit(1)

    if not result.slots:
        console.print(f"[yellow]{result.message or 'No free slots'}[/yellow]")
        return

    table = Table(title=f"Free slots for {doctor_code} on {target.isoformat()} ({duration} min)")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Minutes", justify="right")
    table.add_column("Suggested")
    for slot in result.slots:
        table.add_row(
            slot.start_time.strftime("%H:%M"),
            slot.end_time.strftime("%H:%M"),
            str(slot.duration_minutes),
            "[green]yes[/green]" if slot.suggested else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
