"""CLI commands for PracticeOS."""

import asyncio
import uuid
from datetime import date, timedelta
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from practice_os.config import get_settings

app = typer.Typer(
    name="practice-os",
    help="Multi-practitioner appointment scheduling",
    add_completion=False,
)
console = Console()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting PracticeOS API server on {host}:{port}")
    uvicorn.run(
        "practice_os.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def init_db():
    """Create the scheduling tables (development databases)."""
    from practice_os.core.database import dispose_engine, init_db as create_tables

    async def _run():
        try:
            await create_tables()
        finally:
            await dispose_engine()

    asyncio.run(_run())
    console.print("[green]Database schema created[/green]")


@app.command()
def availability(
    practitioner_ids: List[str] = typer.Argument(..., help="Practitioner UUIDs"),
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First date (YYYY-MM-DD), default today"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show"),
    mode: str = typer.Option("in-person", "--mode", "-m", help="in-person, virtual or hybrid"),
    location: Optional[str] = typer.Option(None, "--location", "-l", help="Location UUID"),
):
    """Print open slots for one or more practitioners."""
    from practice_os.core.database import dispose_engine, get_session_factory
    from practice_os.scheduling import (
        AppointmentMode,
        AvailabilityResolver,
        DateRange,
        SchedulingError,
        TenantContext,
    )
    from practice_os.scheduling.stores import SqlAppointmentStore, SqlAvailabilityRuleStore

    settings = get_settings()

    try:
        ids = [uuid.UUID(p) for p in practitioner_ids]
        location_id = uuid.UUID(location) if location else None
        first = date.fromisoformat(start) if start else date.today()
        mode_enum = AppointmentMode(mode)
    except ValueError as e:
        console.print(f"[red]Invalid argument: {e}[/red]")
        raise typer.Exit(1)

    date_range = DateRange(start=first, end=first + timedelta(days=max(days, 1) - 1))
    tenant = TenantContext(
        timezone=settings.tenant_timezone,
        session_minutes=settings.appointment_session_duration,
    )

    async def _run():
        factory = get_session_factory()
        resolver = AvailabilityResolver(
            SqlAvailabilityRuleStore(factory),
            SqlAppointmentStore(factory),
            max_range_days=settings.max_availability_range_days,
        )
        try:
            return await resolver.resolve(ids, location_id, mode_enum, date_range, tenant)
        finally:
            await dispose_engine()

    try:
        snapshot = asyncio.run(_run())
    except SchedulingError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    for pid in ids:
        slots = snapshot.slots.get(pid, [])
        table = Table(title=f"Practitioner {pid} ({len(slots)} open slots, {snapshot.timezone})")
        table.add_column("Date")
        table.add_column("Day")
        table.add_column("Start")
        table.add_column("End")
        for slot in slots:
            table.add_row(
                slot.date.isoformat(),
                slot.date.strftime("%a"),
                slot.start_time.strftime("%H:%M"),
                slot.end_time.strftime("%H:%M"),
            )
        console.print(table)

    if snapshot.existing_appointments:
        console.print(f"\n{len(snapshot.existing_appointments)} existing appointment(s) in range")


@app.command()
def stats(
    log_type: str = typer.Argument("bookings", help="availability, bookings or integrations"),
):
    """Show scheduling telemetry statistics."""
    from practice_os.observability import get_observability_logger

    obs = get_observability_logger()
    summary = obs.get_stats(log_type)

    if summary["total"] == 0:
        console.print(f"[yellow]No {log_type} events recorded.[/yellow]")
        return

    table = Table(title=f"{log_type.capitalize()} events")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total", str(summary["total"]))
    table.add_row("Errors", str(summary["errors"]))
    table.add_row("Error rate", f"{summary['error_rate']:.0%}")
    table.add_row("Avg duration", f"{summary['avg_duration_ms']:.0f}ms")
    console.print(table)


@app.command()
def version():
    """Show version information."""
    from practice_os import __version__

    console.print(f"PracticeOS v{__version__}")
