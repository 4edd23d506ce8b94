"""
Main CLI application using Typer.
"""

from pathlib import Path
from typing import Annotated, Optional

import pendulum
import typer
from pendulum import DateTime
from rich.console import Console
from rich.table import Table

from ..adapters.json_store import JsonAppointmentStore
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import SchedulingError
from ..domain.models import AppointmentStatus, DomainEvent
from ..log import configure_logging
from ..services.scheduling import SchedulingService

app = typer.Typer(
    name="slotkeeper",
    help="Query availability and manage appointments",
    add_completion=False,
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./slotkeeper.yaml"),
]


class ConsoleEventSink:
    """Prints every domain event produced by a command."""

    def __init__(self, console: Console):
        self.console = console

    def publish(self, event: DomainEvent) -> None:
        previous = event.previous_status.value if event.previous_status else "-"
        self.console.print(
            f"[dim]event[/dim] [bold magenta]{event.type.value}[/bold magenta] "
            f"{event.appointment_id} ({previous} -> {event.new_status.value})"
        )


def _load(config_file: Optional[Path]) -> tuple[AppConfig, SchedulingService]:
    """Load the configuration and build a service backed by the JSON data file."""
    config = AppConfig.load_from_yaml(config_file or get_default_config_path())
    configure_logging(config.log_level)

    policy = config.policy
    service = SchedulingService(
        config.build_availability(),
        JsonAppointmentStore(config.data_file, lock_timeout=policy.lock_timeout_seconds),
        max_range_days=policy.max_range_days,
        cancellation_window=policy.cancellation_window(),
        auto_confirm=policy.auto_confirm,
        pending_expiry=policy.pending_expiry(),
        lock_timeout=policy.lock_timeout_seconds,
        sinks=[ConsoleEventSink(console)],
    )
    return config, service


def _fail(error: Exception) -> typer.Exit:
    if isinstance(error, SchedulingError):
        console.print(f"[bold red]{error.code}:[/bold red] {error}")
    else:
        console.print(f"[bold red]Error:[/bold red] {error}")
    return typer.Exit(1)


def _parse_datetime(value: str, tz: str) -> DateTime:
    try:
        return pendulum.from_format(value, "YYYY-MM-DD HH:mm", tz=tz)
    except ValueError as e:
        console.print(f"[red]Cannot parse '{value}', expected YYYY-MM-DD HH:mm: {e}[/red]")
        raise typer.Exit(1)


def _slot_end(service: SchedulingService, professional_id: str, start: DateTime) -> DateTime:
    """End of a slot starting at ``start``, sized by the template in effect."""
    templates = service.availability.templates_for(professional_id)
    if not templates:
        console.print(f"[red]No availability configured for '{professional_id}'.[/red]")
        raise typer.Exit(1)
    template = service.rule_engine.sizing_template(templates, start.date())
    return start.add(minutes=template.slot_minutes)


def _determine_time_range(
    *,
    tz: str,
    this_week: bool,
    next_week: bool,
    start_option: Optional[str],
    end_option: Optional[str],
):
    """
    Resolve the desired time window based on shortcut flags or explicit dates.
    Returns (start_date, end_date).
    """
    if this_week and next_week:
        console.print("[red]Error: --this-week and --next-week cannot be combined.[/red]")
        raise typer.Exit(1)

    now = pendulum.now(tz)

    if this_week:
        return now, now.end_of("week")

    if next_week:
        next_monday = now.next(pendulum.MONDAY).start_of("day")
        return next_monday, next_monday.add(days=7)

    try:
        if start_option:
            start_date = pendulum.from_format(start_option, "YYYY-MM-DD", tz=tz).start_of("day")
        else:
            start_date = now.start_of("day")

        if end_option:
            end_date = pendulum.from_format(end_option, "YYYY-MM-DD", tz=tz).add(days=1).start_of("day")
        else:
            end_date = start_date.add(days=7)
    except ValueError as e:
        console.print(f"[red]Cannot parse date, expected YYYY-MM-DD: {e}[/red]")
        raise typer.Exit(1)

    return start_date, end_date


@app.command()
def slots(
    professional: Annotated[str, typer.Argument(help="Professional ID")],
    config_file: ConfigOption = None,
    start: Annotated[Optional[str], typer.Option("--start", help="Start date (YYYY-MM-DD)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Last date, inclusive (YYYY-MM-DD)")] = None,
    tz: Annotated[Optional[str], typer.Option("--tz", help="Timezone for the output")] = None,
    this_week: Annotated[bool, typer.Option("--this-week", help="From now until the end of this week.")] = False,
    next_week: Annotated[bool, typer.Option("--next-week", help="Monday to Sunday of next week.")] = False,
):
    """
    Show free slots of a professional.

    Examples:

        slotkeeper slots dr-ana --next-week

        slotkeeper slots dr-ana --start 2024-06-10 --end 2024-06-14 --tz Europe/Berlin
    """
    try:
        config, service = _load(config_file)
        output_tz = tz or config.timezone

        window_start, window_end = _determine_time_range(
            tz=output_tz,
            this_week=this_week,
            next_week=next_week,
            start_option=start,
            end_option=end,
        )

        free = service.available_slots(professional, window_start, window_end, timezone=output_tz)

        console.print()
        if not free:
            console.print(
                "[yellow]⚠ No free slots found.[/yellow]\n"
                "Try a longer period or another professional."
            )
        else:
            console.print(f"[bold green]✓ {len(free)} free slot(s):[/bold green]\n")
            for slot in free:
                console.print(f"  {slot.format_display()}")
        console.print()

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def book(
    professional: Annotated[str, typer.Argument(help="Professional ID")],
    patient: Annotated[str, typer.Argument(help="Patient ID")],
    start: Annotated[str, typer.Argument(help="Slot start (YYYY-MM-DD HH:mm)")],
    config_file: ConfigOption = None,
    token: Annotated[Optional[str], typer.Option("--token", help="Idempotency token for safe retries")] = None,
):
    """
    Reserve a slot for a patient.
    """
    try:
        config, service = _load(config_file)
        slot_start = _parse_datetime(start, config.timezone)
        slot_end = _slot_end(service, professional, slot_start)

        result = service.reserve(professional, patient, slot_start, slot_end, idempotency_token=token)

        console.print(
            f"[green]✓ Appointment {result.appointment_id}[/green] "
            f"status={result.status.value} version={result.version}"
        )

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def transition(
    appointment_id: Annotated[str, typer.Argument(help="Appointment ID")],
    status: Annotated[AppointmentStatus, typer.Argument(help="Target status", case_sensitive=False)],
    version: Annotated[int, typer.Option("--version", "-v", help="Version you last saw")],
    config_file: ConfigOption = None,
    reason: Annotated[Optional[str], typer.Option("--reason", help="Reason stored with cancellations")] = None,
):
    """
    Confirm, cancel, complete or mark an appointment as no-show.
    """
    try:
        _, service = _load(config_file)
        result = service.transition(appointment_id, version, status, reason=reason)
        console.print(
            f"[green]✓ Appointment {result.appointment_id}[/green] "
            f"status={result.status.value} version={result.version}"
        )

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def reschedule(
    appointment_id: Annotated[str, typer.Argument(help="Appointment ID")],
    start: Annotated[str, typer.Argument(help="New slot start (YYYY-MM-DD HH:mm)")],
    version: Annotated[int, typer.Option("--version", "-v", help="Version you last saw")],
    config_file: ConfigOption = None,
    token: Annotated[Optional[str], typer.Option("--token", help="Idempotency token for safe retries")] = None,
):
    """
    Cancel an appointment and book a new slot for the same patient.
    """
    try:
        config, service = _load(config_file)
        current = service.get_appointment(appointment_id)
        slot_start = _parse_datetime(start, config.timezone)
        slot_end = _slot_end(service, current.professional_id, slot_start)

        result = service.reschedule(appointment_id, version, slot_start, slot_end, idempotency_token=token)
        console.print(
            f"[green]✓ Rescheduled to {result.appointment_id}[/green] "
            f"status={result.status.value} version={result.version}"
        )

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def appointments(
    professional: Annotated[str, typer.Argument(help="Professional ID")],
    config_file: ConfigOption = None,
):
    """
    List a professional's appointments, including cancelled ones.
    """
    try:
        config, service = _load(config_file)
        booked = service.appointments_for(professional)

        if not booked:
            console.print("[yellow]No appointments recorded.[/yellow]")
            return

        table = Table(
            title=f"Appointments of {professional}",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("ID", style="dim")
        table.add_column("Patient", style="bold yellow")
        table.add_column("When")
        table.add_column("Status")
        table.add_column("Version", justify="right")

        for appointment in booked:
            table.add_row(
                appointment.appointment_id,
                str(appointment.patient_id),
                str(appointment.time_range.in_timezone(config.timezone)),
                appointment.status.value,
                str(appointment.version),
            )

        console.print()
        console.print(table)
        console.print()

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def expire(
    config_file: ConfigOption = None,
):
    """
    Cancel PENDING appointments that were not confirmed in time.
    """
    try:
        _, service = _load(config_file)
        expired = service.expire_pending()
        console.print(f"[green]✓ {len(expired)} unconfirmed appointment(s) expired.[/green]")

    except (SchedulingError, FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def professionals(
    config_file: ConfigOption = None,
):
    """
    List all configured professionals.
    """
    try:
        config = AppConfig.load_from_yaml(config_file or get_default_config_path())

        if not config.professionals:
            console.print("[yellow]No professionals defined in the config file.[/yellow]")
            return

        table = Table(
            title="Configured professionals",
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("ID", style="bold yellow")
        table.add_column("Name")
        table.add_column("Templates", justify="right")
        table.add_column("Exceptions", justify="right")

        for professional in config.professionals:
            table.add_row(
                professional.id,
                professional.display_name(),
                str(len(professional.templates)),
                str(len(professional.exceptions)),
            )

        console.print()
        console.print(table)
        console.print()

    except (FileNotFoundError, ValueError) as e:
        raise _fail(e)


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotkeeper[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
