"""
Rich console configuration for the fleet event export tool.

Provides terminal output with progress spinners, panels, and styled logging.
"""

import logging
from typing import Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.theme import Theme

# Theme used for all tool output
FLEET_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "highlight": "bold magenta",
    "muted": "dim",
    "account": "bold blue",
    "device": "bold cyan",
    "gps": "green",
})

# Console for status output; stderr keeps stdout free for exported documents
console = Console(theme=FLEET_THEME, stderr=True)


def setup_rich_logging(verbose: bool = False) -> None:
    """
    Configure logging to use the Rich handler.

    Args:
        verbose: Enable DEBUG level logging with full details
    """
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=console,
                show_time=verbose,
                show_path=verbose,
                rich_tracebacks=True,
                tracebacks_show_locals=verbose,
                markup=False,
            )
        ],
        force=True,  # Override any existing configuration
    )


def create_scan_progress() -> Progress:
    """
    Create a spinner for cursor scans, where the event count is unknown up front.

    Returns:
        Configured Progress instance for enrichment scans
    """
    return Progress(
        SpinnerColumn("dots"),
        TextColumn("[cyan]{task.description}"),
        MofNCompleteColumn(),
        TextColumn("[dim]{task.fields[status]}[/]"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


def print_config_summary(
    command: str,
    account_id: str,
    devices: Iterable[str],
    output: Optional[str] = None,
    export_format: Optional[str] = None,
    date_range: Optional[str] = None,
    update: Optional[bool] = None,
) -> None:
    """
    Print a styled configuration summary panel.

    Args:
        command: Operation being run (events, geozone, geocode)
        account_id: Account being processed
        devices: Device ids selected
        output: Output sink name (events only)
        export_format: Output format token (events only)
        date_range: Human-readable range or count
        update: Update mode for enrichment; None for export
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value", style="bold")

    device_list = list(devices)
    table.add_row("Command", f"[highlight]{command}[/]")
    table.add_row("Account", f"[account]{account_id}[/]")
    table.add_row("Devices", f"[device]{', '.join(device_list) or '-'}[/]")
    if date_range:
        table.add_row("Range", date_range)
    if export_format:
        table.add_row("Format", export_format)
    if output:
        table.add_row("Output", f"[green]{output}[/]")
    if update is not None:
        table.add_row("Mode", "[warning]update[/]" if update else "report only")

    panel = Panel(
        table,
        title="[bold]Configuration[/]",
        border_style="cyan",
        padding=(1, 2),
    )
    console.print(panel)


def print_phase(phase_num: int, total_phases: int, description: str) -> None:
    """
    Print a phase header for multi-step processing.

    Args:
        phase_num: Current phase number (1-indexed)
        total_phases: Total number of phases
        description: Description of this phase
    """
    console.print(
        f"\n[bold cyan]Step {phase_num}/{total_phases}:[/] [bold]{description}[/]"
    )


def print_completion_summary(title: str, rows: Iterable[tuple]) -> None:
    """
    Print a styled completion summary.

    Args:
        title: Panel title
        rows: (metric, value) pairs to display
    """
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold green")

    for metric, value in rows:
        is_count = isinstance(value, int) and not isinstance(value, bool)
        table.add_row(str(metric), f"{value:,}" if is_count else str(value))

    panel = Panel(
        table,
        title=f"[bold green]{title}[/]",
        border_style="green",
        padding=(1, 2),
    )
    console.print()
    console.print(panel)


def print_error(message: str, hint: Optional[str] = None) -> None:
    """
    Print a styled error message.

    Args:
        message: Error message
        hint: Optional hint for resolution
    """
    console.print(f"\n[error]Error:[/] {message}", markup=True, highlight=False)
    if hint:
        console.print(f"[muted]Hint: {hint}[/]")
