"""Rich console output for the hlsforge CLI"""

from typing import TYPE_CHECKING, Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .exceptions import ConversionCancelled

if TYPE_CHECKING:
    from .scheduler import ConversionOutcome

console = Console()

# symbol, symbol style, message style
STATUS_STYLES = {
    "check": ("✓ ", "bold green", "bold"),
    "warning": ("⚠ ", "bold yellow", "bold"),
    "error": ("✗ ", "bold red", "bold"),
    "success": ("✓ ", "green", "green"),
}


def print_status(kind: str, message: str) -> None:
    symbol, symbol_style, message_style = STATUS_STYLES[kind]
    console.print(Text(symbol, style=symbol_style) + Text(message, style=message_style))


def print_check(message: str) -> None:
    print_status("check", message)


def print_warning(message: str) -> None:
    print_status("warning", message)


def print_error(message: str) -> None:
    print_status("error", message)


def print_success(message: str) -> None:
    print_status("success", message)


def print_header(title: str, width: int = 80) -> None:
    """Print a title framed by rules."""
    separator = Text("=" * width, style="bold blue")
    console.print(separator)
    console.print(title.center(width).rstrip(), style="bold blue")
    console.print(separator)


def build_summary_table(outcomes: Iterable["ConversionOutcome"]) -> Table:
    """One row per conversion: source, result and playlist or error."""
    table = Table(title="HLS conversions")
    table.add_column("Source")
    table.add_column("Result")
    table.add_column("Playlist / error", overflow="fold")
    for outcome in outcomes:
        if outcome.success:
            table.add_row(outcome.job.input_path, Text("converted", style="green"), outcome.playlist_path)
        elif isinstance(outcome.error, ConversionCancelled):
            table.add_row(outcome.job.input_path, Text("cancelled", style="yellow"), str(outcome.error))
        else:
            table.add_row(outcome.job.input_path, Text("failed", style="bold red"), str(outcome.error))
    return table


def print_summary(outcomes: Iterable["ConversionOutcome"]) -> None:
    console.print(build_summary_table(outcomes))
