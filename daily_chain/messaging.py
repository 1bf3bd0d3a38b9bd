"""Console output for the CLI, rendered with Rich.

Text is escaped before printing so paths or command output containing
square brackets are not parsed as Rich markup.
"""

from typing import Dict, Iterable, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

_console: Optional[Console] = None

LEVEL_STYLES = {
    "error": "bold red",
    "warning": "yellow",
    "success": "green",
    "info": "white",
}

STATUS_STYLES = {
    "healthy": "green",
    "warning": "yellow",
    "problem": "bold red",
    "success": "green",
    "failure": "red",
}


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Optional[Console]) -> None:
    """Swap the output console (tests record output this way)."""
    global _console
    _console = console


def _emit(level: str, text: str) -> None:
    get_console().print(escape(str(text)), style=LEVEL_STYLES[level])


def emit_info(text: str) -> None:
    _emit("info", text)


def emit_success(text: str) -> None:
    _emit("success", text)


def emit_warning(text: str) -> None:
    _emit("warning", text)


def emit_error(text: str) -> None:
    _emit("error", text)


def styled_status(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{escape(value)}[/{style}]"


def emit_status_panel(title: str, fields: Dict[str, str]) -> None:
    """Render a panel of key/value rows."""
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Key", style="bold cyan")
    table.add_column("Value")

    for key, value in fields.items():
        table.add_row(key, value)

    panel = Panel(table, title=f"[bold]{escape(title)}[/bold]", border_style="blue")
    get_console().print(panel)


def emit_table(columns: List[str], rows: Iterable[List[str]]) -> None:
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*row)
    get_console().print(table)
