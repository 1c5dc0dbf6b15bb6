"""CLI formatters — console, confidence and tables."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    return Console(no_color=no_color)


def confidence_text(confidence: float) -> Text:
    """Percentage coloured by band: green >= 0.7, yellow >= 0.4, red below."""
    if confidence >= 0.7:
        style = "green"
    elif confidence >= 0.4:
        style = "yellow"
    else:
        style = "red"
    return Text(f"{confidence * 100:.1f}%", style=style)


def format_duration_ms(milliseconds: float) -> str:
    if milliseconds < 1000:
        return f"{milliseconds:.0f}ms"
    seconds = milliseconds / 1000.0
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m{int(seconds % 60):02d}s"


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table
