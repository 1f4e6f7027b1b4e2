"""Console output for the files-watch CLI."""

import json
import sys
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .utils import format_size


class OutputFormatter:
    """Formats command output as text, tables or JSON.

    Messages go to stderr so that ``--json`` output on stdout stays
    machine-readable. ``quiet`` suppresses everything except errors and
    requested data.
    """

    def __init__(
        self,
        json_output: bool = False,
        quiet: bool = False,
        console: Optional[Console] = None,
        err_console: Optional[Console] = None,
    ):
        self.json_output = json_output
        self.quiet = quiet
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)

    def info(self, message: str) -> None:
        if self.quiet or self.json_output:
            return
        self.err_console.print(message, markup=False, soft_wrap=True)

    def success(self, message: str) -> None:
        if self.quiet or self.json_output:
            return
        self.err_console.print(
            f"[green]✓[/green] {escape(message)}", soft_wrap=True
        )

    def warning(self, message: str) -> None:
        if self.quiet:
            return
        self.err_console.print(
            f"[yellow]Warning:[/yellow] {escape(message)}", soft_wrap=True
        )

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {escape(message)}", soft_wrap=True)

    def print(self, message: str = "") -> None:
        """Print plain text to stdout (suppressed in JSON mode)."""
        if self.json_output:
            return
        self.console.print(message, markup=False)

    def output_json(self, data: Any) -> None:
        """Print data as JSON to stdout."""
        sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")
        sys.stdout.flush()

    def output_table(
        self,
        rows: list[dict[str, Any]],
        columns: list[str],
        headers: Optional[dict[str, str]] = None,
        title: Optional[str] = None,
    ) -> None:
        """Print rows as a table, or as JSON in JSON mode.

        Args:
            rows: One dict per row
            columns: Keys to show, in order
            headers: Column titles (defaults to the keys)
            title: Optional table title
        """
        if self.json_output:
            self.output_json([{c: row.get(c) for c in columns} for row in rows])
            return

        headers = headers or {}
        table = Table(title=title, show_edge=False, header_style="bold")
        for column in columns:
            table.add_column(headers.get(column, column))
        for row in rows:
            cells = ("" if row.get(c) is None else str(row.get(c)) for c in columns)
            table.add_row(*(escape(cell) for cell in cells))
        self.console.print(table)

    def format_size(self, size_bytes: int) -> str:
        return format_size(size_bytes)
