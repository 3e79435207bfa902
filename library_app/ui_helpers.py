import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.table import Table

# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRARY_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_records(title: str, columns: Sequence[Column], rows: List[Dict[str, Any]], empty_message: str) -> None:
    """Print rows in the current output mode.

    - plain: one line per row, values joined with `` | ``
    - json: JSON array of objects keyed by column key
    - rich: Rich table
    """
    if not rows:
        print(empty_message)
        return

    mode = get_output_mode()
    if mode == "json":
        payload = [{key: row.get(key) for key, _ in columns} for row in rows]
        print(json.dumps(payload, ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, label in columns:
            table.add_column(label)
        for row in rows:
            table.add_row(*[_cell(row.get(key)) for key, _ in columns])
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(_cell(row.get(key)) for key, _ in columns))


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)
