import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

BOOK_FIELDS: List[Tuple[str, str]] = [
    ("id", "ID"), ("title", "Title"), ("author", "Author"), ("isbn", "ISBN"),
    ("category", "Category"), ("available_copies", "Available"), ("total_copies", "Total"),
]
MEMBER_FIELDS: List[Tuple[str, str]] = [
    ("id", "ID"), ("name", "Name"), ("email", "Email"), ("phone", "Phone"), ("is_active", "Active"),
]
LOAN_FIELDS: List[Tuple[str, str]] = [
    ("id", "ID"), ("book_id", "Book"), ("member_id", "Member"), ("loan_date", "Loaned"),
    ("due_date", "Due"), ("return_date", "Returned"), ("renewal_count", "Renewals"), ("status", "Status"),
]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def print_records(records: Sequence[Dict[str, Any]], fields: List[Tuple[str, str]], title: str,
                  empty_message: str) -> None:
    """Print a list of record dicts according to the current output mode.
    - plain: one 'key=value' line per record, or the empty message
    - json: JSON array
    - rich: Rich table
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(list(records), ensure_ascii=False, default=str))
        return
    if not records:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in fields:
            table.add_column(header)
        for record in records:
            table.add_row(*[_cell(record.get(key)) for key, _ in fields])
        _console.print(table)
    else:
        for record in records:
            print("  ".join(f"{header}: {_cell(record.get(key))}" for key, header in fields))


def print_record(record: Dict[str, Any], title: str) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {_cell(value)}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {_cell(value)}")


def print_stats_result(stats: Dict[str, Any], title: str = "Statistics") -> None:
    """Print statistics according to the current output mode."""
    if not stats:
        print("No statistics available.")
        return
    print_record(stats, title)
