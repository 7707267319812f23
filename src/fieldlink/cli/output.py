"""Shared output helpers for the fieldlink CLI. Plain functions, no state."""

import json

import click

KEY_WIDTH = 16


def print_json(data) -> None:
    """Print JSON data formatted."""
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def print_error(message: str) -> None:
    """Print error message in red."""
    click.echo(click.style(f"Error: {message}", fg="red"))


def print_success(message: str) -> None:
    """Print success message in green."""
    click.echo(click.style(message, fg="green"))


def short(value: str | None, width: int = KEY_WIDTH) -> str:
    """Shorten long ids and dual-hash keys for tables."""
    if value is None:
        return "-"
    return value if len(value) <= width else value[:width - 1] + "…"


def table(headers: list[str], rows: list[list]) -> None:
    """Print a boxed table; cells are str()-ed and left aligned."""
    cells = [[str(c) for c in row] + [""] * (len(headers) - len(row)) for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row[:len(headers)]):
            widths[i] = max(widths[i], len(cell))

    def line(values):
        return "│ " + " │ ".join(v.ljust(widths[i]) for i, v in enumerate(values)) + " │"

    header = line(headers)
    click.echo("╭" + "─" * (len(header) - 2) + "╮")
    click.echo(header)
    click.echo("├" + "┼".join("─" * (w + 2) for w in widths) + "┤")
    for row in cells:
        click.echo(line(row[:len(headers)]))
    click.echo("╰" + "─" * (len(header) - 2) + "╯")
