"""Receipt ledger commands."""
import click

from fieldlink.core.ledger import ALERT_TYPES

from .context import home_of, ledger
from .output import print_json, short, table


@click.group()
def receipts():
    """Receipts recorded in the ledger."""
    pass


def _detail(receipt: dict) -> str:
    for field in ("request_id", "evicted_request_id", "version_id", "key", "session_id", "operation"):
        if receipt.get(field):
            return f"{field}={short(str(receipt[field]))}"
    return ""


def _reason(receipt: dict) -> str:
    return short(receipt.get("reason") or receipt.get("error"), 40)


def _show(found: list[dict], as_json: bool, empty: str) -> None:
    if as_json:
        print_json(found)
        return
    if not found:
        click.echo(empty)
        return
    table(
        ["ts", "type", "detail", "reason"],
        [[r.get("ts", "-"), r.get("receipt_type", "?"), _detail(r), _reason(r)] for r in found],
    )


@receipts.command('list')
@click.option('--type', 'receipt_types', multiple=True, help='Only this receipt type (repeatable)')
@click.option('--since', default=None, help='Only receipts at or after this ISO-8601 UTC time')
@click.option('--limit', '-n', default=20, help='Number of receipts to show')
@click.option('--json', 'as_json', is_flag=True, help='Print raw receipts')
@click.pass_context
def list_receipts(ctx: click.Context, receipt_types: tuple, since: str | None, limit: int, as_json: bool):
    """Show the most recent receipts."""
    found = ledger(home_of(ctx)).tail(limit=limit, receipt_types=receipt_types or None, since=since)
    _show(found, as_json, "No receipts recorded")


@receipts.command()
@click.option('--since', default=None, help='Only receipts at or after this ISO-8601 UTC time')
@click.option('--limit', '-n', default=20, help='Number of alerts to show')
@click.option('--json', 'as_json', is_flag=True, help='Print raw receipts')
@click.pass_context
def alerts(ctx: click.Context, since: str | None, limit: int, as_json: bool):
    """Dead letters, overflow warnings, rollbacks and failed updates."""
    found = ledger(home_of(ctx)).alerts(limit=limit, since=since)
    _show(found, as_json, "No alerts")


@receipts.command()
@click.pass_context
def summary(ctx: click.Context):
    """Receipt count per type, alerts flagged."""
    counts = ledger(home_of(ctx)).counts()
    print_json({
        "total": sum(counts.values()),
        "by_type": counts,
        "alerts": sum(n for t, n in counts.items() if t in ALERT_TYPES),
    })
