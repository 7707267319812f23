"""Sync queue commands."""
import sys
from collections import Counter

import click

from .context import home_of, offline_engine
from .output import print_error, print_json, print_success, short, table


@click.group()
def queue():
    """Durable outbound request queue."""
    pass


@queue.command()
@click.pass_context
def status(ctx: click.Context):
    """Show queue and dead-letter counts."""
    with offline_engine(home_of(ctx)) as engine:
        pending = engine.pending()
        dead = engine.dead_letters()
        wakeups = [r.next_eligible_at for r in pending]
        print_json({
            "pending": len(pending),
            "dead_lettered": len(dead),
            "capacity": engine.capacity,
            "by_kind": dict(Counter(r.kind.value for r in pending)),
            "next_eligible_at": min(wakeups) if wakeups else None,
        })


@queue.command('list')
@click.option('--limit', '-n', default=20, help='Number of requests to show')
@click.pass_context
def list_requests(ctx: click.Context, limit: int):
    """List queued requests in delivery order."""
    with offline_engine(home_of(ctx)) as engine:
        pending = engine.pending()
        if not pending:
            click.echo("Queue is empty")
            return
        table(
            ["id", "kind", "priority", "attempts", "size", "last_error"],
            [[short(r.id), r.kind.value, r.priority, r.attempts, r.size, short(r.last_error, 30)]
             for r in pending[:limit]],
        )
        click.echo(f"Showing {min(limit, len(pending))} of {len(pending)} queued requests")


@queue.command('dead-letters')
@click.pass_context
def dead_letters(ctx: click.Context):
    """List requests that exhausted their retries."""
    with offline_engine(home_of(ctx)) as engine:
        dead = engine.dead_letters()
        if not dead:
            click.echo("No dead-lettered requests")
            return
        table(
            ["id", "kind", "attempts", "last_error"],
            [[r.id, r.kind.value, r.attempts, short(r.last_error, 40)] for r in dead],
        )


@queue.command()
@click.argument('request_id')
@click.pass_context
def cancel(ctx: click.Context, request_id: str):
    """Withdraw a queued request."""
    with offline_engine(home_of(ctx)) as engine:
        if not engine.cancel(request_id):
            print_error(f"{request_id} is not queued")
            sys.exit(1)
    print_success(f"Cancelled {request_id}")


@queue.command()
@click.argument('request_id')
@click.pass_context
def requeue(ctx: click.Context, request_id: str):
    """Give a dead-lettered request a fresh retry budget."""
    with offline_engine(home_of(ctx)) as engine:
        if not engine.requeue_dead_letter(request_id):
            print_error(f"{request_id} is not dead-lettered")
            sys.exit(1)
    print_success(f"Requeued {request_id}")
