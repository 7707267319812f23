"""Advisory session commands."""
import sys
import time

import click

from .context import home_of, session_registry
from .output import print_error, print_json, print_success, short, table


@click.group()
def session():
    """Stored advisory sessions and their history."""
    pass


@session.command('list')
@click.pass_context
def list_sessions(ctx: click.Context):
    """List sessions, most recently active first."""
    registry = session_registry(home_of(ctx))
    sessions = registry.sessions()
    if not sessions:
        click.echo("No sessions")
        return
    now = time.time()
    table(
        ["id", "user", "exchanges", "idle_s", "expired"],
        [[s.session_id, s.user_id, len(s.history), int(now - s.last_activity),
          "yes" if registry.is_expired(s, now) else "no"] for s in sessions],
    )


@session.command()
@click.argument('session_id')
@click.pass_context
def show(ctx: click.Context, session_id: str):
    """Show one session with its farm context and history."""
    registry = session_registry(home_of(ctx))
    match = [s for s in registry.sessions() if s.session_id.startswith(session_id)]
    if len(match) != 1:
        print_error(f"no unique session matches {session_id}")
        sys.exit(1)
    print_json(match[0].to_row())


@session.command()
@click.pass_context
def expire(ctx: click.Context):
    """Drop every session past the inactivity window."""
    expired = session_registry(home_of(ctx)).expire_idle()
    print_success(f"Expired {len(expired)} sessions")
    for sid in expired:
        click.echo(f"  {short(sid, 36)}")
