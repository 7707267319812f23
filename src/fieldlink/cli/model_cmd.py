"""Model version commands."""
import sys

import click

from fieldlink.core.errors import OperationRefused

from .context import home_of, model_store
from .output import print_error, print_json, print_success


@click.group()
def model():
    """On-device model versions."""
    pass


@model.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the active version, rollback target and history."""
    store = model_store(home_of(ctx))
    active = store.active()
    target = store.rollback_target()
    print_json({
        "active": active.to_row() if active else None,
        "rollback_target": target.version_id if target else None,
        "versions": {v.version_id: v.state.value for v in store.versions()},
    })


@model.command()
@click.option('--reason', default='manual', help='Recorded in the rollback receipt')
@click.pass_context
def rollback(ctx: click.Context, reason: str):
    """Restore the previous model version."""
    store = model_store(home_of(ctx))
    try:
        restored = store.rollback(reason)
    except OperationRefused as e:
        print_error(f"rollback refused: {e.reason}")
        sys.exit(1)
    print_success(f"Active model is now {restored.version_id}")
