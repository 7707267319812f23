"""fieldlink CLI entry point - assembles all command groups."""
from pathlib import Path

import click

from fieldlink import __version__
from fieldlink.config.paths import data_home

from .cache_cmd import cache
from .connectivity_cmd import connectivity
from .model_cmd import model
from .queue_cmd import queue
from .receipts_cmd import receipts
from .session_cmd import session


@click.group()
@click.version_option(version=__version__)
@click.option('--home', type=click.Path(file_okay=False, path_type=Path), default=None,
              help='Data directory (default: $FIELDLINK_HOME or ~/.fieldlink)')
@click.pass_context
def cli(ctx: click.Context, home: Path | None):
    """fieldlink: offline-first advisory client tables and diagnostics."""
    ctx.ensure_object(dict)
    ctx.obj["home"] = home or data_home()


cli.add_command(queue)
cli.add_command(cache)
cli.add_command(model)
cli.add_command(connectivity)
cli.add_command(session)
cli.add_command(receipts)


if __name__ == "__main__":
    cli()
