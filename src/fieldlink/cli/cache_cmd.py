"""Cache commands: inspect, pin favorites, sweep old entries."""
import sys

import click

from fieldlink.core.errors import CacheEntryNotFound

from .context import cache_store, home_of
from .output import print_error, print_json, print_success, short, table


def _resolve(store, key: str) -> str:
    """Accept a full key or an unambiguous prefix of one."""
    if key in store:
        return key
    matches = [k for k in store.keys() if k.startswith(key)]
    if len(matches) == 1:
        return matches[0]
    if matches:
        print_error(f"ambiguous key prefix {key} ({len(matches)} matches)")
    else:
        print_error(f"no cache entry {key}")
    sys.exit(1)


@click.group()
def cache():
    """Local detection/advisory cache."""
    pass


@cache.command('list')
@click.pass_context
def list_entries(ctx: click.Context):
    """List entries from least to most recently used."""
    store = cache_store(home_of(ctx))
    entries = store.entries()
    if not entries:
        click.echo("Cache is empty")
        return
    table(
        ["key", "pinned", "disease", "advice", "received_at"],
        [[short(e.key), "yes" if e.pinned else "", e.detection_result.get("disease_type", "?"),
          "yes" if e.advisory_response else "", e.received_at] for e in entries],
    )
    click.echo(f"{store.count_non_pinned()}/{store.capacity} unpinned, {store.count_pinned()} pinned")


@cache.command()
@click.argument('key')
@click.pass_context
def get(ctx: click.Context, key: str):
    """Show one entry (counts as use)."""
    store = cache_store(home_of(ctx))
    entry = store.get(_resolve(store, key))
    store.flush()
    print_json(entry.to_row())


@cache.command()
@click.argument('key')
@click.pass_context
def pin(ctx: click.Context, key: str):
    """Mark an entry as a favorite, exempt from eviction."""
    store = cache_store(home_of(ctx))
    try:
        entry = store.pin(_resolve(store, key))
    except CacheEntryNotFound as e:
        print_error(f"no cache entry {e}")
        sys.exit(1)
    print_success(f"Pinned {short(entry.key)}")


@cache.command()
@click.argument('key')
@click.pass_context
def unpin(ctx: click.Context, key: str):
    """Clear the favorite flag (may evict to restore capacity)."""
    store = cache_store(home_of(ctx))
    try:
        evicted = store.unpin(_resolve(store, key))
    except CacheEntryNotFound as e:
        print_error(f"no cache entry {e}")
        sys.exit(1)
    print_success(f"Unpinned {short(key)}")
    if evicted:
        click.echo(f"Evicted {len(evicted)} entries over capacity")


@cache.command()
@click.option('--max-age', type=float, required=True, help='Evict unpinned entries older than SECONDS')
@click.pass_context
def sweep(ctx: click.Context, max_age: float):
    """Evict unpinned entries received more than --max-age seconds ago."""
    store = cache_store(home_of(ctx))
    evicted = store.evict_older_than(max_age)
    print_json({"evicted": len(evicted), "remaining": len(store)})
