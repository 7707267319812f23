"""Connectivity diagnostics."""
import click

from fieldlink.connectivity.monitor import ConnectivityMonitor, NetworkSignal

from .output import print_json


@click.group()
def connectivity():
    """Connectivity classification."""
    pass


@connectivity.command()
@click.argument('samples', nargs=-1, type=float, required=True)
@click.option('--offline', is_flag=True, help='Follow the samples with a link-down signal')
def classify(samples: tuple[float, ...], offline: bool):
    """Feed throughput samples (kbps) to a fresh monitor and show the result."""
    monitor = ConnectivityMonitor()
    snapshot = None
    for kbps in samples:
        snapshot = monitor.sample(NetworkSignal(link_up=True, throughput_kbps=kbps))
    if offline:
        snapshot = monitor.sample(NetworkSignal.link_down())
    print_json({
        "state": snapshot.state.value,
        "stable": snapshot.stable,
        "stable_state": snapshot.stable_state.value,
        "estimated_kbps": snapshot.estimated_kbps,
        "samples": len(samples),
    })
