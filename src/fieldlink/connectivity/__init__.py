"""Connectivity monitoring: signal -> bandwidth estimate -> discrete state."""
from fieldlink.connectivity.monitor import (
    ConnectivityMonitor,
    ConnectivitySnapshot,
    ConnectivityState,
    ConnectivityTransition,
    NetworkSignal,
    classify,
    update_estimate,
)

__all__ = [
    "ConnectivityMonitor",
    "ConnectivitySnapshot",
    "ConnectivityState",
    "ConnectivityTransition",
    "NetworkSignal",
    "classify",
    "update_estimate",
]
