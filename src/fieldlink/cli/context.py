"""Open the persisted tables for one CLI invocation.

CLI commands never dispatch anything: the engine they open sees a stable
OFFLINE link and a transport that refuses to send.
"""
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click

from fieldlink.advisory.session import SessionRegistry
from fieldlink.cache.store import CacheStore
from fieldlink.config.paths import cache_path, ledger_path, model_root, session_path
from fieldlink.connectivity.monitor import ConnectivityMonitor
from fieldlink.core.errors import ServiceUnavailable
from fieldlink.core.events import ReceiptBus
from fieldlink.core.ledger import LedgerStore
from fieldlink.models.store import ModelStore
from fieldlink.sync.engine import SyncEngine, open_engine


class RefusingTransport:
    def send(self, request) -> dict:
        raise ServiceUnavailable("the command line does not dispatch requests")


def home_of(ctx: click.Context) -> Path:
    return ctx.find_root().obj["home"]


def receipt_bus(home: Path) -> ReceiptBus:
    return ReceiptBus(ledger=LedgerStore(ledger_path(home)))


@contextmanager
def offline_engine(home: Path) -> Iterator[SyncEngine]:
    bus = receipt_bus(home)
    engine = open_engine(ConnectivityMonitor(bus=bus), RefusingTransport(), home, bus=bus)
    try:
        yield engine
    finally:
        engine.close()


def cache_store(home: Path) -> CacheStore:
    return CacheStore(cache_path(home), bus=receipt_bus(home))


def model_store(home: Path) -> ModelStore:
    return ModelStore(model_root(home), bus=receipt_bus(home))


def session_registry(home: Path) -> SessionRegistry:
    return SessionRegistry(session_path(home), bus=receipt_bus(home))


def ledger(home: Path) -> LedgerStore:
    return LedgerStore(ledger_path(home))
