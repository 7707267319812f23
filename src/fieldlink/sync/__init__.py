"""Sync module: durable outbound queue drained when connectivity allows.

Requests queue locally regardless of connectivity. Delivery happens when the
link is up. Failures back off exponentially and end in a dead-letter set,
never in silence.

Usage:
    from fieldlink.sync import SyncEngine, RequestStore

    engine = SyncEngine(monitor, transport, store=RequestStore(home))
    request_id = engine.enqueue("advisory", payload)
    engine.start()  # single drain worker
"""
from fieldlink.sync.engine import SyncEngine, open_engine
from fieldlink.sync.queue import (
    DEFAULT_PRIORITY,
    QueuedRequest,
    RequestKind,
    RequestState,
    RequestStore,
)
from fieldlink.sync.transport import TimedDispatcher, Transport

__all__ = [
    "SyncEngine",
    "open_engine",
    "QueuedRequest",
    "RequestKind",
    "RequestState",
    "RequestStore",
    "DEFAULT_PRIORITY",
    "TimedDispatcher",
    "Transport",
]
