"""Receipt bus: publish/subscribe for component events.

Every component owns or shares a ReceiptBus. Publishing emits the receipt
(stdout), appends it to the ledger when one is wired, then hands it to the
subscribers. A failing subscriber is reported as a subscriber_error receipt
and never breaks the publisher.
"""
import threading
from typing import Callable

from fieldlink.config import features

from .ledger import LedgerStore
from .receipt import emit_receipt

Subscriber = Callable[[dict], None]

ALL_TYPES = "*"


class ReceiptBus:
    """In-process publish/subscribe channel carrying receipts."""

    def __init__(self, tenant_id: str = "default", ledger: LedgerStore | None = None):
        self.tenant_id = tenant_id
        self.ledger = ledger
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber, receipt_type: str = ALL_TYPES) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.setdefault(receipt_type, []).append(callback)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(receipt_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, receipt_type: str, data: dict) -> dict:
        """Emit a receipt and deliver it to subscribers."""
        receipt = emit_receipt(receipt_type, data, tenant_id=self.tenant_id)

        if self.ledger is not None and features.FEATURE_RECEIPT_LEDGER:
            self.ledger.append(receipt)

        with self._lock:
            callbacks = list(self._subscribers.get(receipt_type, []))
            callbacks += self._subscribers.get(ALL_TYPES, [])

        for callback in callbacks:
            try:
                callback(receipt)
            except Exception as e:
                emit_receipt("subscriber_error", {
                    "source_receipt_type": receipt_type,
                    "error": repr(e),
                }, tenant_id=self.tenant_id)

        return receipt
