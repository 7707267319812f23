"""Sync engine: durable priority queue of outbound requests.

Handles the transition from offline to online state, making sure every
request reaches a terminal state (delivered or dead-lettered) and none is
silently dropped.

Drain process:
1. Check connectivity (stop as soon as the link is OFFLINE)
2. Pop the most urgent eligible request (priority, then FIFO)
3. Dispatch through the transport with a soft timeout
4. Run the delivery handler for its kind
5. Acknowledge, or book the failure (backoff / dead-letter)
"""
import json
import threading
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Callable

from fieldlink.connectivity.monitor import (
    ConnectivityMonitor,
    ConnectivityTransition,
    NetworkSignal,
)
from fieldlink.core.constants import (
    DISPATCH_TIMEOUT_SECONDS,
    DRAIN_INTERVAL_SECONDS,
    LINK_LOSS_TIMEOUTS,
    MAX_PAYLOAD_BYTES,
    QUEUE_CAPACITY,
)
from fieldlink.core.errors import (
    PayloadTooLarge,
    TerminalError,
    TransientError,
    TransportTimeout,
)
from fieldlink.core.events import ReceiptBus
from fieldlink.core.retry import RetryPolicy, RetryQueue

from .queue import DEFAULT_PRIORITY, QueuedRequest, RequestKind, RequestState, RequestStore
from .transport import TimedDispatcher, Transport

DeliveryHandler = Callable[[QueuedRequest, dict], None]

# Delivered responses kept for status polling
ACK_HISTORY = 500

# Response field carrying the remote processing time, in seconds
SERVER_SECONDS_FIELD = "server_seconds"


class SyncEngine:
    """Owns the outbound queue from enqueue until a terminal state.

    enqueue() and cancel() are safe from any thread. Only one drain runs at a
    time, either on the dedicated worker (start()) or called directly.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        transport: Transport,
        store: RequestStore | None = None,
        bus: ReceiptBus | None = None,
        policy: RetryPolicy | None = None,
        capacity: int = QUEUE_CAPACITY,
        dispatch_timeout: float = DISPATCH_TIMEOUT_SECONDS,
        drain_interval: float = DRAIN_INTERVAL_SECONDS,
        report_signals: bool = True,
        clock: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.monitor = monitor
        self.store = store or RequestStore()
        self.bus = bus or monitor.bus
        self.clock = clock
        self.drain_interval = drain_interval
        self.report_signals = report_signals
        self.timer = timer
        self._queue: RetryQueue[QueuedRequest] = RetryQueue(policy or RetryPolicy(), capacity)
        self._dispatcher = TimedDispatcher(transport, dispatch_timeout)
        self._handlers: dict[RequestKind, DeliveryHandler] = {}
        self._in_flight: dict[str, QueuedRequest] = {}
        self._status: dict[str, RequestState] = {}
        self._acknowledged: "OrderedDict[str, dict]" = OrderedDict()
        self._sequence = 0
        self._timeouts = 0
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

        self._load()
        self._unsubscribe = monitor.subscribe(self._on_transition)

    @property
    def policy(self) -> RetryPolicy:
        return self._queue.policy

    @property
    def capacity(self) -> int:
        return self._queue.capacity

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        for request in self.store.load_table():
            dead = request.state is RequestState.DEAD_LETTERED
            self._queue.restore(request, dead=dead)
            self._sequence = max(self._sequence, request.sequence + 1)

    def _save(self) -> None:
        # in-flight rows stay in the table until acknowledged or failed
        in_flight = list(self._in_flight.values())
        self.store.save_table(self._queue.items() + in_flight + self._queue.dead_letters())

    # -- caller-facing operations -------------------------------------------

    def register_handler(self, kind: RequestKind | str, handler: DeliveryHandler) -> None:
        """Run handler(request, response) before a request of this kind is acknowledged."""
        self._handlers[RequestKind(kind)] = handler

    def enqueue(
        self,
        kind: RequestKind | str,
        payload: bytes,
        priority: int | None = None,
        request_id: str | None = None,
    ) -> str:
        """Accept an already-shaped request. Never blocks on the network.

        Args:
            kind: advisory | sync | model-check
            payload: Opaque request body
            priority: Lower = more urgent (default depends on kind)
            request_id: Explicit id (default: uuid4)

        Returns:
            The request id, for status polling

        Raises:
            PayloadTooLarge: Payload above MAX_PAYLOAD_BYTES (nothing queued)
        """
        kind = RequestKind(kind)
        if len(payload) > MAX_PAYLOAD_BYTES:
            raise PayloadTooLarge(len(payload), MAX_PAYLOAD_BYTES)

        with self._lock:
            now = self.clock()
            request = QueuedRequest(
                id=request_id or str(uuid.uuid4()),
                kind=kind,
                payload=payload,
                priority=DEFAULT_PRIORITY[kind] if priority is None else priority,
                enqueued_at=now,
                sequence=self._sequence,
                next_eligible_at=now,
            )
            self._sequence += 1
            self.store.save_payload(request)
            evicted = self._queue.push(request, now)
            if evicted is not None:
                evicted.state = RequestState.DEAD_LETTERED
            self._save()
            queue_size = len(self._queue)

        self.bus.publish("request_enqueued", {
            "request_id": request.id,
            "kind": kind.value,
            "priority": request.priority,
            "size_bytes": request.size,
            "queue_size": queue_size,
        })

        if evicted is not None:
            self.bus.publish("queue_overflow", {
                "evicted_request_id": evicted.id,
                "incoming_request_id": request.id,
                "capacity": self.capacity,
            })
            self._publish_dead_letter(evicted, "overflow")

        if self.monitor.state.online:
            self._wake.set()

        return request.id

    def cancel(self, request_id: str) -> bool:
        """Withdraw a queued request. No-op once dispatched or terminal."""
        with self._lock:
            request = self._queue.remove(request_id)
            if request is None:
                return False
            request.state = RequestState.CANCELLED
            self._status[request_id] = RequestState.CANCELLED
            self.store.delete_payload(request_id)
            self._save()

        self.bus.publish("request_cancelled", {"request_id": request_id, "kind": request.kind.value})
        return True

    def status(self, request_id: str) -> RequestState:
        with self._lock:
            if request_id in self._queue:
                return RequestState.QUEUED
            if self._queue.get_dead(request_id) is not None:
                return RequestState.DEAD_LETTERED
            return self._status.get(request_id, RequestState.UNKNOWN)

    def result(self, request_id: str) -> dict | None:
        """Response of a delivered request (None when not delivered)."""
        with self._lock:
            return self._acknowledged.get(request_id)

    def get(self, request_id: str) -> QueuedRequest | None:
        with self._lock:
            return (
                self._queue.get(request_id)
                or self._in_flight.get(request_id)
                or self._queue.get_dead(request_id)
            )

    def pending(self) -> list[QueuedRequest]:
        """Queued requests in delivery order."""
        with self._lock:
            return self._queue.items()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def dead_letters(self) -> list[QueuedRequest]:
        with self._lock:
            return self._queue.dead_letters()

    def requeue_dead_letter(self, request_id: str) -> bool:
        """Give a dead-lettered request a fresh retry budget."""
        with self._lock:
            request = self._queue.revive(request_id, self.clock())
            if request is None:
                return False
            request.state = RequestState.QUEUED
            self._save()

        self.bus.publish("request_requeued", {"request_id": request_id, "kind": request.kind.value})
        return True

    # -- draining -----------------------------------------------------------

    def drain(self, max_requests: int | None = None) -> dict:
        """Deliver eligible requests until the queue has nothing eligible.

        Stops early when connectivity drops to OFFLINE.

        Returns:
            Summary: delivered, retried, dead_lettered, remaining, stopped
        """
        if not self._drain_lock.acquire(blocking=False):
            return {"skipped": "drain_in_progress"}

        summary = {"delivered": 0, "retried": 0, "dead_lettered": 0, "stopped": "empty"}
        try:
            processed = 0
            while True:
                if not self.monitor.state.online:
                    summary["stopped"] = "offline"
                    break
                if max_requests is not None and processed >= max_requests:
                    summary["stopped"] = "limit"
                    break

                with self._lock:
                    request = self._queue.pop_eligible(self.clock())
                    if request is None:
                        if len(self._queue):
                            summary["stopped"] = "backoff"
                        break
                    request.state = RequestState.IN_FLIGHT
                    self._status[request.id] = RequestState.IN_FLIGHT
                    self._in_flight[request.id] = request
                    self._save()

                outcome = self._dispatch(request)
                summary[outcome] += 1
                processed += 1
        finally:
            self._drain_lock.release()

        summary["remaining"] = self.pending_count()
        self.bus.publish("drain_complete", dict(summary))
        return summary

    def _dispatch(self, request: QueuedRequest) -> str:
        if request.id in self._acknowledged:
            # duplicate dispatch of an acknowledged request: nothing to redo
            self._acknowledge(request, self._acknowledged[request.id], duplicate=True)
            return "delivered"

        started = self.timer()
        try:
            response = self._dispatcher.dispatch(request)
        except Exception as e:
            self._report_failure(e)
            return self._book_error(request, e)
        self._report_delivery(request, response, self.timer() - started)

        try:
            handler = self._handlers.get(request.kind)
            if handler is not None:
                handler(request, response)
        except Exception as e:
            return self._book_error(request, e)

        self._acknowledge(request, response)
        return "delivered"

    def _book_error(self, request: QueuedRequest, error: Exception) -> str:
        if isinstance(error, TerminalError):
            self._dead_letter(request, f"terminal: {error!r}")
            return "dead_lettered"
        if isinstance(error, TransientError):
            return self._fail(request, repr(error))
        # unexpected transport/handler bug: burn an attempt so it still terminates
        return self._fail(request, f"unexpected: {error!r}")

    # -- connectivity signals -----------------------------------------------

    def _report_delivery(self, request: QueuedRequest, response: dict, round_trip: float) -> None:
        """Feed a completed exchange to the monitor.

        Throughput is only measured when the response says how long the remote
        side worked on it; otherwise the sample just confirms the link.
        """
        if not self.report_signals:
            return
        self._timeouts = 0
        server_seconds = response.get(SERVER_SECONDS_FIELD) if isinstance(response, dict) else None
        if not isinstance(server_seconds, (int, float)) or isinstance(server_seconds, bool):
            self.monitor.sample(NetworkSignal(link_up=True))
            return
        received = len(json.dumps(response, default=str).encode("utf-8"))
        self.monitor.sample(NetworkSignal.from_exchange(request.size, received, round_trip - server_seconds))

    def _report_failure(self, error: Exception) -> None:
        """Timeouts in a row read as link loss; any answer from the service means the link is up."""
        if not self.report_signals:
            return
        if isinstance(error, TransportTimeout):
            self._timeouts += 1
            if self._timeouts >= LINK_LOSS_TIMEOUTS:
                self._timeouts = 0
                self.monitor.sample(NetworkSignal.link_down())
            return
        if isinstance(error, (TransientError, TerminalError)):
            self._timeouts = 0
            self.monitor.sample(NetworkSignal(link_up=True))

    def _acknowledge(self, request: QueuedRequest, response: dict, duplicate: bool = False) -> None:
        with self._lock:
            self._in_flight.pop(request.id, None)
            request.state = RequestState.DELIVERED
            self._status[request.id] = RequestState.DELIVERED
            self._acknowledged[request.id] = response
            while len(self._acknowledged) > ACK_HISTORY:
                old_id, _ = self._acknowledged.popitem(last=False)
                self._status.pop(old_id, None)
            self.store.delete_payload(request.id)
            self._save()

        self.bus.publish("request_delivered", {
            "request_id": request.id,
            "kind": request.kind.value,
            "attempts": request.attempts,
            "duplicate": duplicate,
        })

    def _fail(self, request: QueuedRequest, error: str) -> str:
        with self._lock:
            self._in_flight.pop(request.id, None)
            requeued, evicted = self._queue.record_failure(request, self.clock(), error)
            request.state = RequestState.QUEUED if requeued else RequestState.DEAD_LETTERED
            if evicted is not None:
                evicted.state = RequestState.DEAD_LETTERED
            self._status.pop(request.id, None)
            self._save()

        if evicted is not None:
            self.bus.publish("queue_overflow", {
                "evicted_request_id": evicted.id,
                "incoming_request_id": request.id,
                "capacity": self.capacity,
            })
            self._publish_dead_letter(evicted, "overflow")

        if requeued:
            self.bus.publish("request_retry_scheduled", {
                "request_id": request.id,
                "kind": request.kind.value,
                "attempts": request.attempts,
                "next_eligible_at": request.next_eligible_at,
                "error": error,
            })
            return "retried"

        self._publish_dead_letter(request, f"retries_exhausted: {error}")
        return "dead_lettered"

    def _dead_letter(self, request: QueuedRequest, reason: str) -> None:
        with self._lock:
            self._in_flight.pop(request.id, None)
            self._queue.dead_letter(request, reason)
            request.state = RequestState.DEAD_LETTERED
            self._status.pop(request.id, None)
            self._save()
        self._publish_dead_letter(request, reason)

    def _publish_dead_letter(self, request: QueuedRequest, reason: str) -> None:
        self.bus.publish("request_dead_lettered", {
            "request_id": request.id,
            "kind": request.kind.value,
            "attempts": request.attempts,
            "reason": reason,
        })

    # -- worker -------------------------------------------------------------

    def _on_transition(self, transition: ConnectivityTransition) -> None:
        # stable -> scheduled drain; unstable -> opportunistic send check
        if transition.new.online:
            self._wake.set()

    def _next_wait(self) -> float:
        with self._lock:
            wakeup = self._queue.next_wakeup()
        if wakeup is None:
            return self.drain_interval
        return min(self.drain_interval, max(0.0, wakeup - self.clock()))

    def start(self) -> None:
        """Start the single drain worker."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()

        def loop():
            while not self._stop.is_set():
                self._wake.wait(self._next_wait())
                self._wake.clear()
                if self._stop.is_set():
                    break
                if self.monitor.state.online:
                    self.drain()

        self._worker = threading.Thread(target=loop, name="sync-drain", daemon=True)
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        self._dispatcher.shutdown()

    def close(self) -> None:
        self.stop()
        self._unsubscribe()


def open_engine(
    monitor: ConnectivityMonitor,
    transport: Transport,
    home: str | Path,
    **kwargs,
) -> SyncEngine:
    """SyncEngine persisted under a data directory."""
    return SyncEngine(monitor, transport, store=RequestStore(home), **kwargs)
