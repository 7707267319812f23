"""Transport collaborator boundary.

The advisory service is reached through a transport that performs the
actual network call. fieldlink only needs:

    send(request) -> dict

raising RateLimited / ServiceUnavailable / TransportTimeout for transient
failures and MalformedResponse for terminal ones.

Dispatch is wrapped in a soft timeout: if no response arrives within the
window, the caller moves on to retry bookkeeping while the in-flight call is
left to finish (or fail) on its own. The remote side is never cancelled.
"""
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Protocol

from fieldlink.core.errors import TransportTimeout

from .queue import QueuedRequest


class Transport(Protocol):
    def send(self, request: QueuedRequest) -> dict: ...


class TimedDispatcher:
    """Runs transport.send on a worker pool with a soft timeout."""

    def __init__(self, transport: Transport, timeout: float, max_workers: int = 2):
        self.transport = transport
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sync-dispatch")

    def dispatch(self, request: QueuedRequest) -> dict:
        """Send and wait at most `timeout` seconds.

        Raises:
            TransportTimeout: No response within the window
        """
        future = self._executor.submit(self.transport.send, request)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            raise TransportTimeout(
                f"no response for {request.id} within {self.timeout}s"
            ) from None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
