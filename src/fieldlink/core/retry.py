"""Generic retrying queue primitive.

One retry discipline for every subsystem that talks to the network:
    - RetryPolicy: attempt ceiling + backoff function
    - RetryQueue: priority queue with backoff bookkeeping, bounded capacity
      and a dead-letter set (sync engine)
    - retry_call: synchronous retry loop (model download, translation)

Backoff: after the k-th failure the item is ineligible for base * 2**k
seconds. Items reaching the ceiling are dead-lettered, never dropped.
"""
import time
from dataclasses import dataclass
from typing import Callable, Generic, Protocol, TypeVar

from .constants import BACKOFF_BASE_SECONDS, MAX_ATTEMPTS
from .errors import RetriesExhausted, TransientError


def exponential_backoff(base: float, attempts: int) -> float:
    return base * (2 ** attempts)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling and backoff function shared by all retrying subsystems."""
    max_attempts: int = MAX_ATTEMPTS
    backoff_base: float = BACKOFF_BASE_SECONDS
    backoff: Callable[[float, int], float] = exponential_backoff

    def delay(self, attempts: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        return self.backoff(self.backoff_base, attempts)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class Retryable(Protocol):
    id: str
    priority: int
    enqueued_at: float
    sequence: int
    attempts: int
    next_eligible_at: float
    last_error: str | None


T = TypeVar("T", bound=Retryable)


class RetryQueue(Generic[T]):
    """Bounded priority queue with backoff and dead-letter bookkeeping.

    Ordering is (priority, enqueued_at, sequence): lower priority value first,
    FIFO within a priority. Not thread-safe on its own; the owner serializes
    access.
    """

    def __init__(self, policy: RetryPolicy | None = None, capacity: int | None = None):
        self.policy = policy or RetryPolicy()
        self.capacity = capacity
        self._items: dict[str, T] = {}
        self._dead: dict[str, T] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    @staticmethod
    def _order(item: T) -> tuple:
        return (item.priority, item.enqueued_at, item.sequence)

    def items(self) -> list[T]:
        """Queued items in delivery order (ignoring eligibility)."""
        return sorted(self._items.values(), key=self._order)

    def dead_letters(self) -> list[T]:
        return sorted(self._dead.values(), key=self._order)

    def get(self, item_id: str) -> T | None:
        return self._items.get(item_id)

    def get_dead(self, item_id: str) -> T | None:
        return self._dead.get(item_id)

    def push(self, item: T, now: float) -> T | None:
        """Add an item. Returns the item evicted to make room, if any.

        On overflow the lowest-priority, oldest eligible item is evicted (any
        item when none is eligible) and moved to the dead-letter set.
        """
        evicted = None
        if self.capacity is not None and len(self._items) >= self.capacity:
            evicted = self._overflow_victim(now)
            del self._items[evicted.id]
            evicted.last_error = "overflow"
            self._dead[evicted.id] = evicted
        self._items[item.id] = item
        return evicted

    def _overflow_victim(self, now: float) -> T:
        candidates = [i for i in self._items.values() if i.next_eligible_at <= now]
        if not candidates:
            candidates = list(self._items.values())
        # highest priority value, then oldest
        return min(candidates, key=lambda i: (-i.priority, i.enqueued_at, i.sequence))

    def next_eligible(self, now: float) -> T | None:
        """Most urgent item whose backoff has elapsed, without removing it."""
        eligible = [i for i in self._items.values() if i.next_eligible_at <= now]
        if not eligible:
            return None
        return min(eligible, key=self._order)

    def pop_eligible(self, now: float) -> T | None:
        item = self.next_eligible(now)
        if item is not None:
            del self._items[item.id]
        return item

    def next_wakeup(self) -> float | None:
        """Earliest next_eligible_at among queued items."""
        if not self._items:
            return None
        return min(i.next_eligible_at for i in self._items.values())

    def remove(self, item_id: str) -> T | None:
        return self._items.pop(item_id, None)

    def record_failure(self, item: T, now: float, error: str) -> tuple[bool, T | None]:
        """Book a failed attempt.

        Returns:
            (requeued, evicted): requeued is True when the item went back in
            with a new next_eligible_at, False when it reached the ceiling and
            was dead-lettered. evicted is whatever the requeue pushed out if
            the queue filled up while the item was in flight.
        """
        item.attempts += 1
        item.last_error = error
        self._items.pop(item.id, None)
        if self.policy.exhausted(item.attempts):
            self._dead[item.id] = item
            return False, None
        item.next_eligible_at = now + self.policy.delay(item.attempts)
        return True, self.push(item, now)

    def dead_letter(self, item: T, reason: str) -> None:
        """Move an item straight to the dead-letter set (terminal failure)."""
        self._items.pop(item.id, None)
        item.last_error = reason
        self._dead[item.id] = item

    def revive(self, item_id: str, now: float) -> T | None:
        """Take an item out of the dead-letter set with a fresh retry budget."""
        item = self._dead.pop(item_id, None)
        if item is None:
            return None
        item.attempts = 0
        item.next_eligible_at = now
        item.last_error = None
        self._items[item.id] = item
        return item

    def restore(self, item: T, dead: bool = False) -> None:
        """Load an item from durable storage without capacity checks."""
        if dead:
            self._dead[item.id] = item
        else:
            self._items[item.id] = item


def retry_call(
    fn: Callable[[], object],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Callable[[int, Exception], None] | None = None,
    retry_on: tuple[type[Exception], ...] = (TransientError,),
):
    """Call fn until it succeeds or the attempt ceiling is reached.

    Args:
        fn: Zero-argument callable
        policy: Attempt ceiling and backoff (default: MAX_ATTEMPTS, base*2**k)
        sleep: Sleep function (injectable for tests)
        on_failure: Called with (attempts, error) after each failed attempt
        retry_on: Exception types treated as retryable; others propagate

    Returns:
        fn's return value

    Raises:
        RetriesExhausted: After policy.max_attempts failures
    """
    policy = policy or RetryPolicy()
    attempts = 0
    while True:
        try:
            return fn()
        except retry_on as e:
            attempts += 1
            if on_failure is not None:
                on_failure(attempts, e)
            if policy.exhausted(attempts):
                raise RetriesExhausted(attempts, e) from e
            sleep(policy.delay(attempts))
