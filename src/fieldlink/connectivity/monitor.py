"""Connectivity classification with hysteresis.

Raw network signals (link changes, measured request throughput) become a
bandwidth estimate via an exponentially weighted moving average, then a
discrete ConnectivityState by threshold:

    OFFLINE  no link
    SLOW     < 150 kbps
    MEDIUM   150 - 1000 kbps
    FAST     > 1000 kbps

A state is "stable" only after STABILITY_WINDOW consecutive identical
classifications. Every change of classification publishes an unstable
transition (only opportunistic sends react to it); reaching stability on a
new state publishes a stable transition (feature enable/disable reacts to
that). This component makes no network calls.
"""
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from fieldlink.core.constants import (
    EWMA_ALPHA,
    MEDIUM_MAX_KBPS,
    SIGNAL_POLL_SECONDS,
    SLOW_MAX_KBPS,
    STABILITY_WINDOW,
)
from fieldlink.core.events import ReceiptBus


class ConnectivityState(Enum):
    OFFLINE = "offline"
    SLOW = "slow"
    MEDIUM = "medium"
    FAST = "fast"

    @property
    def online(self) -> bool:
        return self is not ConnectivityState.OFFLINE


@dataclass(frozen=True)
class NetworkSignal:
    """One raw observation of the network."""
    link_up: bool
    throughput_kbps: float | None = None

    @classmethod
    def link_down(cls) -> "NetworkSignal":
        return cls(link_up=False)

    @classmethod
    def from_exchange(cls, sent_bytes: int, received_bytes: int, transfer_seconds: float) -> "NetworkSignal":
        """Signal derived from a completed request.

        transfer_seconds must exclude time the remote side spent working on
        the request; a non-positive value yields a bare link-up signal.
        """
        if transfer_seconds <= 0:
            return cls(link_up=True)
        kbits = (sent_bytes + received_bytes) * 8 / 1000.0
        return cls(link_up=True, throughput_kbps=kbits / transfer_seconds)


@dataclass(frozen=True)
class ConnectivitySnapshot:
    state: ConnectivityState
    estimated_kbps: float | None
    stable: bool
    stable_state: ConnectivityState


@dataclass(frozen=True)
class ConnectivityTransition:
    old: ConnectivityState
    new: ConnectivityState
    stable: bool
    estimated_kbps: float | None

    @property
    def high_priority(self) -> bool:
        """Offline -> any and any -> Offline must be handled first."""
        return self.old is ConnectivityState.OFFLINE or self.new is ConnectivityState.OFFLINE


Listener = Callable[[ConnectivityTransition], None]


def update_estimate(previous: float | None, sample: float, alpha: float = EWMA_ALPHA) -> float:
    """EWMA step; the first sample seeds the estimate."""
    if previous is None:
        return sample
    return alpha * sample + (1 - alpha) * previous


def classify(link_up: bool, estimated_kbps: float | None) -> ConnectivityState:
    """Bucket a bandwidth estimate into a ConnectivityState.

    A live link with no measurement yet is treated as SLOW.
    """
    if not link_up:
        return ConnectivityState.OFFLINE
    if estimated_kbps is None or estimated_kbps < SLOW_MAX_KBPS:
        return ConnectivityState.SLOW
    if estimated_kbps <= MEDIUM_MAX_KBPS:
        return ConnectivityState.MEDIUM
    return ConnectivityState.FAST


class ConnectivityMonitor:
    """Single owner of the current connectivity view.

    Other components only read it through snapshot()/state/stable_state or
    react to transitions via subscribe().
    """

    def __init__(
        self,
        bus: ReceiptBus | None = None,
        alpha: float = EWMA_ALPHA,
        stability_window: int = STABILITY_WINDOW,
    ):
        self.bus = bus or ReceiptBus()
        self.alpha = alpha
        self.stability_window = stability_window
        self._estimate: float | None = None
        self._state = ConnectivityState.OFFLINE
        self._stable_state = ConnectivityState.OFFLINE
        self._streak = stability_window
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # -- queries ------------------------------------------------------------

    @property
    def state(self) -> ConnectivityState:
        """Latest classification (may be unstable)."""
        return self._state

    @property
    def stable_state(self) -> ConnectivityState:
        return self._stable_state

    @property
    def estimated_kbps(self) -> float | None:
        return self._estimate

    def snapshot(self) -> ConnectivitySnapshot:
        with self._lock:
            return ConnectivitySnapshot(
                state=self._state,
                estimated_kbps=self._estimate,
                stable=self._is_stable(),
                stable_state=self._stable_state,
            )

    def _is_stable(self) -> bool:
        return self._streak >= self.stability_window and self._state is self._stable_state

    # -- subscription -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for transitions. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # -- sampling -----------------------------------------------------------

    def sample(self, signal: NetworkSignal) -> ConnectivitySnapshot:
        """Fold one raw signal into the estimate and classify it.

        Args:
            signal: Link state plus optional measured throughput

        Returns:
            Snapshot after this sample
        """
        transitions = []
        with self._lock:
            if not signal.link_up:
                self._estimate = None
            elif signal.throughput_kbps is not None:
                self._estimate = update_estimate(self._estimate, signal.throughput_kbps, self.alpha)

            classified = classify(signal.link_up, self._estimate)
            previous = self._state

            if classified is previous:
                self._streak += 1
            else:
                self._streak = 1
            self._state = classified

            reached_stable = (
                self._streak >= self.stability_window
                and classified is not self._stable_state
            )
            if classified is not previous and not reached_stable:
                transitions.append(ConnectivityTransition(previous, classified, False, self._estimate))
            if reached_stable:
                transitions.append(
                    ConnectivityTransition(self._stable_state, classified, True, self._estimate)
                )
                self._stable_state = classified

            snapshot = ConnectivitySnapshot(
                state=self._state,
                estimated_kbps=self._estimate,
                stable=self._is_stable(),
                stable_state=self._stable_state,
            )
            listeners = list(self._listeners)

        for transition in transitions:
            self._publish(transition, listeners)

        return snapshot

    def _publish(self, transition: ConnectivityTransition, listeners: list[Listener]) -> None:
        self.bus.publish("connectivity_transition", {
            "old_state": transition.old.value,
            "new_state": transition.new.value,
            "stable": transition.stable,
            "high_priority": transition.high_priority,
            "estimated_kbps": transition.estimated_kbps,
        })
        for listener in listeners:
            try:
                listener(transition)
            except Exception as e:
                self.bus.publish("subscriber_error", {
                    "source_receipt_type": "connectivity_transition",
                    "error": repr(e),
                })

    def reset(self) -> None:
        """Forget the estimate and return to a stable OFFLINE view."""
        with self._lock:
            self._estimate = None
            self._state = ConnectivityState.OFFLINE
            self._stable_state = ConnectivityState.OFFLINE
            self._streak = self.stability_window

    # -- background observer ------------------------------------------------

    def run(self, signal_source: Callable[[], NetworkSignal], interval: float = SIGNAL_POLL_SECONDS) -> None:
        """Poll signal_source on a daemon thread until stop()."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def loop():
            while not self._stop.is_set():
                self.sample(signal_source())
                self._stop.wait(interval)

        self._thread = threading.Thread(target=loop, name="connectivity-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
