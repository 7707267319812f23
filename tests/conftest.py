"""Test configuration and fixtures.

FakeClock: deterministic time source for backoff and LRU tests
FakeTransport: scripted advisory transport
Fixtures: connectivity monitors, sample detections and farm context
"""
import threading
from unittest.mock import MagicMock

import pytest

from fieldlink.advisory.types import DetectionResult, FarmContext
from fieldlink.config import features
from fieldlink.connectivity.monitor import ConnectivityMonitor, NetworkSignal
from fieldlink.core.events import ReceiptBus
from fieldlink.core.retry import RetryPolicy


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeTransport:
    """Transport whose outcomes are scripted per call.

    Each script item is either a dict (returned) or an exception (raised).
    When the script runs out, `default` is returned.
    """

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default if default is not None else {"advice": "Apply neem oil weekly."}
        self.sent = []
        self._lock = threading.Lock()

    def send(self, request) -> dict:
        with self._lock:
            self.sent.append(request)
            outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def sent_ids(self) -> list[str]:
        return [r.id for r in self.sent]


class RecordingBus(ReceiptBus):
    """ReceiptBus that keeps every published receipt."""

    def __init__(self):
        super().__init__()
        self.receipts = []
        self.subscribe(self.receipts.append)

    def of_type(self, receipt_type: str) -> list[dict]:
        return [r for r in self.receipts if r["receipt_type"] == receipt_type]


def settle(monitor: ConnectivityMonitor, kbps: float | None, samples: int | None = None) -> ConnectivityMonitor:
    """Feed identical samples until the monitor is stable (kbps=None = link down)."""
    count = samples if samples is not None else monitor.stability_window
    signal = NetworkSignal.link_down() if kbps is None else NetworkSignal(link_up=True, throughput_kbps=kbps)
    for _ in range(count):
        monitor.sample(signal)
    return monitor


@pytest.fixture(autouse=True)
def quiet_receipts(monkeypatch):
    """Keep receipts off stdout unless a test turns them back on."""
    monkeypatch.setattr(features, "FEATURE_RECEIPT_STDOUT", False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Default ceiling (3 attempts) with the default 2 s backoff base."""
    return RetryPolicy()


@pytest.fixture
def monitor(bus) -> ConnectivityMonitor:
    """Fresh monitor: stable OFFLINE."""
    return ConnectivityMonitor(bus=bus)


@pytest.fixture
def online_monitor(bus) -> ConnectivityMonitor:
    """Monitor settled on MEDIUM (500 kbps)."""
    return settle(ConnectivityMonitor(bus=bus), 500.0)


@pytest.fixture
def detection() -> DetectionResult:
    return DetectionResult(
        disease_type="Late Blight",
        confidence=0.91,
        crop_or_livestock="tomato",
        model_version="leafnet-1.2.0",
        detected_at=1_000_000.0,
    )


@pytest.fixture
def farm_context() -> FarmContext:
    return FarmContext(
        user_id="farmer-17",
        crop_or_livestock="tomato",
        language="sw",
        dialect="sw-KE",
        region="Nakuru",
    )


@pytest.fixture
def mock_runtime(detection) -> MagicMock:
    runtime = MagicMock(spec=["infer", "load"])
    runtime.infer.return_value = detection
    return runtime
