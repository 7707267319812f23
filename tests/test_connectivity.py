"""Tests for connectivity classification and hysteresis."""
import pytest

from fieldlink.connectivity.monitor import (
    ConnectivityMonitor,
    ConnectivityState,
    ConnectivityTransition,
    NetworkSignal,
    classify,
    update_estimate,
)
from fieldlink.core.schemas import validate_receipt

from conftest import settle


class TestClassify:
    """Threshold buckets."""

    @pytest.mark.parametrize("kbps,expected", [
        (10.0, ConnectivityState.SLOW),
        (149.9, ConnectivityState.SLOW),
        (150.0, ConnectivityState.MEDIUM),
        (1000.0, ConnectivityState.MEDIUM),
        (1000.1, ConnectivityState.FAST),
    ])
    def test_thresholds(self, kbps, expected):
        """150 and 1000 kbps split SLOW / MEDIUM / FAST."""
        assert classify(True, kbps) is expected

    def test_link_down_is_offline(self):
        """No link means OFFLINE whatever the estimate."""
        assert classify(False, 5000.0) is ConnectivityState.OFFLINE

    def test_link_up_without_estimate_is_slow(self):
        """A live link with no measurement yet is treated conservatively."""
        assert classify(True, None) is ConnectivityState.SLOW

    def test_ewma_seeds_then_decays(self):
        """First sample seeds; later samples are weighted by alpha."""
        assert update_estimate(None, 100.0) == 100.0
        assert update_estimate(100.0, 1000.0, alpha=0.3) == pytest.approx(370.0)


class TestMonitor:
    """Stateful monitor behavior."""

    def test_starts_stable_offline(self):
        """A fresh monitor reports a stable OFFLINE view."""
        snap = ConnectivityMonitor().snapshot()
        assert snap.state is ConnectivityState.OFFLINE
        assert snap.stable
        assert snap.estimated_kbps is None

    def test_three_agreeing_samples_make_stable(self, bus):
        """Stability requires three consecutive identical classifications."""
        monitor = ConnectivityMonitor(bus=bus)
        transitions = []
        monitor.subscribe(transitions.append)

        monitor.sample(NetworkSignal(True, 500.0))
        assert monitor.state is ConnectivityState.MEDIUM
        assert not monitor.snapshot().stable
        assert monitor.stable_state is ConnectivityState.OFFLINE

        monitor.sample(NetworkSignal(True, 500.0))
        monitor.sample(NetworkSignal(True, 500.0))

        assert monitor.snapshot().stable
        assert monitor.stable_state is ConnectivityState.MEDIUM
        assert [(t.new, t.stable) for t in transitions] == [
            (ConnectivityState.MEDIUM, False),
            (ConnectivityState.MEDIUM, True),
        ]

    def test_flap_produces_no_stable_transition(self, bus):
        """A single dropped sample is reported unstable and changes nothing stable."""
        monitor = settle(ConnectivityMonitor(bus=bus), 500.0)
        transitions = []
        monitor.subscribe(transitions.append)

        monitor.sample(NetworkSignal.link_down())
        monitor.sample(NetworkSignal(True, 500.0))

        assert all(not t.stable for t in transitions)
        assert monitor.stable_state is ConnectivityState.MEDIUM

    def test_link_down_resets_estimate(self):
        """An outage forgets the old bandwidth estimate."""
        monitor = settle(ConnectivityMonitor(), 2000.0)
        monitor.sample(NetworkSignal.link_down())
        assert monitor.estimated_kbps is None
        monitor.sample(NetworkSignal(True, 100.0))
        assert monitor.estimated_kbps == 100.0

    def test_offline_transitions_are_high_priority(self):
        """Transitions to or from OFFLINE are flagged high priority."""
        down = ConnectivityTransition(ConnectivityState.FAST, ConnectivityState.OFFLINE, True, None)
        up = ConnectivityTransition(ConnectivityState.OFFLINE, ConnectivityState.SLOW, False, 80.0)
        lateral = ConnectivityTransition(ConnectivityState.SLOW, ConnectivityState.FAST, True, 2000.0)
        assert down.high_priority and up.high_priority
        assert not lateral.high_priority

    def test_transition_receipts_match_schema(self, bus):
        """Every transition emits a schema-valid connectivity_transition receipt."""
        settle(ConnectivityMonitor(bus=bus), 50.0)
        receipts = bus.of_type("connectivity_transition")
        assert len(receipts) == 2
        for receipt in receipts:
            assert validate_receipt(receipt)
        assert receipts[-1]["stable"] is True
        assert receipts[-1]["high_priority"] is True

    def test_listener_error_does_not_break_sampling(self, bus):
        """A failing subscriber is reported, and the others still run."""
        monitor = ConnectivityMonitor(bus=bus)
        seen = []

        def broken(transition):
            raise RuntimeError("ui crashed")

        monitor.subscribe(broken)
        monitor.subscribe(seen.append)
        monitor.sample(NetworkSignal(True, 500.0))

        assert len(seen) == 1
        assert bus.of_type("subscriber_error")

    def test_unsubscribe(self):
        """An unsubscribed listener receives nothing."""
        monitor = ConnectivityMonitor()
        seen = []
        unsubscribe = monitor.subscribe(seen.append)
        unsubscribe()
        monitor.sample(NetworkSignal(True, 500.0))
        assert seen == []

    def test_from_exchange_measures_kbps(self):
        """Throughput signal counts both directions over the transfer time."""
        signal = NetworkSignal.from_exchange(100_000, 25_000, 2.0)
        assert signal.throughput_kbps == pytest.approx(500.0)
        assert NetworkSignal.from_exchange(10, 10, 0.0).throughput_kbps is None
        assert NetworkSignal.from_exchange(10, 10, -0.5).link_up

    def test_reset(self):
        """reset() returns to stable OFFLINE."""
        monitor = settle(ConnectivityMonitor(), 500.0)
        monitor.reset()
        snap = monitor.snapshot()
        assert snap.state is ConnectivityState.OFFLINE and snap.stable
