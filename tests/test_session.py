"""Tests for advisory sessions."""
import pytest

from fieldlink.advisory.session import SessionRegistry


@pytest.fixture
def registry(clock, bus):
    return SessionRegistry(bus=bus, clock=clock)


class TestSessions:
    def test_open_and_get(self, registry, farm_context):
        session = registry.open(farm_context)
        assert registry.get(session.session_id) is session
        assert session.user_id == "farmer-17"

    def test_expires_after_inactivity(self, registry, farm_context, clock, bus):
        """Thirty minutes without activity ends the session."""
        session = registry.open(farm_context)
        clock.advance(1801)

        assert registry.get(session.session_id) is None
        assert bus.of_type("session_expired")[0]["session_id"] == session.session_id

    def test_activity_extends(self, registry, farm_context, clock):
        session = registry.open(farm_context)
        clock.advance(1000)
        registry.append_exchange(session.session_id, {"request_id": "r1"})
        clock.advance(1000)
        assert registry.get(session.session_id) is session

    def test_exchange_idempotent(self, registry, farm_context):
        """Appending the same request twice records it once."""
        session = registry.open(farm_context)
        assert registry.append_exchange(session.session_id, {"request_id": "r1", "advice": "a"})
        assert not registry.append_exchange(session.session_id, {"request_id": "r1", "advice": "a"})
        assert len(session.history) == 1

    def test_recent_limit(self, registry, farm_context):
        session = registry.open(farm_context)
        for i in range(8):
            registry.append_exchange(session.session_id, {"request_id": f"r{i}"})
        assert [ex["request_id"] for ex in session.recent()] == ["r3", "r4", "r5", "r6", "r7"]

    def test_get_or_open_replaces_expired(self, registry, farm_context, clock):
        old = registry.open(farm_context)
        clock.advance(5000)
        new = registry.get_or_open(old.session_id, farm_context)
        assert new.session_id != old.session_id

    def test_expire_idle(self, registry, farm_context, clock):
        stale = registry.open(farm_context)
        clock.advance(1000)
        fresh = registry.open(farm_context)
        clock.advance(1000)

        assert registry.expire_idle() == [stale.session_id]
        assert registry.get(fresh.session_id) is fresh

    def test_persistence(self, tmp_path, farm_context, clock, bus):
        path = tmp_path / "sessions.json"
        registry = SessionRegistry(path, bus=bus, clock=clock)
        session = registry.open(farm_context)
        registry.append_exchange(session.session_id, {"request_id": "r1"})

        reloaded = SessionRegistry(path, bus=bus, clock=clock)

        restored = reloaded.get(session.session_id)
        assert restored.farm_context == farm_context
        assert restored.history == [{"request_id": "r1"}]
