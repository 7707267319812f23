"""Tests for the model update manager: gating, retries, verification, rollback."""
from unittest.mock import MagicMock

import pytest

from fieldlink.config import features
from fieldlink.connectivity.monitor import ConnectivityState
from fieldlink.core.errors import (
    ArtifactFetchError,
    IllegalTransition,
    InferenceError,
    OperationRefused,
)
from fieldlink.core.schemas import validate_receipt
from fieldlink.models.store import ModelState, ModelStore
from fieldlink.models.updater import ModelUpdateManager, SlotState

from conftest import settle
from test_model_store import V1, V2, make_update


@pytest.fixture
def store(tmp_path, bus, clock):
    store = ModelStore(tmp_path / "models", bus=bus, clock=clock)
    store.install_initial(make_update("1.0.0", V1), V1)
    return store


@pytest.fixture
def source():
    source = MagicMock()
    source.fetch_manifest.return_value = make_update("1.1.0", V2)
    source.fetch_artifact.return_value = V2
    return source


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_manager(store, source, bus, sleeps):
    managers = []

    def factory(monitor, **kwargs):
        manager = ModelUpdateManager(store, monitor, source, bus=bus, sleep=sleeps.append, **kwargs)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.close()


class TestDownload:
    """Download, verify, swap."""

    def test_three_consecutive_failures(self, make_manager, online_monitor, source, store, bus, sleeps):
        """Three fetch failures fail the version, keep the active model and emit one event."""
        source.fetch_artifact.side_effect = ArtifactFetchError("connection reset")
        manager = make_manager(online_monitor)
        update = make_update("1.1.0", V2)

        assert manager.download(update) is None

        assert source.fetch_artifact.call_count == 3
        assert sleeps == [4.0, 8.0]
        assert store.get(update.version_id).state is ModelState.FAILED
        assert store.active().version == "1.0.0"
        assert manager.slot is SlotState.IDLE
        exhausted = bus.of_type("model_download_exhausted")
        assert len(exhausted) == 1
        assert exhausted[0]["attempts"] == 3
        assert exhausted[0]["active_version"] == "leafnet-1.0.0"
        assert validate_receipt(exhausted[0])

    def test_checksum_failure_keeps_active(self, make_manager, online_monitor, source, store, bus):
        """A corrupted artifact is discarded before any swap."""
        source.fetch_artifact.return_value = b"corrupted" * 13 + b"xyz"
        manager = make_manager(online_monitor)
        update = make_update("1.1.0", V2)

        assert manager.download(update) is None

        assert store.active().version == "1.0.0"
        assert store.get(update.version_id).state is ModelState.FAILED
        assert not store.artifact_path(update.version_id).exists()
        assert manager.slot is SlotState.IDLE
        assert validate_receipt(bus.of_type("model_verification_failed")[0])

    def test_success_activates(self, make_manager, online_monitor, store):
        manager = make_manager(online_monitor)

        version = manager.download(make_update("1.1.0", V2))

        assert version.state is ModelState.ACTIVE
        assert store.rollback_target().version == "1.0.0"
        assert manager.slot is SlotState.ACTIVE

    def test_stage_only(self, make_manager, online_monitor, store):
        """With auto-activation off the new version waits in STAGED."""
        manager = make_manager(online_monitor, auto_activate=False)

        version = manager.download(make_update("1.1.0", V2))

        assert version.state is ModelState.STAGED
        assert manager.slot is SlotState.STAGED
        assert store.active().version == "1.0.0"
        manager.activate(version.version_id)
        assert store.active().version == "1.1.0"

    def test_busy_slot_refuses_second_download(self, make_manager, online_monitor):
        """Only one update runs per slot."""
        manager = make_manager(online_monitor)
        manager.download(make_update("1.1.0", V2))

        with pytest.raises(OperationRefused) as exc:
            manager.download(make_update("1.2.0", V2))
        assert exc.value.reason == "update_in_progress"

    def test_slot_transitions_enforced(self, make_manager, online_monitor):
        manager = make_manager(online_monitor)
        with pytest.raises(IllegalTransition):
            manager._move(SlotState.STAGED)


class TestInference:
    """First-inference confirmation and rollback."""

    def test_first_inference_success_confirms(self, make_manager, online_monitor, store, mock_runtime):
        manager = make_manager(online_monitor)
        manager.download(make_update("1.1.0", V2))

        manager.run_inference(mock_runtime, b"img")

        assert store.active().confirmed
        assert store.rollback_target() is None
        assert manager.slot is SlotState.IDLE
        mock_runtime.load.assert_called_once()

    def test_first_inference_failure_rolls_back(self, make_manager, online_monitor, store, mock_runtime, bus):
        """A new model that fails its first inference is replaced by the previous one."""
        manager = make_manager(online_monitor)
        manager.download(make_update("1.1.0", V2))
        mock_runtime.infer.side_effect = InferenceError("tensor shape mismatch")

        with pytest.raises(InferenceError):
            manager.run_inference(mock_runtime, b"img")

        assert store.active().version == "1.0.0"
        assert store.get("leafnet-1.1.0").state is ModelState.ROLLED_BACK
        assert manager.slot is SlotState.IDLE
        assert bus.of_type("model_rolled_back")[0]["reason"].startswith("first_inference_failed")

    def test_failure_on_confirmed_model_propagates(self, make_manager, online_monitor, store, mock_runtime):
        """Inference errors on an established model do not trigger a rollback."""
        manager = make_manager(online_monitor)
        mock_runtime.infer.side_effect = InferenceError("bad image")

        with pytest.raises(InferenceError):
            manager.run_inference(mock_runtime, b"img")
        assert store.active().version == "1.0.0"


class TestGating:
    """When checks and downloads may run."""

    def test_offline_skips(self, make_manager, monitor, source, bus):
        manager = make_manager(monitor)
        assert manager.check_for_update() is None
        source.fetch_manifest.assert_not_called()
        assert bus.of_type("model_check_skipped")[0]["reason"] == "connectivity"

    def test_unstable_skips(self, make_manager, online_monitor, bus):
        """A single flap makes the link unstable; no download starts."""
        settle(online_monitor, 5000.0, samples=1)
        assert not online_monitor.snapshot().stable
        manager = make_manager(online_monitor)
        assert manager.check_for_update() is None

    def test_disabled_skips(self, make_manager, online_monitor, monkeypatch, bus):
        monkeypatch.setattr(features, "FEATURE_MODEL_UPDATES_ENABLED", False)
        manager = make_manager(online_monitor)
        assert manager.check_for_update() is None
        assert bus.of_type("model_check_skipped")[0]["reason"] == "disabled"

    def test_wifi_only_requires_fast(self, make_manager, online_monitor, bus):
        manager = make_manager(online_monitor, wifi_only=True)
        assert online_monitor.state is ConnectivityState.MEDIUM
        assert manager.check_for_update() is None
        assert bus.of_type("model_check_skipped")[0]["reason"] == "wifi_required"

    def test_stable_online_downloads_in_background(self, make_manager, online_monitor, store):
        manager = make_manager(online_monitor)

        future = manager.check_for_update()

        version = future.result(timeout=5)
        assert version.version == "1.1.0"
        assert store.active().version == "1.1.0"

    def test_no_newer_version(self, make_manager, online_monitor, source, bus):
        source.fetch_manifest.return_value = make_update("1.0.0", V1)
        manager = make_manager(online_monitor)
        assert manager.check_for_update() is None
        assert bus.of_type("model_check_complete")[0]["update_available"] is False

    def test_force_update_offline_refused(self, make_manager, monitor):
        manager = make_manager(monitor)
        with pytest.raises(OperationRefused) as exc:
            manager.force_update()
        assert exc.value.reason == "offline"

    def test_force_update_wifi_refused(self, make_manager, online_monitor):
        manager = make_manager(online_monitor)
        with pytest.raises(OperationRefused) as exc:
            manager.force_update(wifi_only=True)
        assert exc.value.reason == "wifi_required"

    def test_force_update_ignores_stability(self, make_manager, monitor, store):
        """A manual trigger runs on any online link, stable or not."""
        settle(monitor, 2000.0, samples=1)
        manager = make_manager(monitor)

        future = manager.force_update()

        assert future.result(timeout=5).version == "1.1.0"

    def test_rolled_back_version_not_refetched(self, make_manager, online_monitor, source, store,
                                               mock_runtime, bus):
        """A version that failed its first inference is not downloaded again on every check."""
        manager = make_manager(online_monitor)
        manager.download(make_update("1.1.0", V2))
        mock_runtime.infer.side_effect = InferenceError("tensor shape mismatch")
        with pytest.raises(InferenceError):
            manager.run_inference(mock_runtime, b"img")

        assert manager.check_for_update() is None

        assert bus.of_type("model_check_skipped")[-1]["reason"] == "rolled_back"
        assert source.fetch_artifact.call_count == 1
        assert store.active().version == "1.0.0"

    def test_force_update_retries_rolled_back(self, make_manager, online_monitor, store, mock_runtime):
        manager = make_manager(online_monitor)
        manager.download(make_update("1.1.0", V2))
        mock_runtime.infer.side_effect = InferenceError("tensor shape mismatch")
        with pytest.raises(InferenceError):
            manager.run_inference(mock_runtime, b"img")

        future = manager.force_update()

        assert future.result(timeout=5).version == "1.1.0"
        assert store.active().version == "1.1.0"
        assert store.rollback_target().version == "1.0.0"
