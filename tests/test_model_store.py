"""Tests for model version lifecycle and atomic swap."""
import pytest

from fieldlink.core.errors import (
    ChecksumMismatch,
    IllegalTransition,
    OperationRefused,
    SizeMismatch,
)
from fieldlink.core.receipt import dual_hash
from fieldlink.core.schemas import validate_receipt
from fieldlink.models.store import (
    ModelState,
    ModelStore,
    ModelUpdate,
    is_newer,
    parse_semver,
    verify_artifact,
)


def make_update(version: str, artifact: bytes, model_id: str = "leafnet") -> ModelUpdate:
    return ModelUpdate(id=model_id, version=version, checksum=dual_hash(artifact), size_bytes=len(artifact))


V1 = b"weights-v1" * 10
V2 = b"weights-v2" * 12


@pytest.fixture
def store(tmp_path, bus, clock):
    store = ModelStore(tmp_path / "models", bus=bus, clock=clock)
    store.install_initial(make_update("1.0.0", V1), V1)
    return store


def stage_v2(store: ModelStore) -> str:
    update = make_update("1.1.0", V2)
    store.begin_download(update)
    store.mark_verifying(update.version_id)
    store.stage(update.version_id, V2)
    return update.version_id


class TestSemver:
    def test_parse(self):
        assert parse_semver("v1.4.2") == (1, 4, 2)
        assert parse_semver("2.0") == (2, 0, 0)
        assert parse_semver("1.4.2-rc1") == (1, 4, 2)

    def test_is_newer(self):
        assert is_newer("1.10.0", "1.9.3")
        assert not is_newer("1.0.0", "1.0.0")
        assert is_newer("0.1.0", None)


class TestVerify:
    """Size then checksum."""

    def test_valid(self):
        verify_artifact(make_update("1.0.0", V1), V1)

    def test_size_mismatch(self):
        with pytest.raises(SizeMismatch):
            verify_artifact(make_update("1.0.0", V1), V1[:-1])

    def test_checksum_mismatch(self):
        update = make_update("1.0.0", V1)
        tampered = b"X" + V1[1:]
        with pytest.raises(ChecksumMismatch):
            verify_artifact(update, tampered)


class TestLifecycle:
    """Activation, rollback and garbage collection."""

    def test_initial_install_is_confirmed(self, store):
        active = store.active()
        assert active.version == "1.0.0"
        assert active.confirmed
        assert store.read_artifact(active.version_id) == V1

    def test_activate_keeps_previous_as_rollback_target(self, store):
        vid = stage_v2(store)
        store.activate(vid)

        assert store.active().version_id == vid
        assert store.rollback_target().version == "1.0.0"
        active = [v for v in store.versions() if v.state is ModelState.ACTIVE]
        assert len(active) == 1

    def test_activate_over_unconfirmed_refused(self, store):
        """The last confirmed version stays the rollback target until the new one has run."""
        vid = stage_v2(store)
        store.activate(vid)
        update = make_update("1.2.0", V1 + V2)
        store.begin_download(update)
        store.mark_verifying(update.version_id)
        store.stage(update.version_id, V1 + V2)

        with pytest.raises(OperationRefused) as exc:
            store.activate(update.version_id)

        assert exc.value.reason == "active_unconfirmed"
        assert store.active().version_id == vid
        assert store.rollback_target().version == "1.0.0"
        assert store.get(update.version_id).state is ModelState.STAGED

        restored = store.rollback("first_inference_failed")
        assert restored.version == "1.0.0" and restored.confirmed

    def test_cannot_activate_unverified(self, store):
        """Skipping verification is an illegal transition."""
        update = make_update("1.1.0", V2)
        store.begin_download(update)
        with pytest.raises(IllegalTransition):
            store.activate(update.version_id)
        assert store.active().version == "1.0.0"

    def test_rollback_restores_previous(self, store, bus):
        vid = stage_v2(store)
        store.activate(vid)

        restored = store.rollback("first_inference_failed")

        assert restored.version == "1.0.0"
        assert store.active().version == "1.0.0"
        assert store.get(vid).state is ModelState.ROLLED_BACK
        assert not store.artifact_path(vid).exists()
        receipt = bus.of_type("model_rolled_back")[0]
        assert receipt["restored_version"] == "leafnet-1.0.0"
        assert validate_receipt(receipt)

    def test_rollback_without_target_refused(self, store):
        with pytest.raises(OperationRefused) as exc:
            store.rollback("manual")
        assert exc.value.reason == "no_rollback_target"

    def test_confirm_collects_rollback_target(self, store):
        """After the first good inference the previous version is removed."""
        vid = stage_v2(store)
        store.activate(vid)

        removed = store.confirm_active()

        assert removed == ["leafnet-1.0.0"]
        assert store.rollback_target() is None
        assert store.get("leafnet-1.0.0") is None
        assert not store.artifact_path("leafnet-1.0.0").exists()
        assert store.confirm_active() == []

    def test_failed_download_leaves_active_untouched(self, store):
        update = make_update("1.1.0", V2)
        store.begin_download(update)
        store.fail(update.version_id)
        assert store.active().version == "1.0.0"
        assert store.get(update.version_id).state is ModelState.FAILED

    def test_active_model_requires_install(self, tmp_path):
        with pytest.raises(OperationRefused):
            with ModelStore(tmp_path / "empty").active_model():
                pass

    def test_install_twice_refused(self, store):
        with pytest.raises(OperationRefused):
            store.install_initial(make_update("1.0.1", V1), V1)


class TestPersistence:
    """Version table on disk."""

    def test_reload(self, store, tmp_path):
        vid = stage_v2(store)
        store.activate(vid)

        reloaded = ModelStore(tmp_path / "models")

        assert reloaded.active().version_id == vid
        assert reloaded.rollback_target().version == "1.0.0"

    def test_interrupted_download_marked_failed(self, store, tmp_path):
        """A crash mid-download never resurfaces as a usable version."""
        update = make_update("1.1.0", V2)
        store.begin_download(update)

        reloaded = ModelStore(tmp_path / "models")

        assert reloaded.get(update.version_id).state is ModelState.FAILED
        assert reloaded.active().version == "1.0.0"
