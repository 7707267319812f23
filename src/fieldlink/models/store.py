"""Model store: active and previous model artifacts with version metadata.

Lifecycle of one ModelVersion (anything not in MODEL_TRANSITIONS raises
IllegalTransition, so e.g. activating a never-verified artifact cannot
happen):

    DOWNLOADING -> VERIFYING -> STAGED -> ACTIVE -> ROLLBACK_TARGET -> (removed)
         |             |          |        |              |
         v             v          v        v              v
       FAILED        FAILED     FAILED  ROLLED_BACK     ACTIVE (rollback)

Exactly one version is ACTIVE. The version it replaced stays on disk as
ROLLBACK_TARGET until the new one completes a successful inference.
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from fieldlink.core.errors import (
    ChecksumMismatch,
    IllegalTransition,
    OperationRefused,
    SizeMismatch,
)
from fieldlink.core.events import ReceiptBus
from fieldlink.core.persist import load_json, save_json, write_bytes_atomic
from fieldlink.core.receipt import StopRule, dual_hash

VERSION_TABLE = "versions.json"
ARTIFACT_DIR = "artifacts"


class ModelState(Enum):
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    STAGED = "staged"
    ACTIVE = "active"
    ROLLBACK_TARGET = "rollback_target"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


MODEL_TRANSITIONS = {
    ModelState.DOWNLOADING: {ModelState.VERIFYING, ModelState.FAILED},
    ModelState.VERIFYING: {ModelState.STAGED, ModelState.FAILED},
    ModelState.STAGED: {ModelState.ACTIVE, ModelState.FAILED},
    ModelState.ACTIVE: {ModelState.ROLLBACK_TARGET, ModelState.ROLLED_BACK},
    ModelState.ROLLBACK_TARGET: {ModelState.ACTIVE},
    ModelState.ROLLED_BACK: set(),
    ModelState.FAILED: set(),
}


def parse_semver(version: str) -> tuple[int, int, int]:
    """'v1.4.2' / '1.4' / '1.4.2-rc1' -> (1, 4, 2); pre-release tags ignored."""
    core = version.strip().lstrip("vV").split("-", 1)[0].split("+", 1)[0]
    parts = [int(p) for p in core.split(".") if p != ""]
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts[:3])


def is_newer(candidate: str, current: str | None) -> bool:
    if current is None:
        return True
    return parse_semver(candidate) > parse_semver(current)


@dataclass(frozen=True)
class ModelUpdate:
    """Manifest entry offered by the artifact source."""
    id: str
    version: str
    checksum: str
    size_bytes: int

    @property
    def version_id(self) -> str:
        return f"{self.id}-{self.version}"


@dataclass
class ModelVersion:
    id: str
    version: str
    checksum: str
    size_bytes: int
    state: ModelState = ModelState.DOWNLOADING
    installed_at: float | None = None
    confirmed: bool = False

    @property
    def version_id(self) -> str:
        return f"{self.id}-{self.version}"

    def transition(self, target: ModelState) -> None:
        if target not in MODEL_TRANSITIONS[self.state]:
            raise IllegalTransition("model_version", self.state.value, target.value)
        self.state = target

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "state": self.state.value,
            "installed_at": self.installed_at,
            "confirmed": self.confirmed,
        }

    @classmethod
    def from_row(cls, row: dict) -> "ModelVersion":
        return cls(
            id=row["id"],
            version=row["version"],
            checksum=row["checksum"],
            size_bytes=row["size_bytes"],
            state=ModelState(row["state"]),
            installed_at=row.get("installed_at"),
            confirmed=row.get("confirmed", False),
        )

    @classmethod
    def from_update(cls, update: ModelUpdate) -> "ModelVersion":
        return cls(
            id=update.id,
            version=update.version,
            checksum=update.checksum,
            size_bytes=update.size_bytes,
        )


@dataclass(frozen=True)
class ModelHandle:
    """What an inference call sees: the active version and its artifact."""
    version: ModelVersion
    artifact_path: Path


def verify_artifact(update: ModelUpdate, artifact: bytes) -> None:
    """Check size, then dual-hash checksum.

    Raises:
        SizeMismatch: Artifact length differs from the manifest
        ChecksumMismatch: Dual hash differs from the manifest
    """
    if len(artifact) != update.size_bytes:
        raise SizeMismatch(f"expected {update.size_bytes} bytes, got {len(artifact)}")
    actual = dual_hash(artifact)
    if actual != update.checksum:
        raise ChecksumMismatch(f"expected {update.checksum[:16]}..., got {actual[:16]}...")


class ModelStore:
    """Version table + artifact files under one directory.

    The store lock doubles as the swap lock: active_model() holds it for the
    duration of an inference so activate()/rollback() can never swap the
    handle out from under an in-flight call.
    """

    def __init__(
        self,
        root: str | Path,
        bus: ReceiptBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.bus = bus or ReceiptBus()
        self.clock = clock
        self._versions: dict[str, ModelVersion] = {}
        self._lock = threading.RLock()
        self._load()

    # -- persistence --------------------------------------------------------

    @property
    def table_path(self) -> Path:
        return self.root / VERSION_TABLE

    def artifact_path(self, version_id: str) -> Path:
        return self.root / ARTIFACT_DIR / f"{version_id}.bin"

    def _load(self) -> None:
        for row in load_json(self.table_path, []):
            version = ModelVersion.from_row(row)
            # a crash mid-download leaves nothing usable behind
            if version.state in (ModelState.DOWNLOADING, ModelState.VERIFYING):
                version.state = ModelState.FAILED
            self._versions[version.version_id] = version
        self._check_invariant()

    def _save(self) -> None:
        save_json(self.table_path, [v.to_row() for v in self._versions.values()])

    def _check_invariant(self) -> None:
        active = [v for v in self._versions.values() if v.state is ModelState.ACTIVE]
        if len(active) > 1:
            raise StopRule(f"{len(active)} active model versions: {[v.version_id for v in active]}")

    def _delete_artifact(self, version_id: str) -> None:
        path = self.artifact_path(version_id)
        if path.exists():
            path.unlink()

    # -- queries ------------------------------------------------------------

    def active(self) -> ModelVersion | None:
        with self._lock:
            for version in self._versions.values():
                if version.state is ModelState.ACTIVE:
                    return version
            return None

    def rollback_target(self) -> ModelVersion | None:
        with self._lock:
            for version in self._versions.values():
                if version.state is ModelState.ROLLBACK_TARGET:
                    return version
            return None

    def get(self, version_id: str) -> ModelVersion | None:
        with self._lock:
            return self._versions.get(version_id)

    def versions(self) -> list[ModelVersion]:
        with self._lock:
            return list(self._versions.values())

    def read_artifact(self, version_id: str) -> bytes:
        return self.artifact_path(version_id).read_bytes()

    @contextmanager
    def active_model(self) -> Iterator[ModelHandle]:
        """Hold the swap lock while the caller runs inference.

        Raises:
            OperationRefused: No model has been installed yet
        """
        with self._lock:
            version = self.active()
            if version is None:
                raise OperationRefused("no_active_model")
            yield ModelHandle(version=version, artifact_path=self.artifact_path(version.version_id))

    # -- lifecycle ----------------------------------------------------------

    def _require(self, version_id: str) -> ModelVersion:
        version = self._versions.get(version_id)
        if version is None:
            raise KeyError(f"unknown model version: {version_id}")
        return version

    def begin_download(self, update: ModelUpdate) -> ModelVersion:
        """Register a new DOWNLOADING row; a previously FAILED row is replaced."""
        with self._lock:
            existing = self._versions.get(update.version_id)
            if existing is not None and existing.state not in (ModelState.FAILED, ModelState.ROLLED_BACK):
                raise OperationRefused("version_present", f"{update.version_id} is {existing.state.value}")
            version = ModelVersion.from_update(update)
            self._versions[version.version_id] = version
            self._save()
            return version

    def mark_verifying(self, version_id: str) -> ModelVersion:
        with self._lock:
            version = self._require(version_id)
            version.transition(ModelState.VERIFYING)
            self._save()
            return version

    def stage(self, version_id: str, artifact: bytes) -> ModelVersion:
        """Persist a verified artifact and mark it STAGED."""
        with self._lock:
            version = self._require(version_id)
            version.transition(ModelState.STAGED)
            write_bytes_atomic(self.artifact_path(version_id), artifact)
            self._save()
            return version

    def fail(self, version_id: str) -> ModelVersion:
        """Discard a version that never became active."""
        with self._lock:
            version = self._require(version_id)
            version.transition(ModelState.FAILED)
            self._delete_artifact(version_id)
            self._save()
            return version

    def activate(self, version_id: str) -> ModelVersion:
        """Atomically make a STAGED version the active one.

        The previously active version becomes the rollback target, so it must
        have been confirmed by a successful inference first.

        Raises:
            IllegalTransition: Version is not STAGED
            OperationRefused: The active version is still unconfirmed
        """
        with self._lock:
            version = self._require(version_id)
            if version.state is not ModelState.STAGED:
                raise IllegalTransition("model_version", version.state.value, ModelState.ACTIVE.value)

            previous = self.active()
            if previous is not None and not previous.confirmed:
                raise OperationRefused("active_unconfirmed", f"{previous.version_id} has not run yet")
            if previous is not None:
                previous.transition(ModelState.ROLLBACK_TARGET)

            version.transition(ModelState.ACTIVE)
            version.installed_at = self.clock()
            version.confirmed = False
            self._check_invariant()
            self._save()

        self.bus.publish("model_activated", {
            "version_id": version.version_id,
            "version": version.version,
            "previous_version": previous.version_id if previous else None,
        })
        return version

    def confirm_active(self) -> list[str]:
        """First successful inference on the active version.

        Returns:
            version ids garbage-collected (former rollback targets)
        """
        with self._lock:
            version = self.active()
            if version is None or version.confirmed:
                return []
            version.confirmed = True
            removed = []
            target = self.rollback_target()
            if target is not None:
                self._remove(target)
                removed.append(target.version_id)
            self._save()

        self.bus.publish("model_confirmed", {
            "version_id": version.version_id,
            "collected": removed,
        })
        return removed

    def rollback(self, reason: str) -> ModelVersion:
        """ACTIVE -> ROLLED_BACK, ROLLBACK_TARGET -> ACTIVE.

        Raises:
            OperationRefused: Nothing to roll back to
        """
        with self._lock:
            current = self.active()
            target = self.rollback_target()
            if current is None or target is None:
                raise OperationRefused("no_rollback_target")

            current.transition(ModelState.ROLLED_BACK)
            self._delete_artifact(current.version_id)
            target.transition(ModelState.ACTIVE)
            target.confirmed = True
            self._check_invariant()
            self._save()

        self.bus.publish("model_rolled_back", {
            "rolled_back_version": current.version_id,
            "restored_version": target.version_id,
            "reason": reason,
        })
        return target

    def install_initial(self, update: ModelUpdate, artifact: bytes) -> ModelVersion:
        """Bootstrap a bundled model when nothing is active yet."""
        verify_artifact(update, artifact)
        with self._lock:
            if self.active() is not None:
                raise OperationRefused("model_already_installed")
            version = self.begin_download(update)
            self.mark_verifying(version.version_id)
            self.stage(version.version_id, artifact)
            version = self.activate(version.version_id)
            version.confirmed = True
            self._save()
            return version

    def _remove(self, version: ModelVersion) -> None:
        self._delete_artifact(version.version_id)
        self._versions.pop(version.version_id, None)
