"""Model update manager: background download, verify, atomic swap, rollback.

Slot state machine (one slot per model):

    IDLE -> DOWNLOADING -> VERIFYING -> STAGED -> ACTIVE -> IDLE
                |              |
                v              v
              IDLE           IDLE    (retries exhausted / verification failed)

ACTIVE here means "activated, waiting for the first real inference". A
successful inference confirms it (previous version becomes collectable); a
failed one rolls back to the previous version.

Downloads only start while connectivity is stable and online, and run on a
dedicated worker so a slow download never delays a detection.
"""
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Protocol

from fieldlink.config import features
from fieldlink.connectivity.monitor import (
    ConnectivityMonitor,
    ConnectivityState,
    ConnectivityTransition,
)
from fieldlink.core.constants import MODEL_CHECK_INTERVAL_SECONDS
from fieldlink.core.errors import (
    IllegalTransition,
    InferenceError,
    OperationRefused,
    RetriesExhausted,
    TerminalError,
)
from fieldlink.core.events import ReceiptBus
from fieldlink.core.retry import RetryPolicy, retry_call

from .store import ModelState, ModelStore, ModelUpdate, ModelVersion, is_newer, verify_artifact


class SlotState(Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    STAGED = "staged"
    ACTIVE = "active"


SLOT_TRANSITIONS = {
    SlotState.IDLE: {SlotState.DOWNLOADING},
    SlotState.DOWNLOADING: {SlotState.VERIFYING, SlotState.IDLE},
    SlotState.VERIFYING: {SlotState.STAGED, SlotState.IDLE},
    SlotState.STAGED: {SlotState.ACTIVE, SlotState.IDLE},
    SlotState.ACTIVE: {SlotState.IDLE},
}


class ArtifactSource(Protocol):
    def fetch_manifest(self, current_version: str | None) -> ModelUpdate | None: ...

    def fetch_artifact(self, model_id: str, version: str) -> bytes: ...


class InferenceRuntime(Protocol):
    def infer(self, image: Any) -> Any: ...


class ModelUpdateManager:
    """Gates, downloads, verifies and activates model updates."""

    def __init__(
        self,
        store: ModelStore,
        monitor: ConnectivityMonitor,
        source: ArtifactSource,
        bus: ReceiptBus | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        wifi_only: bool | None = None,
        auto_activate: bool = True,
        check_interval: float = MODEL_CHECK_INTERVAL_SECONDS,
    ):
        self.store = store
        self.monitor = monitor
        self.source = source
        self.bus = bus or store.bus
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.wifi_only = wifi_only
        self.auto_activate = auto_activate
        self.check_interval = check_interval
        self._slot = SlotState.IDLE
        self._slot_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="model-download")
        self._loaded_version: str | None = None
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None
        self._unsubscribe = monitor.subscribe(self._on_transition)

    # -- slot state ---------------------------------------------------------

    @property
    def slot(self) -> SlotState:
        return self._slot

    def _move(self, target: SlotState) -> None:
        with self._slot_lock:
            if target not in SLOT_TRANSITIONS[self._slot]:
                raise IllegalTransition("update_slot", self._slot.value, target.value)
            self._slot = target

    def _claim(self) -> bool:
        """IDLE -> DOWNLOADING if free; False when an update is already underway."""
        with self._slot_lock:
            if self._slot is not SlotState.IDLE:
                return False
            self._slot = SlotState.DOWNLOADING
            return True

    # -- gating -------------------------------------------------------------

    def _wifi_required(self) -> bool:
        if self.wifi_only is not None:
            return self.wifi_only
        return features.FEATURE_MODEL_UPDATES_WIFI_ONLY

    def _skip(self, reason: str) -> None:
        self.bus.publish("model_check_skipped", {
            "reason": reason,
            "connectivity": self.monitor.state.value,
        })

    def check_for_update(self, current_version: str | None = None) -> Future | None:
        """Periodic check; only runs on a stable, online link.

        Returns:
            Future of the background download, or None when nothing started
        """
        if not features.FEATURE_MODEL_UPDATES_ENABLED:
            self._skip("disabled")
            return None
        snapshot = self.monitor.snapshot()
        if not (snapshot.stable and snapshot.state.online):
            self._skip("connectivity")
            return None
        if self._wifi_required() and snapshot.state is not ConnectivityState.FAST:
            self._skip("wifi_required")
            return None
        return self._check(current_version)

    def force_update(self, wifi_only: bool | None = None) -> Future | None:
        """Manual trigger: bypasses the periodic gate, not the connectivity gate.

        Unlike the periodic check it also retries a version that was rolled back.

        Raises:
            OperationRefused: Offline, or WiFi required and link not FAST
        """
        state = self.monitor.state
        if not state.online:
            raise OperationRefused("offline")
        required = self._wifi_required() if wifi_only is None else wifi_only
        if required and state is not ConnectivityState.FAST:
            raise OperationRefused("wifi_required", f"connectivity is {state.value}")
        return self._check(None, retry_rolled_back=True)

    def _check(self, current_version: str | None, retry_rolled_back: bool = False) -> Future | None:
        if current_version is None:
            active = self.store.active()
            current_version = active.version if active else None

        try:
            update = retry_call(
                lambda: self.source.fetch_manifest(current_version),
                self.policy,
                sleep=self.sleep,
            )
        except RetriesExhausted as e:
            self.bus.publish("model_check_failed", {
                "current_version": current_version,
                "attempts": e.attempts,
                "error": repr(e.last_error),
            })
            return None

        available = update is not None and is_newer(update.version, current_version)
        self.bus.publish("model_check_complete", {
            "current_version": current_version,
            "offered_version": update.version if update else None,
            "update_available": available,
        })
        if not available:
            return None

        # a version that already failed its first inference is only retried on request
        previous = self.store.get(update.version_id)
        if previous is not None and previous.state is ModelState.ROLLED_BACK and not retry_rolled_back:
            self._skip("rolled_back")
            return None

        if not self._claim():
            self._skip("update_in_progress")
            return None
        return self._executor.submit(self._download_claimed, update)

    # -- download / verify / activate ---------------------------------------

    def download(self, update: ModelUpdate) -> ModelVersion | None:
        """Download, verify and stage (and by default activate) an update.

        Blocking; check_for_update() runs this on the download worker.

        Returns:
            The new version, or None when the download or verification failed
        """
        if not self._claim():
            raise OperationRefused("update_in_progress", self._slot.value)
        return self._download_claimed(update)

    def _download_claimed(self, update: ModelUpdate) -> ModelVersion | None:
        try:
            return self._run_download(update)
        except Exception as e:
            with self._slot_lock:
                if self._slot is not SlotState.ACTIVE:
                    self._slot = SlotState.IDLE
            self.bus.publish("model_update_error", {
                "version_id": update.version_id,
                "error": repr(e),
            })
            raise

    def _run_download(self, update: ModelUpdate) -> ModelVersion | None:
        version = self.store.begin_download(update)

        def on_failure(attempts: int, error: Exception) -> None:
            self.bus.publish("model_download_retry", {
                "version_id": version.version_id,
                "attempts": attempts,
                "error": repr(error),
            })

        try:
            artifact = retry_call(
                lambda: self.source.fetch_artifact(update.id, update.version),
                self.policy,
                sleep=self.sleep,
                on_failure=on_failure,
            )
        except RetriesExhausted as e:
            self.store.fail(version.version_id)
            self._move(SlotState.IDLE)
            active = self.store.active()
            self.bus.publish("model_download_exhausted", {
                "version_id": version.version_id,
                "version": update.version,
                "attempts": e.attempts,
                "active_version": active.version_id if active else None,
            })
            return None

        if not self.verify(update, artifact):
            return None

        self.store.stage(version.version_id, artifact)
        self._move(SlotState.STAGED)

        if self.auto_activate:
            return self.activate(version.version_id)
        return self.store.get(version.version_id)

    def verify(self, update: ModelUpdate, artifact: bytes) -> bool:
        """Size + checksum check before any swap.

        On failure the artifact is discarded and the active version is left
        untouched.
        """
        self.store.mark_verifying(update.version_id)
        self._move(SlotState.VERIFYING)
        try:
            verify_artifact(update, artifact)
        except TerminalError as e:
            self.store.fail(update.version_id)
            self._move(SlotState.IDLE)
            active = self.store.active()
            self.bus.publish("model_verification_failed", {
                "version_id": update.version_id,
                "reason": f"{type(e).__name__}: {e}",
                "active_version": active.version_id if active else None,
            })
            return False
        return True

    def activate(self, version_id: str) -> ModelVersion:
        """Atomic swap to a STAGED version (waits for in-flight inference)."""
        version = self.store.activate(version_id)
        if self._slot is SlotState.STAGED:
            self._move(SlotState.ACTIVE)
        return version

    # -- inference path -----------------------------------------------------

    def run_inference(self, runtime: InferenceRuntime, image: Any) -> Any:
        """Run inference on the active model, holding the swap lock.

        The first outcome after an activation decides it: success confirms
        the new version, failure rolls back to the previous one.
        """
        with self.store.active_model() as handle:
            load = getattr(runtime, "load", None)
            if load is not None and self._loaded_version != handle.version.version_id:
                load(handle)
                self._loaded_version = handle.version.version_id
            try:
                result = runtime.infer(image)
            except InferenceError as e:
                if not handle.version.confirmed and self.store.rollback_target() is not None:
                    self.store.rollback(f"first_inference_failed: {e}")
                    self._loaded_version = None
                    self._settle()
                raise

            if not handle.version.confirmed:
                self.store.confirm_active()
                self._settle()
            return result

    def _settle(self) -> None:
        with self._slot_lock:
            if self._slot is SlotState.ACTIVE:
                self._slot = SlotState.IDLE

    # -- periodic worker ----------------------------------------------------

    def _on_transition(self, transition: ConnectivityTransition) -> None:
        if transition.stable and transition.new.online:
            self._wake.set()

    def start(self) -> None:
        """Periodic checks plus a check on every stable transition online."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()

        def loop():
            while not self._stop.is_set():
                self._wake.wait(self.check_interval)
                self._wake.clear()
                if self._stop.is_set():
                    break
                self.check_for_update()

        self._worker = threading.Thread(target=loop, name="model-update-check", daemon=True)
        self._worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        self._executor.shutdown(wait=False)

    def close(self) -> None:
        self.stop()
        self._unsubscribe()
