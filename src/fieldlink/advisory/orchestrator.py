"""Advisory orchestrator: route a detection to cached or remote advice.

Control flow:
    detect() -> local inference -> cache write-through
    request_advisory():
        refused (consent / feature off)   -> OperationRefused, no side effects
        offline                           -> "cached" | "unavailable_offline"
        estimated bandwidth < floor       -> "degraded" (cached advice if any)
        otherwise                         -> shape, enqueue, "queued"
    delivery (sync drain thread) -> validate -> translate -> cache + session

Every path returns an explicit AdvisoryResult; nothing waits on the network.
"""
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable

from fieldlink.cache.store import CacheEntry, CacheStore
from fieldlink.config import features
from fieldlink.connectivity.monitor import ConnectivityMonitor, ConnectivityTransition
from fieldlink.core.constants import DEGRADED_FLOOR_KBPS, PRIORITY_ADVISORY
from fieldlink.core.errors import MalformedResponse, OperationRefused
from fieldlink.core.events import ReceiptBus
from fieldlink.models.updater import InferenceRuntime, ModelUpdateManager
from fieldlink.sync.engine import SyncEngine
from fieldlink.sync.queue import QueuedRequest, RequestKind, RequestState

from .fingerprint import fingerprint_for
from .session import AdvisorySession, SessionRegistry
from .shaping import ceiling_for, shape_payload
from .translation import TranslationGateway
from .types import (
    AdvisoryResult,
    AdvisoryStatus,
    DetectionResult,
    FarmContext,
    MultimodalInput,
)

# request id -> fingerprint of delivered advisories, for poll()
DELIVERED_HISTORY = 500


class AdvisoryOrchestrator:
    """Glue between local detection, the sync queue, the cache and sessions."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        engine: SyncEngine,
        cache: CacheStore,
        sessions: SessionRegistry | None = None,
        translation: TranslationGateway | None = None,
        update_manager: ModelUpdateManager | None = None,
        runtime: InferenceRuntime | None = None,
        bus: ReceiptBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.monitor = monitor
        self.engine = engine
        self.cache = cache
        self.bus = bus or engine.bus
        self.clock = clock
        self.sessions = sessions or SessionRegistry(bus=self.bus, clock=clock)
        self.translation = translation or TranslationGateway(None, bus=self.bus)
        self.update_manager = update_manager
        self.runtime = runtime
        self._cloud_available = monitor.stable_state.online
        self._delivered: "OrderedDict[str, str]" = OrderedDict()
        self._lock = threading.Lock()

        self._unsubscribe = monitor.subscribe(self._on_transition)
        engine.register_handler(RequestKind.ADVISORY, self._on_delivered)

    # -- connectivity -------------------------------------------------------

    @property
    def cloud_available(self) -> bool:
        """Cloud features follow stable transitions only; flaps are ignored."""
        return self._cloud_available

    def _on_transition(self, transition: ConnectivityTransition) -> None:
        if not transition.stable:
            return
        available = transition.new.online
        if available != self._cloud_available:
            self._cloud_available = available
            self.bus.publish("cloud_features_changed", {
                "available": available,
                "connectivity": transition.new.value,
            })

    # -- sessions -----------------------------------------------------------

    def open_session(self, farm_context: FarmContext) -> AdvisorySession:
        return self.sessions.open(farm_context)

    def get_session(self, session_id: str) -> AdvisorySession | None:
        return self.sessions.get(session_id)

    # -- detection ----------------------------------------------------------

    def detect(self, image: Any, farm_context: FarmContext) -> DetectionResult:
        """Run local inference and write the detection through to the cache.

        Raises:
            OperationRefused: No inference runtime is wired
            InferenceError: The runtime failed (after any rollback)
        """
        if self.runtime is None:
            raise OperationRefused("no_inference_runtime")
        if self.update_manager is not None:
            result = self.update_manager.run_inference(self.runtime, image)
        else:
            result = self.runtime.infer(image)
        if isinstance(result, dict):
            result = DetectionResult.from_dict(result)
        if result.crop_or_livestock is None:
            result.crop_or_livestock = farm_context.crop_or_livestock

        key = fingerprint_for(result, farm_context)
        existing = self.cache.peek(key)
        self.cache.put(CacheEntry(
            key=key,
            detection_result=result.to_dict(),
            advisory_response=existing.advisory_response if existing else None,
            user_id=farm_context.user_id,
            language=farm_context.language,
        ))
        self.bus.publish("detection_recorded", {
            "key": key,
            "disease_type": result.disease_type,
            "confidence": result.confidence,
            "model_version": result.model_version,
        })
        return result

    # -- advisory -----------------------------------------------------------

    def _cached(self, key: str) -> CacheEntry | None:
        entry = self.cache.get(key)
        if entry is None or entry.advisory_response is None:
            return None
        return entry

    def request_advisory(
        self,
        detection: DetectionResult,
        media: MultimodalInput | None,
        farm_context: FarmContext,
        session_id: str | None = None,
    ) -> AdvisoryResult:
        """Answer immediately from the cache, or queue a remote request.

        Raises:
            OperationRefused: Cloud advisory disabled or consent not granted
            PayloadTooLarge: Request cannot be shaped under the ceiling
        """
        if not features.FEATURE_CLOUD_ADVISORY_ENABLED:
            raise OperationRefused("cloud_advisory_disabled")
        if not farm_context.consent_cloud:
            raise OperationRefused("consent_not_granted")

        media = media or MultimodalInput()
        key = fingerprint_for(detection, farm_context)
        state = self.monitor.state

        if not (self.cloud_available and state.online):
            entry = self._cached(key)
            if entry is None:
                return AdvisoryResult(
                    status=AdvisoryStatus.UNAVAILABLE_OFFLINE,
                    session_id=session_id,
                    message="offline and no cached advice for this detection",
                )
            return AdvisoryResult(
                status=AdvisoryStatus.CACHED,
                advisory=entry.advisory_response,
                received_at=entry.received_at,
                session_id=session_id,
                message="offline: showing previously received advice",
            )

        estimate = self.monitor.estimated_kbps
        if estimate is not None and estimate < DEGRADED_FLOOR_KBPS:
            entry = self._cached(key)
            return AdvisoryResult(
                status=AdvisoryStatus.DEGRADED,
                advisory=entry.advisory_response if entry else None,
                received_at=entry.received_at if entry else None,
                session_id=session_id,
                message=f"link at {estimate:.0f} kbps, remote advice deferred",
            )

        session = self.sessions.get_or_open(session_id, farm_context)
        envelope = {
            "fingerprint": key,
            "session_id": session.session_id,
            "detection": detection.to_dict(),
            "farm_context": farm_context.to_dict(),
            "history": session.recent(),
        }
        ceiling = min(ceiling_for(state), ceiling_for(self.monitor.stable_state))
        shaped = shape_payload(
            media,
            ceiling,
            envelope=envelope,
            recognizer=lambda audio: self.translation.recognize(audio, farm_context.language),
        )
        request_id = self.engine.enqueue(RequestKind.ADVISORY, shaped.body, PRIORITY_ADVISORY)
        self.sessions.touch(session.session_id)

        self.bus.publish("advisory_queued", {
            "request_id": request_id,
            "key": key,
            "session_id": session.session_id,
            "size_bytes": shaped.size,
            "ceiling_bytes": ceiling,
            "dropped": shaped.dropped,
        })
        return AdvisoryResult(
            status=AdvisoryStatus.QUEUED,
            request_id=request_id,
            session_id=session.session_id,
            message="queued for delivery",
        )

    @staticmethod
    def _envelope(request: QueuedRequest) -> dict:
        return json.loads(request.payload.decode("utf-8"))

    def _on_delivered(self, request: QueuedRequest, response: dict) -> None:
        """Delivery handler for advisory requests (runs on the drain thread).

        Raises:
            MalformedResponse: No usable 'advice' text in the response
        """
        advice = response.get("advice") if isinstance(response, dict) else None
        if not isinstance(advice, str) or not advice.strip():
            raise MalformedResponse(f"advisory response for {request.id} has no advice text")

        envelope = self._envelope(request)
        key = envelope["fingerprint"]
        context = FarmContext.from_dict(envelope["farm_context"])
        dialect = context.target_dialect

        existing = self.cache.peek(key)
        already_cached = (
            existing is not None
            and existing.advisory_response is not None
            and existing.advisory_response.get("request_id") == request.id
        )
        now = self.clock()
        if already_cached:
            translated = existing.advisory_response["advice"]
        else:
            translated = self.translation.translate(advice, dialect, source_language=response.get("language"))
            advisory = {
                **response,
                "advice": translated,
                "source_advice": advice,
                "dialect": dialect,
                "request_id": request.id,
            }
            self.cache.put(CacheEntry(
                key=key,
                detection_result=envelope["detection"],
                advisory_response=advisory,
                received_at=now,
                user_id=context.user_id,
                language=context.language,
            ))

        self.sessions.append_exchange(envelope["session_id"], {
            "request_id": request.id,
            "question": envelope.get("text") or envelope.get("transcript"),
            "disease_type": envelope["detection"].get("disease_type"),
            "advice": translated,
            "at": now,
        })

        with self._lock:
            self._delivered[request.id] = key
            while len(self._delivered) > DELIVERED_HISTORY:
                self._delivered.popitem(last=False)

        self.bus.publish("advisory_delivered", {
            "request_id": request.id,
            "key": key,
            "session_id": envelope["session_id"],
            "dialect": dialect,
            "duplicate": already_cached,
        })

    def poll(self, request_id: str) -> AdvisoryResult:
        """Current outcome of a queued advisory request."""
        state = self.engine.status(request_id)

        if state is RequestState.DELIVERED:
            with self._lock:
                key = self._delivered.get(request_id)
            entry = self.cache.get(key) if key is not None else None
            if entry is not None and entry.advisory_response is not None:
                return AdvisoryResult(
                    status=AdvisoryStatus.DELIVERED,
                    request_id=request_id,
                    advisory=entry.advisory_response,
                    received_at=entry.received_at,
                    message="delivered",
                )
            return AdvisoryResult(
                status=AdvisoryStatus.DELIVERED,
                request_id=request_id,
                advisory=self.engine.result(request_id),
                message="delivered",
            )

        if state in (RequestState.QUEUED, RequestState.IN_FLIGHT):
            request = self.engine.get(request_id)
            attempts = request.attempts if request is not None else 0
            return AdvisoryResult(
                status=AdvisoryStatus.QUEUED,
                request_id=request_id,
                message=f"waiting for delivery ({attempts} failed attempts)",
            )

        if state is RequestState.DEAD_LETTERED:
            request = self.engine.get(request_id)
            entry = None
            if request is not None:
                entry = self._cached(self._envelope(request)["fingerprint"])
            return AdvisoryResult(
                status=AdvisoryStatus.FAILED,
                request_id=request_id,
                advisory=entry.advisory_response if entry else None,
                received_at=entry.received_at if entry else None,
                message=f"delivery failed: {request.last_error if request else 'unknown'}",
            )

        return AdvisoryResult(
            status=AdvisoryStatus.FAILED,
            request_id=request_id,
            message=f"request {state.value}",
        )

    def close(self) -> None:
        self._unsubscribe()
