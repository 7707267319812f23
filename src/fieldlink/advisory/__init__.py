"""Advisory orchestration: fingerprinting, shaping, sessions, translation."""
from fieldlink.advisory.fingerprint import advisory_fingerprint, fingerprint_for
from fieldlink.advisory.orchestrator import AdvisoryOrchestrator
from fieldlink.advisory.session import AdvisorySession, SessionRegistry
from fieldlink.advisory.shaping import (
    PAYLOAD_CEILINGS,
    ShapedPayload,
    ceiling_for,
    decode_body,
    encode_body,
    recompress,
    shape_payload,
)
from fieldlink.advisory.translation import TranslationGateway, TranslationService
from fieldlink.advisory.types import (
    AdvisoryResult,
    AdvisoryStatus,
    DetectionResult,
    FarmContext,
    MultimodalInput,
)

__all__ = [
    "advisory_fingerprint",
    "fingerprint_for",
    "AdvisoryOrchestrator",
    "AdvisorySession",
    "SessionRegistry",
    "PAYLOAD_CEILINGS",
    "ShapedPayload",
    "ceiling_for",
    "decode_body",
    "encode_body",
    "recompress",
    "shape_payload",
    "TranslationGateway",
    "TranslationService",
    "AdvisoryResult",
    "AdvisoryStatus",
    "DetectionResult",
    "FarmContext",
    "MultimodalInput",
]
