"""Advisory data shapes exchanged with collaborators and callers."""
import time
from dataclasses import asdict, dataclass, field
from enum import Enum


@dataclass
class DetectionResult:
    """Output of the on-device inference runtime."""
    disease_type: str
    confidence: float
    crop_or_livestock: str | None = None
    model_version: str | None = None
    detected_at: float = field(default_factory=time.time)
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "DetectionResult":
        return cls(
            disease_type=data["disease_type"],
            confidence=data.get("confidence", 0.0),
            crop_or_livestock=data.get("crop_or_livestock"),
            model_version=data.get("model_version"),
            detected_at=data.get("detected_at", time.time()),
            details=data.get("details", {}),
        )


@dataclass
class FarmContext:
    user_id: str
    crop_or_livestock: str
    language: str
    dialect: str | None = None
    region: str | None = None
    consent_cloud: bool = True
    extra: dict = field(default_factory=dict)

    @property
    def target_dialect(self) -> str:
        return self.dialect or self.language

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "FarmContext":
        return cls(
            user_id=data["user_id"],
            crop_or_livestock=data["crop_or_livestock"],
            language=data["language"],
            dialect=data.get("dialect"),
            region=data.get("region"),
            consent_cloud=data.get("consent_cloud", True),
            extra=data.get("extra", {}),
        )


@dataclass
class MultimodalInput:
    images: list[bytes] = field(default_factory=list)
    text: str | None = None
    audio: bytes | None = None


class AdvisoryStatus(Enum):
    QUEUED = "queued"
    DELIVERED = "delivered"
    CACHED = "cached"
    UNAVAILABLE_OFFLINE = "unavailable_offline"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class AdvisoryResult:
    """Always-explicit answer to an advisory request (never an indefinite wait)."""
    status: AdvisoryStatus
    request_id: str | None = None
    advisory: dict | None = None
    received_at: float | None = None
    session_id: str | None = None
    message: str = ""
