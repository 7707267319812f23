"""Matching key between a live detection and previously cached advice.

key = dual_hash("disease|crop|language|user") over normalized fields
(lowercased, whitespace-collapsed). Confidence, region and model version are
deliberately not part of the key: the same disease on the same crop for the
same farmer in the same language reuses the cached advice.
"""
from fieldlink.core.receipt import dual_hash

from .types import DetectionResult, FarmContext


def _normalize(value: str | None) -> str:
    if value is None:
        return ""
    return " ".join(value.strip().lower().split())


def advisory_fingerprint(
    disease_type: str,
    crop_or_livestock: str,
    language: str,
    user_id: str | None = None,
) -> str:
    parts = [_normalize(disease_type), _normalize(crop_or_livestock), _normalize(language), _normalize(user_id)]
    return dual_hash("|".join(parts))


def fingerprint_for(detection: DetectionResult, context: FarmContext) -> str:
    """Cache key for a detection in a farm context.

    The farm context's crop wins over the detector's guess.
    """
    crop = context.crop_or_livestock or detection.crop_or_livestock or ""
    return advisory_fingerprint(detection.disease_type, crop, context.language, context.user_id)
