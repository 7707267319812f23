"""Core receipt primitives used by every fieldlink component.

Functions:
    dual_hash: SHA256:BLAKE3 dual-hash format
    emit_receipt: Emit receipt with required fields to stdout
    StopRule: Exception for invariant violations
"""
import hashlib
import json
from datetime import datetime, timezone

import blake3

from fieldlink.config import features


class StopRule(Exception):
    """Raised when an invariant breaks. Never catch silently."""
    pass


def dual_hash(data: bytes | str | dict) -> str:
    """Compute dual hash in format 'sha256hex:blake3hex'.

    Pure function with no side effects.

    Args:
        data: Bytes, string, or dict to hash

    Returns:
        String in format 'sha256hex:blake3hex' (both 64 hex chars)
    """
    if isinstance(data, dict):
        data = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    if isinstance(data, str):
        data = data.encode("utf-8")

    sha256_hex = hashlib.sha256(data).hexdigest()
    blake3_hex = blake3.blake3(data).hexdigest()

    return f"{sha256_hex}:{blake3_hex}"


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with a trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def emit_receipt(receipt_type: str, data: dict, tenant_id: str = "default") -> dict:
    """Emit a receipt with standard required fields.

    Prints JSON to stdout with flush=True unless FEATURE_RECEIPT_STDOUT is off.

    Args:
        receipt_type: Type of receipt (request_enqueued, cache_evicted, ...)
        data: Receipt payload data
        tenant_id: Tenant identifier (default: "default")

    Returns:
        Complete receipt dict with receipt_type, ts, tenant_id, payload_hash
    """
    tenant_id = data.get("tenant_id", tenant_id)

    payload_bytes = json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    receipt = {
        "receipt_type": receipt_type,
        "ts": utc_now_iso(),
        "tenant_id": tenant_id,
        "payload_hash": dual_hash(payload_bytes),
        **data
    }

    if features.FEATURE_RECEIPT_STDOUT:
        print(json.dumps(receipt, sort_keys=True, default=str), flush=True)

    return receipt
