"""Receipt schema definitions and validation.

Only terminal and high-priority receipts carry a schema: these are the ones a
UI or operator reacts to, so their shape is contractual.

Constants:
    RECEIPT_SCHEMAS: Schema dicts keyed by receipt_type
    REQUIRED_FIELDS: Fields required in all receipts

Functions:
    validate_receipt: Validate receipt against schema
"""
from .receipt import StopRule


REQUIRED_FIELDS = ["receipt_type", "ts", "tenant_id", "payload_hash"]


RECEIPT_SCHEMAS = {
    "connectivity_transition": {
        "old_state": str,
        "new_state": str,
        "stable": bool,
        "high_priority": bool,
        "estimated_kbps": (float, int, type(None)),
    },
    "request_dead_lettered": {
        "request_id": str,
        "kind": str,
        "attempts": int,
        "reason": str,
    },
    "queue_overflow": {
        "evicted_request_id": str,
        "incoming_request_id": str,
        "capacity": int,
    },
    "model_download_exhausted": {
        "version_id": str,
        "version": str,
        "attempts": int,
        "active_version": (str, type(None)),
    },
    "model_verification_failed": {
        "version_id": str,
        "reason": str,
        "active_version": (str, type(None)),
    },
    "model_rolled_back": {
        "rolled_back_version": str,
        "restored_version": (str, type(None)),
        "reason": str,
    },
}


def validate_receipt(receipt: dict) -> bool:
    """Validate receipt has required fields and matches its schema.

    Receipt types without a schema only need the required fields.

    Args:
        receipt: Receipt dict to validate

    Returns:
        True if valid

    Raises:
        StopRule: If validation fails (missing field or wrong type)
    """
    if not isinstance(receipt, dict):
        raise StopRule("Receipt must be a dict")

    for field in REQUIRED_FIELDS:
        if field not in receipt:
            raise StopRule(f"Missing required field: {field}")

    schema = RECEIPT_SCHEMAS.get(receipt["receipt_type"])
    if schema is None:
        return True

    for field, expected in schema.items():
        if field not in receipt:
            raise StopRule(f"{receipt['receipt_type']}: missing field {field}")
        if not isinstance(receipt[field], expected):
            raise StopRule(
                f"{receipt['receipt_type']}: field {field} has type "
                f"{type(receipt[field]).__name__}"
            )

    return True
