"""Core subpackage: receipts, errors, retry primitive, persistence.

Exports all from receipt.py, schemas.py, events.py, retry.py and errors.py.
"""
from .receipt import StopRule, dual_hash, emit_receipt, utc_now_iso
from .schemas import RECEIPT_SCHEMAS, REQUIRED_FIELDS, validate_receipt
from .events import ReceiptBus
from .ledger import LedgerStore
from .retry import RetryPolicy, RetryQueue, exponential_backoff, retry_call
from .errors import (
    CacheEntryNotFound,
    CapacityError,
    ChecksumMismatch,
    FieldlinkError,
    IllegalTransition,
    InferenceError,
    MalformedResponse,
    OperationRefused,
    PayloadTooLarge,
    RateLimited,
    RetriesExhausted,
    ServiceUnavailable,
    SizeMismatch,
    TerminalError,
    TransientError,
    TransportTimeout,
)

__all__ = [
    # Receipt primitives
    "dual_hash",
    "emit_receipt",
    "utc_now_iso",
    "StopRule",
    # Schemas
    "RECEIPT_SCHEMAS",
    "REQUIRED_FIELDS",
    "validate_receipt",
    # Events
    "ReceiptBus",
    "LedgerStore",
    # Retry
    "RetryPolicy",
    "RetryQueue",
    "exponential_backoff",
    "retry_call",
    # Errors
    "FieldlinkError",
    "TransientError",
    "TransportTimeout",
    "RateLimited",
    "ServiceUnavailable",
    "RetriesExhausted",
    "TerminalError",
    "MalformedResponse",
    "ChecksumMismatch",
    "SizeMismatch",
    "CapacityError",
    "PayloadTooLarge",
    "OperationRefused",
    "InferenceError",
    "IllegalTransition",
    "CacheEntryNotFound",
]
