"""
fieldlink - offline-first glue for a crop and livestock advisory client

Local inference answers instantly with no network. Remote advice is queued,
shaped to the link, and cached for the next time the farmer is offline.

Every state change emits a receipt.
"""

__version__ = "0.1.0"

from fieldlink.core.receipt import StopRule, dual_hash, emit_receipt
from fieldlink.core.schemas import RECEIPT_SCHEMAS, validate_receipt
from fieldlink.connectivity.monitor import ConnectivityMonitor, ConnectivityState
from fieldlink.sync.engine import SyncEngine
from fieldlink.cache.store import CacheStore
from fieldlink.models.store import ModelStore
from fieldlink.models.updater import ModelUpdateManager
from fieldlink.advisory.orchestrator import AdvisoryOrchestrator
from fieldlink.client import FieldlinkClient, open_client

__all__ = [
    "dual_hash",
    "emit_receipt",
    "StopRule",
    "validate_receipt",
    "RECEIPT_SCHEMAS",
    "ConnectivityMonitor",
    "ConnectivityState",
    "SyncEngine",
    "CacheStore",
    "ModelStore",
    "ModelUpdateManager",
    "AdvisoryOrchestrator",
    "FieldlinkClient",
    "open_client",
    "__version__",
]
