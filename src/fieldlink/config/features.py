"""Feature flags for fieldlink.

Components read these at call time, so flipping a flag (or monkeypatching it
in tests) takes effect on the next operation.

Rollout sequence for a new deployment:
1. RECEIPT_STDOUT only (local inference, everything logged)
2. CLOUD_ADVISORY (advisory requests flow through the sync queue)
3. TRANSLATION (dialect translation of remote advice)
4. MODEL_UPDATES (background download + atomic swap)
5. MODEL_UPDATES_WIFI_ONLY off (allow updates on cellular)
"""

# =============================================================================
# Receipts
# =============================================================================

# Print every receipt as a JSON line on stdout
FEATURE_RECEIPT_STDOUT = True

# Append published receipts to the JSONL receipt ledger (when a ledger is wired)
FEATURE_RECEIPT_LEDGER = True

# =============================================================================
# Cloud features
# =============================================================================

# Submit advisory requests to the remote service when connectivity allows
FEATURE_CLOUD_ADVISORY_ENABLED = True

# Translate remote advice into the farmer's dialect
FEATURE_TRANSLATION_ENABLED = True

# =============================================================================
# Model lifecycle
# =============================================================================

# Periodic manifest checks + background downloads
FEATURE_MODEL_UPDATES_ENABLED = True

# Only download model artifacts on WiFi-equivalent (FAST) links
FEATURE_MODEL_UPDATES_WIFI_ONLY = False
