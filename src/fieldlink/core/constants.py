"""fieldlink constants and thresholds.

All magic numbers live here. No exceptions.
"""

# Connectivity classification
EWMA_ALPHA = 0.3                 # Weight of the newest bandwidth sample
SLOW_MAX_KBPS = 150.0            # Below this = SLOW
MEDIUM_MAX_KBPS = 1000.0         # 150..1000 = MEDIUM, above = FAST
STABILITY_WINDOW = 3             # Consecutive identical classifications before "stable"
SIGNAL_POLL_SECONDS = 5.0        # Background observer poll interval

# Retry discipline (shared by sync, model download, translation)
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 2.0       # delay = base * 2**attempts

# Sync engine
QUEUE_CAPACITY = 100
MAX_PAYLOAD_BYTES = 8 * 1024 * 1024
DISPATCH_TIMEOUT_SECONDS = 30.0  # Soft timeout, remote side is not cancelled
DRAIN_INTERVAL_SECONDS = 60.0    # Periodic drain while online
LINK_LOSS_TIMEOUTS = 3           # Consecutive dispatch timeouts read as link down

# Request priorities (lower = more urgent)
PRIORITY_ADVISORY = 0
PRIORITY_SYNC = 5
PRIORITY_MODEL_CHECK = 9

# Cache
CACHE_CAPACITY = 50              # Non-pinned entries only

# Payload shaping ceilings per connectivity state (bytes)
CEILING_SLOW_BYTES = 500 * 1024
CEILING_MEDIUM_BYTES = 2 * 1024 * 1024
CEILING_FAST_BYTES = 5 * 1024 * 1024
DEGRADED_FLOOR_KBPS = 50.0       # Below this, no remote call is attempted

# Image recompression ladder
JPEG_QUALITY_START = 85
JPEG_QUALITY_FLOOR = 40
JPEG_QUALITY_STEP = 15
IMAGE_SCALE_STEP = 0.75
IMAGE_MIN_EDGE_PX = 64

# Advisory sessions
SESSION_INACTIVITY_SECONDS = 30 * 60
SESSION_HISTORY_LIMIT = 5        # Prior exchanges sent with each request

# Model updates
MODEL_CHECK_INTERVAL_SECONDS = 6 * 60 * 60
