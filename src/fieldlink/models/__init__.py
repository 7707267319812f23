"""Model lifecycle: version store and update manager."""
from fieldlink.models.store import (
    MODEL_TRANSITIONS,
    ModelHandle,
    ModelState,
    ModelStore,
    ModelUpdate,
    ModelVersion,
    is_newer,
    parse_semver,
    verify_artifact,
)
from fieldlink.models.updater import (
    SLOT_TRANSITIONS,
    ArtifactSource,
    InferenceRuntime,
    ModelUpdateManager,
    SlotState,
)

__all__ = [
    "MODEL_TRANSITIONS",
    "ModelHandle",
    "ModelState",
    "ModelStore",
    "ModelUpdate",
    "ModelVersion",
    "is_newer",
    "parse_semver",
    "verify_artifact",
    "SLOT_TRANSITIONS",
    "ArtifactSource",
    "InferenceRuntime",
    "ModelUpdateManager",
    "SlotState",
]
