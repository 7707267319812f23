"""Durable outbound request records.

File-based storage (no database required): the request table is one JSON
document, payload bytes live next to it in payloads/<id>.bin and the table
only holds a payload_ref. Requests survive restarts; anything that was
in flight when the process died comes back as queued.
"""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from fieldlink.config.paths import PAYLOAD_DIR, QUEUE_TABLE
from fieldlink.core.constants import (
    PRIORITY_ADVISORY,
    PRIORITY_MODEL_CHECK,
    PRIORITY_SYNC,
)
from fieldlink.core.persist import load_json, save_json, write_bytes_atomic


class RequestKind(Enum):
    ADVISORY = "advisory"
    SYNC = "sync"
    MODEL_CHECK = "model-check"


DEFAULT_PRIORITY = {
    RequestKind.ADVISORY: PRIORITY_ADVISORY,
    RequestKind.SYNC: PRIORITY_SYNC,
    RequestKind.MODEL_CHECK: PRIORITY_MODEL_CHECK,
}


class RequestState(Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class QueuedRequest:
    """One outbound request, owned by the sync engine until terminal."""
    id: str
    kind: RequestKind
    payload: bytes
    priority: int
    enqueued_at: float
    sequence: int
    attempts: int = 0
    next_eligible_at: float = 0.0
    state: RequestState = RequestState.QUEUED
    last_error: str | None = None

    @property
    def size(self) -> int:
        return len(self.payload)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            "priority": self.priority,
            "enqueued_at": self.enqueued_at,
            "sequence": self.sequence,
            "attempts": self.attempts,
            "next_eligible_at": self.next_eligible_at,
            "payload_ref": f"{self.id}.bin",
            "last_error": self.last_error,
        }

    @classmethod
    def from_row(cls, row: dict, payload: bytes) -> "QueuedRequest":
        state = RequestState(row.get("state", "queued"))
        if state is RequestState.IN_FLIGHT:
            state = RequestState.QUEUED
        return cls(
            id=row["id"],
            kind=RequestKind(row["kind"]),
            payload=payload,
            priority=row["priority"],
            enqueued_at=row["enqueued_at"],
            sequence=row.get("sequence", 0),
            attempts=row.get("attempts", 0),
            next_eligible_at=row.get("next_eligible_at", 0.0),
            state=state,
            last_error=row.get("last_error"),
        )


class RequestStore:
    """Request table + payload blobs under one directory.

    With root=None everything stays in memory (nothing written).
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root is not None else None
        self._memory_payloads: dict[str, bytes] = {}

    @property
    def table_path(self) -> Path | None:
        return self.root / QUEUE_TABLE if self.root is not None else None

    def _payload_path(self, ref: str) -> Path:
        return self.root / PAYLOAD_DIR / ref

    def save_payload(self, request: QueuedRequest) -> None:
        ref = f"{request.id}.bin"
        if self.root is None:
            self._memory_payloads[ref] = request.payload
            return
        write_bytes_atomic(self._payload_path(ref), request.payload)

    def load_payload(self, ref: str) -> bytes:
        if self.root is None:
            return self._memory_payloads.get(ref, b"")
        path = self._payload_path(ref)
        if not path.exists():
            return b""
        return path.read_bytes()

    def delete_payload(self, request_id: str) -> None:
        ref = f"{request_id}.bin"
        if self.root is None:
            self._memory_payloads.pop(ref, None)
            return
        path = self._payload_path(ref)
        if path.exists():
            path.unlink()

    def save_table(self, requests: list[QueuedRequest]) -> None:
        save_json(self.table_path, [r.to_row() for r in requests])

    def load_table(self) -> list[QueuedRequest]:
        """Rehydrate every persisted request (queued and dead-lettered)."""
        rows = load_json(self.table_path, [])
        return [QueuedRequest.from_row(row, self.load_payload(row["payload_ref"])) for row in rows]
