"""Advisory sessions: per-farmer conversation history with an inactivity window."""
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from fieldlink.core.constants import SESSION_HISTORY_LIMIT, SESSION_INACTIVITY_SECONDS
from fieldlink.core.events import ReceiptBus
from fieldlink.core.persist import load_json, save_json

from .types import FarmContext


@dataclass
class AdvisorySession:
    session_id: str
    user_id: str
    farm_context: FarmContext
    history: list[dict] = field(default_factory=list)
    last_activity: float = 0.0

    def has_exchange(self, request_id: str) -> bool:
        return any(ex.get("request_id") == request_id for ex in self.history)

    def recent(self, limit: int = SESSION_HISTORY_LIMIT) -> list[dict]:
        return self.history[-limit:] if limit > 0 else []

    def to_row(self) -> dict:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "farm_context": self.farm_context.to_dict(),
            "history": self.history,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_row(cls, row: dict) -> "AdvisorySession":
        return cls(
            session_id=row["session_id"],
            user_id=row["user_id"],
            farm_context=FarmContext.from_dict(row["farm_context"]),
            history=row.get("history", []),
            last_activity=row.get("last_activity", 0.0),
        )


class SessionRegistry:
    """Owns every AdvisorySession; expired sessions are removed, not reused."""

    def __init__(
        self,
        path: str | Path | None = None,
        inactivity_seconds: float = SESSION_INACTIVITY_SECONDS,
        bus: ReceiptBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path) if path is not None else None
        self.inactivity_seconds = inactivity_seconds
        self.bus = bus or ReceiptBus()
        self.clock = clock
        self._sessions: dict[str, AdvisorySession] = {}
        self._lock = threading.RLock()
        for row in load_json(self.path, []):
            session = AdvisorySession.from_row(row)
            self._sessions[session.session_id] = session

    def _save(self) -> None:
        save_json(self.path, [s.to_row() for s in self._sessions.values()])

    def is_expired(self, session: AdvisorySession, now: float) -> bool:
        return now - session.last_activity > self.inactivity_seconds

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[AdvisorySession]:
        """Every stored session, most recently active first (expired ones included)."""
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.last_activity, reverse=True)

    def open(self, farm_context: FarmContext) -> AdvisorySession:
        with self._lock:
            session = AdvisorySession(
                session_id=str(uuid.uuid4()),
                user_id=farm_context.user_id,
                farm_context=farm_context,
                last_activity=self.clock(),
            )
            self._sessions[session.session_id] = session
            self._save()
        self.bus.publish("session_opened", {
            "session_id": session.session_id,
            "user_id": session.user_id,
        })
        return session

    def get(self, session_id: str) -> AdvisorySession | None:
        """Live session by id; None when unknown or past the inactivity window."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if self.is_expired(session, self.clock()):
                self._expire([session_id])
                return None
            return session

    def get_or_open(self, session_id: str | None, farm_context: FarmContext) -> AdvisorySession:
        if session_id is not None:
            session = self.get(session_id)
            if session is not None:
                return session
        return self.open(farm_context)

    def touch(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_activity = self.clock()
                self._save()

    def append_exchange(self, session_id: str, exchange: dict) -> bool:
        """Add one exchange; a repeated request_id is ignored.

        Returns:
            True if the exchange was appended
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            request_id = exchange.get("request_id")
            if request_id is not None and session.has_exchange(request_id):
                return False
            session.history.append(exchange)
            session.last_activity = self.clock()
            self._save()
            return True

    def expire_idle(self) -> list[str]:
        """Drop every session idle longer than the inactivity window."""
        with self._lock:
            now = self.clock()
            stale = [sid for sid, s in self._sessions.items() if self.is_expired(s, now)]
            self._expire(stale)
            return stale

    def _expire(self, session_ids: list[str]) -> None:
        if not session_ids:
            return
        for sid in session_ids:
            self._sessions.pop(sid, None)
        self._save()
        for sid in session_ids:
            self.bus.publish("session_expired", {"session_id": sid})
