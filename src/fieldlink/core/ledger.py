"""Append-only receipt ledger.

Background workers (sync drain, model updates) fail where nobody is
watching. The ledger keeps their receipts on disk so a later process, or the
`fieldlink receipts` command, can still see what went wrong.

One JSON object per line, appended under an exclusive file lock. A line cut
short by a crash mid-write is skipped on read.
"""
import fcntl
import json
from collections import Counter, deque
from pathlib import Path
from typing import Iterable, Iterator

# Receipts a farmer or operator should hear about
ALERT_TYPES = (
    "request_dead_lettered",
    "queue_overflow",
    "model_rolled_back",
    "model_verification_failed",
    "model_download_exhausted",
    "model_update_error",
    "translation_degraded",
    "subscriber_error",
)


class LedgerStore:
    """JSONL receipt ledger under the data directory.

    The file is created on first append; reading a missing ledger yields
    nothing.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def append(self, receipt: dict) -> str:
        """Append one receipt. Returns its payload_hash."""
        line = json.dumps(receipt, sort_keys=True, default=str) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(line)
                f.flush()
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        return receipt.get("payload_hash", "")

    def __iter__(self) -> Iterator[dict]:
        if not self.path.exists():
            return
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue

    def tail(
        self,
        limit: int | None = None,
        receipt_types: Iterable[str] | None = None,
        since: str | None = None,
    ) -> list[dict]:
        """Most recent receipts, oldest first.

        Args:
            limit: Keep only the last N matches (None = all)
            receipt_types: Only these receipt types
            since: Only receipts with ts >= this ISO-8601 UTC timestamp
        """
        wanted = set(receipt_types) if receipt_types is not None else None
        matches: deque = deque(maxlen=limit)
        for receipt in self:
            if wanted is not None and receipt.get("receipt_type") not in wanted:
                continue
            if since is not None and receipt.get("ts", "") < since:
                continue
            matches.append(receipt)
        return list(matches)

    def alerts(self, limit: int | None = None, since: str | None = None) -> list[dict]:
        """Dead letters, overflow warnings, rollbacks and other failures."""
        return self.tail(limit=limit, receipt_types=ALERT_TYPES, since=since)

    def counts(self) -> dict[str, int]:
        """Receipt count per type."""
        return dict(Counter(r.get("receipt_type", "?") for r in self))
