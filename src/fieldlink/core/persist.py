"""File-backed JSON tables.

No database required. Each table is one JSON document, rewritten through a
temp file + os.replace so a crash never leaves a half-written table.
"""
import json
import os
from pathlib import Path


def load_json(path: Path | None, default):
    """Load a JSON table, or return default when the file is missing."""
    if path is None or not path.exists():
        return default
    with open(path) as f:
        return json.load(f)


def save_json(path: Path | None, data) -> None:
    """Atomically write a JSON table. No-op for in-memory stores."""
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Atomically write a binary blob (payloads, model artifacts)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
