"""Data directory layout.

Every persisted table lives under one data directory, $FIELDLINK_HOME or
~/.fieldlink by default.
"""
import os
from pathlib import Path

ENV_HOME = "FIELDLINK_HOME"

QUEUE_TABLE = "queue.json"
PAYLOAD_DIR = "payloads"
CACHE_TABLE = "cache.json"
SESSION_TABLE = "sessions.json"
MODEL_DIR = "models"
RECEIPT_LEDGER = "receipts.jsonl"


def data_home() -> Path:
    """Resolve the data directory (not created here)."""
    override = os.environ.get(ENV_HOME)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".fieldlink"


def queue_path(home: Path | None = None) -> Path:
    return (home or data_home()) / QUEUE_TABLE


def cache_path(home: Path | None = None) -> Path:
    return (home or data_home()) / CACHE_TABLE


def session_path(home: Path | None = None) -> Path:
    return (home or data_home()) / SESSION_TABLE


def model_root(home: Path | None = None) -> Path:
    return (home or data_home()) / MODEL_DIR


def ledger_path(home: Path | None = None) -> Path:
    return (home or data_home()) / RECEIPT_LEDGER
