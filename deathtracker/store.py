"""SQLite snapshot store: resume tracking without replaying the whole log."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    log_path TEXT PRIMARY KEY,
    log_offset INTEGER NOT NULL,
    signature TEXT NOT NULL,
    state_json TEXT NOT NULL,
    saved_at REAL NOT NULL
);
"""

DEFAULT_DB_PATH = "deathtracker.db"
SIGNATURE_BYTES = 1024


def file_signature(path: str | Path, length: int = SIGNATURE_BYTES) -> str:
    """SHA-1 of the first bytes of a file; empty string if unreadable.

    Client.txt is append-only, so its head identifies the file across growth.
    """
    try:
        with open(path, "rb") as f:
            head = f.read(length)
    except OSError:
        return ""
    return hashlib.sha1(head).hexdigest()


@dataclass(frozen=True, slots=True)
class SavedState:
    log_offset: int
    signature: str
    state: dict[str, Any]
    saved_at: float


class StateStore:
    """Latest saved tracker state per log file.

    One row per resolved log path; each save replaces the previous one.
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.executescript(_SCHEMA)

    def save(
        self,
        log_path: str | Path,
        log_offset: int,
        state: dict[str, Any],
        signature: str | None = None,
    ) -> None:
        """Store state reached after consuming log_offset bytes of log_path."""
        key = str(Path(log_path).resolve())
        if signature is None:
            signature = file_signature(key, min(log_offset, SIGNATURE_BYTES))
        self._conn.execute(
            "INSERT OR REPLACE INTO snapshots "
            "(log_path, log_offset, signature, state_json, saved_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (key, log_offset, signature, json.dumps(state, ensure_ascii=False), time.time()),
        )
        self._conn.commit()
        logger.debug("Saved state for %s at offset %d", key, log_offset)

    def load(self, log_path: str | Path) -> SavedState | None:
        """Return the saved state for log_path, or None on miss or corrupt row."""
        key = str(Path(log_path).resolve())
        row = self._conn.execute(
            "SELECT log_offset, signature, state_json, saved_at FROM snapshots "
            "WHERE log_path = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None

        log_offset, signature, state_json, saved_at = row
        try:
            state = json.loads(state_json)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable saved state for %s", key)
            return None
        return SavedState(
            log_offset=log_offset, signature=signature,
            state=state, saved_at=saved_at,
        )

    def close(self) -> None:
        """Close database connection."""
        self._conn.close()
