from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS resolution_cache (
    cache_key TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    quality_tier TEXT NOT NULL,
    status TEXT NOT NULL,
    locator TEXT NULL,
    mime_hint TEXT NULL,
    source_provider TEXT NULL,
    resolved_at TEXT NULL,
    failure_reason TEXT NULL,
    attempt_count INTEGER NOT NULL,
    stored_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resolution_cache_expires_at
ON resolution_cache(expires_at);

CREATE TABLE IF NOT EXISTS resolution_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_key TEXT NOT NULL,
    video_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    quality_tier TEXT NOT NULL,
    provider TEXT NOT NULL,
    attempt_number INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    failure_kind TEXT NULL,
    failure_reason TEXT NULL,
    locator TEXT NULL,
    mime_hint TEXT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resolution_attempts_cache_key
ON resolution_attempts(cache_key, id);

CREATE INDEX IF NOT EXISTS idx_resolution_attempts_ended_at
ON resolution_attempts(ended_at);
"""

# Writers from request threads and queue workers wait on each other instead of failing.
BUSY_TIMEOUT_SECONDS = 10.0


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
