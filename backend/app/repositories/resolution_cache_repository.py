from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import cast

from backend.app.repositories.common import parse_timestamp, to_optional_str, utc_now
from backend.app.repositories.database import Database
from backend.app.services.media_types import (
    CacheEntry,
    CacheStatus,
    MediaKind,
    QualityTier,
    ResolutionRequest,
    ResolvedMedia,
)

_UPSERT_SQL = """
INSERT INTO resolution_cache
(
    cache_key,
    video_id,
    kind,
    quality_tier,
    status,
    locator,
    mime_hint,
    source_provider,
    resolved_at,
    failure_reason,
    attempt_count,
    stored_at,
    expires_at
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(cache_key) DO UPDATE SET
    status = excluded.status,
    locator = excluded.locator,
    mime_hint = excluded.mime_hint,
    source_provider = excluded.source_provider,
    resolved_at = excluded.resolved_at,
    failure_reason = excluded.failure_reason,
    attempt_count = excluded.attempt_count,
    stored_at = excluded.stored_at,
    expires_at = excluded.expires_at
"""


class ResolutionCacheRepository:
    """At most one live entry per cache key; expired rows read as absent and are evicted lazily."""

    def __init__(self, db: Database, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    def get(self, cache_key: str) -> CacheEntry | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM resolution_cache WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
            if row is None:
                return None

            entry = _row_to_entry(row)
            if entry is not None and entry.expires_at > self._clock():
                return entry

            # Compare-and-delete so a concurrent fresh overwrite survives the eviction.
            conn.execute(
                "DELETE FROM resolution_cache WHERE cache_key = ? AND expires_at = ?",
                (cache_key, row["expires_at"]),
            )
        return None

    def put_resolved(
        self,
        *,
        request: ResolutionRequest,
        media: ResolvedMedia,
        ttl_seconds: int,
        attempt_count: int,
    ) -> CacheEntry:
        return self._put(
            request=request,
            status="resolved",
            media=media,
            failure_reason=None,
            ttl_seconds=ttl_seconds,
            attempt_count=attempt_count,
        )

    def put_failed(
        self,
        *,
        request: ResolutionRequest,
        reason: str,
        ttl_seconds: int,
        attempt_count: int,
    ) -> CacheEntry:
        return self._put(
            request=request,
            status="failed",
            media=None,
            failure_reason=reason,
            ttl_seconds=ttl_seconds,
            attempt_count=attempt_count,
        )

    def delete(self, cache_key: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM resolution_cache WHERE cache_key = ?",
                (cache_key,),
            )
            return cursor.rowcount > 0

    def purge_expired(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM resolution_cache WHERE expires_at <= ?",
                (self._clock().isoformat(),),
            )
            return cursor.rowcount

    def _put(
        self,
        *,
        request: ResolutionRequest,
        status: CacheStatus,
        media: ResolvedMedia | None,
        failure_reason: str | None,
        ttl_seconds: int,
        attempt_count: int,
    ) -> CacheEntry:
        stored_at = self._clock()
        expires_at = stored_at + timedelta(seconds=max(0, ttl_seconds))
        entry = CacheEntry(
            cache_key=request.cache_key,
            video_id=request.video_id,
            kind=request.kind,
            quality_tier=request.quality_tier,
            status=status,
            media=media,
            failure_reason=failure_reason,
            attempt_count=max(0, attempt_count),
            stored_at=stored_at,
            expires_at=expires_at,
        )
        with self._db.connection() as conn:
            conn.execute(
                _UPSERT_SQL,
                (
                    entry.cache_key,
                    entry.video_id,
                    entry.kind,
                    entry.quality_tier,
                    entry.status,
                    media.locator if media is not None else None,
                    media.mime_hint if media is not None else None,
                    media.source_provider if media is not None else None,
                    media.resolved_at.isoformat() if media is not None else None,
                    failure_reason,
                    entry.attempt_count,
                    stored_at.isoformat(),
                    expires_at.isoformat(),
                ),
            )
        return entry


def _row_to_entry(row: sqlite3.Row) -> CacheEntry | None:
    stored_at = parse_timestamp(row["stored_at"])
    expires_at = parse_timestamp(row["expires_at"])
    if stored_at is None or expires_at is None:
        return None

    status = str(row["status"])
    media: ResolvedMedia | None = None
    if status == "resolved":
        locator = to_optional_str(row["locator"])
        resolved_at = parse_timestamp(row["resolved_at"])
        if locator is None or resolved_at is None:
            return None
        media = ResolvedMedia(
            locator=locator,
            mime_hint=to_optional_str(row["mime_hint"]),
            source_provider=str(row["source_provider"] or ""),
            resolved_at=resolved_at,
        )
    elif status != "failed":
        return None

    return CacheEntry(
        cache_key=str(row["cache_key"]),
        video_id=str(row["video_id"]),
        kind=cast(MediaKind, str(row["kind"])),
        quality_tier=cast(QualityTier, str(row["quality_tier"])),
        status=cast(CacheStatus, status),
        media=media,
        failure_reason=to_optional_str(row["failure_reason"]),
        attempt_count=int(row["attempt_count"]),
        stored_at=stored_at,
        expires_at=expires_at,
    )
