from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from typing import cast

from backend.app.repositories.common import parse_timestamp, to_optional_str
from backend.app.repositories.database import Database
from backend.app.services.media_types import (
    AttemptFailure,
    AttemptRecord,
    FailureKind,
    MediaKind,
    QualityTier,
    ResolutionRequest,
    ResolvedMedia,
)


class AttemptLedgerRepository:
    """Append-only log of provider attempts; row id order is chronological order."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(self, record: AttemptRecord) -> int:
        outcome = record.outcome
        if isinstance(outcome, ResolvedMedia):
            outcome_label = "success"
            failure_kind = None
            failure_reason = None
            locator: str | None = outcome.locator
            mime_hint = outcome.mime_hint
        else:
            outcome_label = "failure"
            failure_kind = outcome.kind.value
            failure_reason = outcome.reason
            locator = None
            mime_hint = None

        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO resolution_attempts
                (
                    cache_key,
                    video_id,
                    kind,
                    quality_tier,
                    provider,
                    attempt_number,
                    outcome,
                    failure_kind,
                    failure_reason,
                    locator,
                    mime_hint,
                    started_at,
                    ended_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.request.cache_key,
                    record.request.video_id,
                    record.request.kind,
                    record.request.quality_tier,
                    record.provider,
                    record.attempt_number,
                    outcome_label,
                    failure_kind,
                    failure_reason,
                    locator,
                    mime_hint,
                    record.started_at.isoformat(),
                    record.ended_at.isoformat(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def list_for_key(self, cache_key: str, *, limit: int = 100) -> list[AttemptRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM (
                    SELECT *
                    FROM resolution_attempts
                    WHERE cache_key = ?
                    ORDER BY id DESC
                    LIMIT ?
                )
                ORDER BY id ASC
                """,
                (cache_key, max(1, limit)),
            ).fetchall()
        return [record for record in (_row_to_record(row) for row in rows) if record is not None]

    def list_recent(self, *, limit: int = 50) -> list[AttemptRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM resolution_attempts
                ORDER BY id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        records = [record for record in (_row_to_record(row) for row in rows) if record is not None]
        records.reverse()
        return records

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete attempts that ended before `cutoff`; returns the number of rows removed."""
        with self._db.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM resolution_attempts WHERE ended_at < ?",
                (cutoff.astimezone(UTC).isoformat(),),
            )
            return cursor.rowcount

    def count_for_key(self, cache_key: str) -> int:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM resolution_attempts WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
        if row is None:
            return 0
        return int(row["total"])


def _row_to_record(row: sqlite3.Row) -> AttemptRecord | None:
    started_at = parse_timestamp(row["started_at"])
    ended_at = parse_timestamp(row["ended_at"])
    if started_at is None or ended_at is None:
        return None

    request = ResolutionRequest(
        video_id=str(row["video_id"]),
        kind=cast(MediaKind, str(row["kind"])),
        quality_tier=cast(QualityTier, str(row["quality_tier"])),
    )
    provider = str(row["provider"])

    outcome: ResolvedMedia | AttemptFailure
    if row["outcome"] == "success":
        locator = to_optional_str(row["locator"])
        if locator is None:
            return None
        outcome = ResolvedMedia(
            locator=locator,
            mime_hint=to_optional_str(row["mime_hint"]),
            source_provider=provider,
            resolved_at=ended_at,
        )
    else:
        try:
            failure_kind = FailureKind(str(row["failure_kind"]))
        except ValueError:
            failure_kind = FailureKind.INVALID_RESPONSE
        outcome = AttemptFailure(
            kind=failure_kind,
            reason=str(row["failure_reason"] or ""),
        )

    return AttemptRecord(
        request=request,
        provider=provider,
        attempt_number=int(row["attempt_number"]),
        outcome=outcome,
        started_at=started_at,
        ended_at=ended_at,
    )
