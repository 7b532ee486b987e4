from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backend.app.services.media_types import (
    AttemptRecord,
    CacheEntry,
    MediaResolutionResult,
    VideoInfo,
)


def _normalize_optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized:
        return None
    return normalized


class ResolveMediaRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(max_length=64)
    kind: str = Field(max_length=16)
    quality_tier: str | None = Field(default=None, max_length=16)
    deadline_seconds: float | None = Field(default=None, gt=0, le=300)

    @field_validator("quality_tier", mode="before")
    @classmethod
    def _normalize_quality_tier(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class EnqueueMediaRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(max_length=64)
    kind: str = Field(max_length=16)
    quality_tier: str | None = Field(default=None, max_length=16)

    @field_validator("quality_tier", mode="before")
    @classmethod
    def _normalize_quality_tier(cls, value: object) -> str | None:
        return _normalize_optional_text(value)


class ResolvedMediaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    locator: str
    mime_hint: str | None = None
    source_provider: str
    resolved_at: datetime
    cache_hit: bool
    attempts: int

    @classmethod
    def from_result(cls, result: MediaResolutionResult) -> ResolvedMediaResponse:
        return cls(
            locator=result.media.locator,
            mime_hint=result.media.mime_hint,
            source_provider=result.media.source_provider,
            resolved_at=result.media.resolved_at,
            cache_hit=result.cache_hit,
            attempts=result.attempts,
        )


class VideoInfoResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    title: str
    author: str | None = None
    author_url: str | None = None
    thumbnail_url: str | None = None
    description: str | None = None
    duration_seconds: int
    view_count: int
    upload_date: str | None = None
    source_provider: str

    @classmethod
    def from_info(cls, info: VideoInfo) -> VideoInfoResponse:
        return cls(
            video_id=info.video_id,
            title=info.title,
            author=info.author,
            author_url=info.author_url,
            thumbnail_url=info.thumbnail_url,
            description=info.description,
            duration_seconds=info.duration_seconds,
            view_count=info.view_count,
            upload_date=info.upload_date,
            source_provider=info.source_provider,
        )


class EnqueueMediaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: Literal["cached", "queued", "pending"]
    cache_key: str


class ResolutionStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: Literal["resolved", "failed", "pending", "absent"]
    cache_key: str
    locator: str | None = None
    mime_hint: str | None = None
    source_provider: str | None = None
    resolved_at: datetime | None = None
    expires_at: datetime | None = None
    detail: str | None = None

    @classmethod
    def from_entry(cls, entry: CacheEntry, *, failed_detail: str) -> ResolutionStatusResponse:
        if entry.resolved and entry.media is not None:
            return cls(
                state="resolved",
                cache_key=entry.cache_key,
                locator=entry.media.locator,
                mime_hint=entry.media.mime_hint,
                source_provider=entry.media.source_provider,
                resolved_at=entry.media.resolved_at,
                expires_at=entry.expires_at,
            )
        return cls(
            state="failed",
            cache_key=entry.cache_key,
            expires_at=entry.expires_at,
            detail=failed_detail,
        )


class AttemptResponse(BaseModel):
    """Ledger row as exposed over HTTP; provider-side failure text stays internal."""

    model_config = ConfigDict(extra="forbid")

    provider: str
    attempt_number: int
    outcome: Literal["success", "failure"]
    failure_kind: str | None = None
    started_at: datetime
    ended_at: datetime
    duration_ms: int

    @classmethod
    def from_record(cls, record: AttemptRecord) -> AttemptResponse:
        failure_kind = None if record.succeeded else getattr(record.outcome, "kind", None)
        return cls(
            provider=record.provider,
            attempt_number=record.attempt_number,
            outcome="success" if record.succeeded else "failure",
            failure_kind=None if failure_kind is None else str(failure_kind),
            started_at=record.started_at,
            ended_at=record.ended_at,
            duration_ms=record.duration_ms,
        )


class AttemptListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cache_key: str
    attempts: list[AttemptResponse]


class ProviderResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    shape: str
    priority: int
    timeout_seconds: float


class ProviderListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: list[ProviderResponse]
