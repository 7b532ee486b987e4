from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Literal, cast

MediaKind = Literal["audio", "video"]
QualityTier = Literal["low", "medium", "high"]
CacheStatus = Literal["resolved", "failed"]

MEDIA_KINDS: frozenset[str] = frozenset({"audio", "video"})
QUALITY_TIERS: frozenset[str] = frozenset({"low", "medium", "high"})
DEFAULT_QUALITY_TIER: QualityTier = "medium"
VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")


class FailureKind(StrEnum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    INVALID_RESPONSE = "invalid_response"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class ResolutionRequest:
    video_id: str
    kind: MediaKind
    quality_tier: QualityTier = DEFAULT_QUALITY_TIER

    @property
    def cache_key(self) -> str:
        return build_cache_key(self.video_id, self.kind, self.quality_tier)


@dataclass(frozen=True)
class ResolvedMedia:
    locator: str
    mime_hint: str | None
    source_provider: str
    resolved_at: datetime


@dataclass(frozen=True)
class AttemptFailure:
    kind: FailureKind
    reason: str

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.INVALID_REQUEST


@dataclass(frozen=True)
class AttemptRecord:
    request: ResolutionRequest
    provider: str
    attempt_number: int
    outcome: ResolvedMedia | AttemptFailure
    started_at: datetime
    ended_at: datetime

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, ResolvedMedia)

    @property
    def duration_ms(self) -> int:
        return max(0, int((self.ended_at - self.started_at).total_seconds() * 1000))


@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    video_id: str
    kind: MediaKind
    quality_tier: QualityTier
    status: CacheStatus
    media: ResolvedMedia | None
    failure_reason: str | None
    attempt_count: int
    stored_at: datetime
    expires_at: datetime

    @property
    def resolved(self) -> bool:
        return self.status == "resolved" and self.media is not None


@dataclass(frozen=True)
class MediaResolutionResult:
    media: ResolvedMedia
    cache_hit: bool
    attempts: int


@dataclass(frozen=True)
class VideoInfo:
    """Display metadata for one video; counters are 0 when the source does not report them."""

    video_id: str
    title: str
    author: str | None
    author_url: str | None
    thumbnail_url: str | None
    description: str | None
    duration_seconds: int
    view_count: int
    upload_date: str | None
    source_provider: str


class MediaResolutionError(Exception):
    pass


class InvalidMediaRequestError(MediaResolutionError):
    pass


class ResolutionTimeoutError(MediaResolutionError):
    def __init__(self, message: str, *, cache_key: str) -> None:
        super().__init__(message)
        self.cache_key = cache_key


class ResolutionQueueUnavailableError(MediaResolutionError):
    pass


class VideoInfoUnavailableError(MediaResolutionError):
    def __init__(self, *, video_id: str, source_failures: Mapping[str, AttemptFailure]) -> None:
        super().__init__("Video details are not available right now. Try again later.")
        self.video_id = video_id
        self.source_failures: dict[str, AttemptFailure] = dict(source_failures)

    def summary(self) -> str:
        return "; ".join(
            f"{source}={failure.kind.value}" for source, failure in self.source_failures.items()
        )


class AllProvidersExhaustedError(MediaResolutionError):
    """
    Terminal failure after every provider used its retry budget.

    `provider_failures` holds the last failure per provider for logs and diagnostics;
    the exception message itself stays generic because it is shown to callers.
    """

    def __init__(
        self,
        *,
        cache_key: str,
        provider_failures: Mapping[str, AttemptFailure] | None = None,
        from_cache: bool = False,
    ) -> None:
        super().__init__("No provider could resolve this media right now. Try again later.")
        self.cache_key = cache_key
        self.provider_failures: dict[str, AttemptFailure] = dict(provider_failures or {})
        self.from_cache = from_cache

    def summary(self) -> str:
        if not self.provider_failures:
            return "no provider failures recorded"
        return "; ".join(
            f"{provider}={failure.kind.value}"
            for provider, failure in self.provider_failures.items()
        )


def build_cache_key(video_id: str, kind: str, quality_tier: str) -> str:
    return f"media:{video_id}:{kind}:{quality_tier}"


def is_valid_video_id(video_id: str) -> bool:
    return VIDEO_ID_PATTERN.fullmatch(video_id) is not None


def build_resolution_request(
    video_id: str,
    kind: str,
    quality_tier: str | None = None,
) -> ResolutionRequest:
    normalized_id = video_id.strip() if isinstance(video_id, str) else ""
    if not normalized_id:
        raise InvalidMediaRequestError("A video id is required.")

    normalized_kind = kind.strip().lower() if isinstance(kind, str) else ""
    if normalized_kind not in MEDIA_KINDS:
        raise InvalidMediaRequestError("Media kind must be one of: audio, video.")

    if quality_tier is None or not quality_tier.strip():
        normalized_tier: str = DEFAULT_QUALITY_TIER
    else:
        normalized_tier = quality_tier.strip().lower()
    if normalized_tier not in QUALITY_TIERS:
        raise InvalidMediaRequestError("Quality tier must be one of: low, medium, high.")

    return ResolutionRequest(
        video_id=normalized_id,
        kind=cast(MediaKind, normalized_kind),
        quality_tier=cast(QualityTier, normalized_tier),
    )
