from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from backend.app.repositories.attempt_ledger_repository import AttemptLedgerRepository
from backend.app.repositories.resolution_cache_repository import ResolutionCacheRepository
from backend.app.services.media_resolver import FallbackResolver
from backend.app.services.media_types import (
    AttemptRecord,
    CacheEntry,
    InvalidMediaRequestError,
    MediaResolutionResult,
    ResolutionQueueUnavailableError,
    ResolutionRequest,
    VideoInfo,
    VideoInfoUnavailableError,
    build_resolution_request,
    is_valid_video_id,
)
from backend.app.services.resolution_queue import ResolutionWorkQueue
from backend.app.services.video_info import VideoInfoLookup

LOGGER = logging.getLogger("media_resolver.service")

EnqueueStatus = Literal["cached", "queued", "pending"]


@dataclass(frozen=True)
class EnqueueOutcome:
    status: EnqueueStatus
    cache_key: str
    entry: CacheEntry | None = None


class MediaService:
    """Entry points used by the HTTP routes and the command-line script."""

    def __init__(
        self,
        resolver: FallbackResolver,
        cache_repository: ResolutionCacheRepository,
        attempt_ledger: AttemptLedgerRepository,
        work_queue: ResolutionWorkQueue | None = None,
        *,
        info_lookup: VideoInfoLookup | None = None,
    ) -> None:
        self._resolver = resolver
        self._cache = cache_repository
        self._ledger = attempt_ledger
        self._work_queue = work_queue
        self._info_lookup = info_lookup

    def resolve(
        self,
        video_id: str,
        kind: str,
        quality_tier: str | None = None,
        *,
        deadline_seconds: float | None = None,
    ) -> MediaResolutionResult:
        request = build_resolution_request(video_id, kind, quality_tier)
        return self._resolver.resolve_with_metadata(request, deadline_seconds=deadline_seconds)

    def enqueue_resolve(
        self,
        video_id: str,
        kind: str,
        quality_tier: str | None = None,
    ) -> EnqueueOutcome:
        request = _validated_request(video_id, kind, quality_tier)
        cached = self._cache.get(request.cache_key)
        if cached is not None:
            return EnqueueOutcome(status="cached", cache_key=request.cache_key, entry=cached)

        work_queue = self._work_queue
        if work_queue is None or not work_queue.running:
            raise ResolutionQueueUnavailableError("Background resolution is not running.")

        if work_queue.enqueue(request):
            LOGGER.info("media resolution queued key=%s", request.cache_key)
            return EnqueueOutcome(status="queued", cache_key=request.cache_key)
        return EnqueueOutcome(status="pending", cache_key=request.cache_key)

    def peek_cached(
        self,
        video_id: str,
        kind: str,
        quality_tier: str | None = None,
    ) -> CacheEntry | None:
        request = build_resolution_request(video_id, kind, quality_tier)
        return self._cache.get(request.cache_key)

    def is_pending(self, video_id: str, kind: str, quality_tier: str | None = None) -> bool:
        if self._work_queue is None:
            return False
        request = build_resolution_request(video_id, kind, quality_tier)
        return self._work_queue.is_pending(request.cache_key)

    def list_attempts(
        self,
        video_id: str,
        kind: str,
        quality_tier: str | None = None,
        *,
        limit: int = 100,
    ) -> list[AttemptRecord]:
        request = build_resolution_request(video_id, kind, quality_tier)
        return self._ledger.list_for_key(request.cache_key, limit=limit)

    def video_info(self, video_id: str) -> VideoInfo:
        normalized_id = video_id.strip() if isinstance(video_id, str) else ""
        if not is_valid_video_id(normalized_id):
            raise InvalidMediaRequestError("Video id must be an 11-character token.")
        if self._info_lookup is None:
            raise VideoInfoUnavailableError(video_id=normalized_id, source_failures={})
        return self._info_lookup.fetch(normalized_id)

    def provider_names(self) -> list[str]:
        return self._resolver.provider_names


def _validated_request(video_id: str, kind: str, quality_tier: str | None) -> ResolutionRequest:
    request = build_resolution_request(video_id, kind, quality_tier)
    if not is_valid_video_id(request.video_id):
        raise InvalidMediaRequestError("Video id must be an 11-character token.")
    return request
