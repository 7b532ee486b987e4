from __future__ import annotations

import logging
from typing import Annotated, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.config import AppSettings
from backend.app.dependencies import get_media_service, get_settings
from backend.app.models.media_contracts import (
    AttemptListResponse,
    AttemptResponse,
    EnqueueMediaRequest,
    EnqueueMediaResponse,
    ProviderListResponse,
    ProviderResponse,
    ResolutionStatusResponse,
    ResolvedMediaResponse,
    ResolveMediaRequest,
    VideoInfoResponse,
)
from backend.app.services.media_service import MediaService
from backend.app.services.media_types import (
    AllProvidersExhaustedError,
    InvalidMediaRequestError,
    MediaResolutionError,
    ResolutionQueueUnavailableError,
    ResolutionTimeoutError,
    VideoInfoUnavailableError,
    build_resolution_request,
)

LOGGER = logging.getLogger("media_resolver.api")
EXHAUSTED_DETAIL = "No provider could resolve this media right now. Try again later."
INFO_UNAVAILABLE_DETAIL = "Video details are not available right now. Try again later."

router = APIRouter()

VideoIdQuery = Annotated[str, Query(max_length=64)]
KindQuery = Annotated[str, Query(max_length=16)]
QualityTierQuery = Annotated[str | None, Query(max_length=16)]


def _raise_http_error(exc: MediaResolutionError) -> NoReturn:
    if isinstance(exc, InvalidMediaRequestError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, AllProvidersExhaustedError):
        raise HTTPException(status_code=502, detail=EXHAUSTED_DETAIL) from exc
    if isinstance(exc, VideoInfoUnavailableError):
        raise HTTPException(status_code=502, detail=INFO_UNAVAILABLE_DETAIL) from exc
    if isinstance(exc, ResolutionTimeoutError):
        raise HTTPException(
            status_code=504,
            detail="Media resolution did not finish in time. Try again later.",
        ) from exc
    if isinstance(exc, ResolutionQueueUnavailableError):
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    LOGGER.error("media resolution failed unexpectedly error=%s", type(exc).__name__)
    raise HTTPException(status_code=500, detail="Media resolution failed.") from exc


def _resolve(
    service: MediaService,
    *,
    video_id: str,
    kind: str,
    quality_tier: str | None,
    deadline_seconds: float | None = None,
) -> ResolvedMediaResponse:
    context_tokens = bind_contextvars(media_video_id=video_id, media_kind=kind)
    try:
        result = service.resolve(
            video_id,
            kind,
            quality_tier,
            deadline_seconds=deadline_seconds,
        )
    except MediaResolutionError as exc:
        _raise_http_error(exc)
    finally:
        reset_contextvars(**context_tokens)
    return ResolvedMediaResponse.from_result(result)


@router.post(
    "/media/resolve",
    response_model=ResolvedMediaResponse,
    tags=["media"],
    operation_id="resolve_media",
)
def resolve_media(
    request: ResolveMediaRequest,
    service: Annotated[MediaService, Depends(get_media_service)],
) -> ResolvedMediaResponse:
    return _resolve(
        service,
        video_id=request.video_id,
        kind=request.kind,
        quality_tier=request.quality_tier,
        deadline_seconds=request.deadline_seconds,
    )


@router.get(
    "/media/resolve/redirect",
    status_code=307,
    response_class=RedirectResponse,
    tags=["media"],
    operation_id="redirect_to_media",
)
def redirect_to_media(
    video_id: VideoIdQuery,
    kind: KindQuery,
    service: Annotated[MediaService, Depends(get_media_service)],
    quality_tier: QualityTierQuery = None,
) -> RedirectResponse:
    resolved = _resolve(service, video_id=video_id, kind=kind, quality_tier=quality_tier)
    return RedirectResponse(url=resolved.locator, status_code=307)


@router.post(
    "/media/resolve/enqueue",
    status_code=202,
    response_model=EnqueueMediaResponse,
    tags=["media"],
    operation_id="enqueue_media_resolution",
)
def enqueue_media_resolution(
    request: EnqueueMediaRequest,
    service: Annotated[MediaService, Depends(get_media_service)],
) -> EnqueueMediaResponse:
    try:
        outcome = service.enqueue_resolve(request.video_id, request.kind, request.quality_tier)
    except MediaResolutionError as exc:
        _raise_http_error(exc)
    return EnqueueMediaResponse(status=outcome.status, cache_key=outcome.cache_key)


@router.get(
    "/media/resolve/status",
    response_model=ResolutionStatusResponse,
    tags=["media"],
    operation_id="media_resolution_status",
)
def media_resolution_status(
    video_id: VideoIdQuery,
    kind: KindQuery,
    service: Annotated[MediaService, Depends(get_media_service)],
    quality_tier: QualityTierQuery = None,
) -> ResolutionStatusResponse:
    try:
        request = build_resolution_request(video_id, kind, quality_tier)
        entry = service.peek_cached(video_id, kind, quality_tier)
        pending = entry is None and service.is_pending(video_id, kind, quality_tier)
    except MediaResolutionError as exc:
        _raise_http_error(exc)

    if entry is not None:
        return ResolutionStatusResponse.from_entry(entry, failed_detail=EXHAUSTED_DETAIL)
    return ResolutionStatusResponse(
        state="pending" if pending else "absent",
        cache_key=request.cache_key,
    )


@router.get(
    "/media/resolve/attempts",
    response_model=AttemptListResponse,
    tags=["media"],
    operation_id="list_media_attempts",
)
def list_media_attempts(
    video_id: VideoIdQuery,
    kind: KindQuery,
    service: Annotated[MediaService, Depends(get_media_service)],
    quality_tier: QualityTierQuery = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> AttemptListResponse:
    try:
        request = build_resolution_request(video_id, kind, quality_tier)
        records = service.list_attempts(video_id, kind, quality_tier, limit=limit)
    except MediaResolutionError as exc:
        _raise_http_error(exc)
    return AttemptListResponse(
        cache_key=request.cache_key,
        attempts=[AttemptResponse.from_record(record) for record in records],
    )


@router.get(
    "/media/info",
    response_model=VideoInfoResponse,
    tags=["media"],
    operation_id="get_video_info",
)
def get_video_info(
    video_id: VideoIdQuery,
    service: Annotated[MediaService, Depends(get_media_service)],
) -> VideoInfoResponse:
    context_tokens = bind_contextvars(media_video_id=video_id)
    try:
        info = service.video_info(video_id)
    except MediaResolutionError as exc:
        _raise_http_error(exc)
    finally:
        reset_contextvars(**context_tokens)
    return VideoInfoResponse.from_info(info)


@router.get(
    "/media/providers",
    response_model=ProviderListResponse,
    tags=["media"],
    operation_id="list_media_providers",
)
def list_media_providers(
    settings: Annotated[AppSettings, Depends(get_settings)],
) -> ProviderListResponse:
    return ProviderListResponse(
        providers=[
            ProviderResponse(
                name=spec.name,
                shape=spec.shape,
                priority=spec.priority,
                timeout_seconds=spec.timeout_seconds,
            )
            for spec in settings.providers
        ]
    )
