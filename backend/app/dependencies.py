from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.repositories.attempt_ledger_repository import AttemptLedgerRepository
from backend.app.repositories.database import Database
from backend.app.repositories.resolution_cache_repository import ResolutionCacheRepository
from backend.app.services.media_resolver import BackoffPolicy, FallbackResolver
from backend.app.services.media_service import MediaService
from backend.app.services.providers import (
    ProviderHttpClient,
    build_info_sources,
    build_provider_adapters,
)
from backend.app.services.resolution_queue import ResolutionWorkQueue
from backend.app.services.video_info import VideoInfoLookup
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_database() -> Database:
    database = Database(get_settings().db_path)
    database.initialize()
    return database


@lru_cache(maxsize=1)
def get_http_client() -> ProviderHttpClient:
    return ProviderHttpClient(user_agent=get_settings().http_user_agent)


@lru_cache(maxsize=1)
def get_resolver() -> FallbackResolver:
    settings = get_settings()
    database = get_database()
    return FallbackResolver(
        build_provider_adapters(settings.providers, get_http_client()),
        ResolutionCacheRepository(database),
        AttemptLedgerRepository(database),
        retry_budget=settings.retry_budget,
        backoff=BackoffPolicy(base_seconds=settings.backoff_base_seconds),
        success_ttl_seconds=settings.success_ttl_seconds,
        failure_ttl_seconds=settings.failure_ttl_seconds,
        default_deadline_seconds=settings.resolution_deadline_seconds,
        max_stuck_calls_per_provider=settings.max_stuck_calls_per_provider,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_video_info_lookup() -> VideoInfoLookup:
    settings = get_settings()
    return VideoInfoLookup(
        build_info_sources(
            settings.providers,
            get_http_client(),
            watch_page_prefixes=settings.watch_page_proxies,
        ),
        rounds=settings.info_rounds,
        backoff=BackoffPolicy(base_seconds=settings.info_backoff_seconds),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_work_queue() -> ResolutionWorkQueue:
    settings = get_settings()
    return ResolutionWorkQueue(
        get_resolver().resolve,
        worker_count=settings.queue_worker_count,
        marker_ttl_seconds=settings.queue_marker_ttl_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_media_service() -> MediaService:
    database = get_database()
    return MediaService(
        get_resolver(),
        ResolutionCacheRepository(database),
        AttemptLedgerRepository(database),
        get_work_queue(),
        info_lookup=get_video_info_lookup(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_media_service.cache_clear()
    get_work_queue.cache_clear()
    get_resolver.cache_clear()
    get_video_info_lookup.cache_clear()
    get_http_client.cache_clear()
    get_database.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
