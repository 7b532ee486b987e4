from backend.app.services.providers.base import (
    ProviderAdapter,
    ProviderError,
    Rendition,
    VideoInfoSource,
    select_audio_rendition,
    select_video_rendition,
)
from backend.app.services.providers.http_client import ProviderHttpClient, ProviderHttpResponse
from backend.app.services.providers.invidious import InvidiousAdapter
from backend.app.services.providers.locator import LocatorAdapter, PreflightAdapter
from backend.app.services.providers.piped import PipedAdapter
from backend.app.services.providers.registry import build_info_sources, build_provider_adapters
from backend.app.services.providers.watch_page import WatchPageInfoSource

__all__ = [
    "InvidiousAdapter",
    "LocatorAdapter",
    "PipedAdapter",
    "PreflightAdapter",
    "ProviderAdapter",
    "ProviderError",
    "ProviderHttpClient",
    "ProviderHttpResponse",
    "Rendition",
    "VideoInfoSource",
    "WatchPageInfoSource",
    "build_info_sources",
    "build_provider_adapters",
    "select_audio_rendition",
    "select_video_rendition",
]
