from __future__ import annotations

from collections.abc import Callable, Sequence

from backend.app.config import ProviderSpec
from backend.app.services.providers.base import ProviderAdapter, VideoInfoSource
from backend.app.services.providers.http_client import ProviderHttpClient
from backend.app.services.providers.invidious import InvidiousAdapter
from backend.app.services.providers.locator import LocatorAdapter, PreflightAdapter
from backend.app.services.providers.piped import PipedAdapter
from backend.app.services.providers.watch_page import WatchPageInfoSource

AdapterFactory = Callable[[ProviderSpec, ProviderHttpClient], ProviderAdapter]
InfoSourceFactory = Callable[[ProviderSpec, ProviderHttpClient], VideoInfoSource]

ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    "piped": PipedAdapter,
    "invidious": InvidiousAdapter,
    "locator": LocatorAdapter,
    "preflight": PreflightAdapter,
}

# Only stream-listing providers also publish video details.
INFO_SOURCE_FACTORIES: dict[str, InfoSourceFactory] = {
    "piped": PipedAdapter,
    "invidious": InvidiousAdapter,
}


def build_provider_adapters(
    specs: Sequence[ProviderSpec],
    http_client: ProviderHttpClient,
) -> list[ProviderAdapter]:
    """Instantiate enabled providers in the order given; settings already sort by priority."""
    adapters: list[ProviderAdapter] = []
    for spec in specs:
        if not spec.enabled:
            continue
        factory = ADAPTER_FACTORIES.get(spec.shape)
        if factory is None:
            raise ValueError(f"Unsupported provider shape: {spec.shape}")
        adapters.append(factory(spec, http_client))
    return adapters


def build_info_sources(
    specs: Sequence[ProviderSpec],
    http_client: ProviderHttpClient,
    *,
    watch_page_prefixes: Sequence[str] = (),
) -> list[VideoInfoSource]:
    """Enabled detail-capable providers in chain order, then the watch-page proxies."""
    sources: list[VideoInfoSource] = []
    for spec in specs:
        factory = INFO_SOURCE_FACTORIES.get(spec.shape)
        if spec.enabled and factory is not None:
            sources.append(factory(spec, http_client))
    sources.extend(WatchPageInfoSource(prefix, http_client) for prefix in watch_page_prefixes)
    return sources
