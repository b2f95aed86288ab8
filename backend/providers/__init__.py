"""
Provider fetchers - read a provider's catalog into normalized StreamRecords.

Supports Xtream-Codes API providers (sp_type 0) and M3U playlists (sp_type 1).
"""
from typing import Callable, Optional

import httpx

from config import SyncSettings
from models import StreamProvider
from providers.base import BaseFetcher, FetchError
from providers.m3u import M3UFetcher
from providers.xtream import XtreamCodesFetcher

PROVIDER_TYPE_XTREAM = 0
PROVIDER_TYPE_M3U = 1

FETCHERS = {
    PROVIDER_TYPE_XTREAM: XtreamCodesFetcher,
    PROVIDER_TYPE_M3U: M3UFetcher,
}

FetcherFactory = Callable[[StreamProvider], BaseFetcher]


def create_fetcher(
    provider: StreamProvider,
    settings: SyncSettings,
    client: Optional[httpx.Client] = None,
) -> BaseFetcher:
    """Build the fetcher matching the provider's sp_type."""
    fetcher_cls = FETCHERS.get(provider.sp_type)
    if fetcher_cls is None:
        raise ValueError(f"Unknown provider type: {provider.sp_type}")
    return fetcher_cls(provider, settings, client=client)


__all__ = [
    "BaseFetcher",
    "FetchError",
    "FetcherFactory",
    "M3UFetcher",
    "XtreamCodesFetcher",
    "create_fetcher",
    "PROVIDER_TYPE_XTREAM",
    "PROVIDER_TYPE_M3U",
]
