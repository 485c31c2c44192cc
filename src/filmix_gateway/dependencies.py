from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from src.filmix_gateway.models import EpisodeKey
from src.filmix_gateway.services.catalog import StaticCatalog
from src.filmix_gateway.services.decoder import DecodeTable
from src.filmix_gateway.services.filmix_client import FilmixClient
from src.filmix_gateway.services.playback_tokens import PlaybackTokenService
from src.filmix_gateway.services.progress import ProgressStore
from src.filmix_gateway.services.rate_limit import FixedWindowRateLimiter
from src.filmix_gateway.services.source_cache import FixedSource, SourceResolver
from src.filmix_gateway.services.transcode import (
    TranscodePipeline,
    ffmpeg_remuxer,
    ffprobe_prober,
    httpx_downloader,
)
from src.filmix_gateway.settings import Settings


@dataclass
class GatewayServices:
    settings: Settings
    http: httpx.AsyncClient
    filmix: FilmixClient
    catalog: StaticCatalog
    resolver: SourceResolver
    tokens: PlaybackTokenService
    pipeline: TranscodePipeline
    progress: ProgressStore
    rate_limiter: FixedWindowRateLimiter
    owns_http: bool = False

    async def aclose(self) -> None:
        await self.resolver.join()
        if self.owns_http:
            await self.http.aclose()


def build_services(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> GatewayServices:
    """Wire the gateway services for ``settings``; ``client`` replaces the owned HTTP client."""
    owns_http = client is None
    http = client or httpx.AsyncClient(follow_redirects=True, timeout=settings.request_timeout)
    filmix = FilmixClient(
        page_url=settings.page_url,
        http=http,
        login=settings.filmix_login,
        password=settings.filmix_password,
        user_agent=settings.user_agent,
        cookie=settings.filmix_cookie,
    )

    resolver: Optional[SourceResolver] = None

    async def _cached_player_data():
        return await resolver.get_player_data()

    catalog = StaticCatalog(
        fetch_player_data=_cached_player_data,
        english_map_path=settings.english_map_path,
        title=settings.show_title,
        snapshot_ttl=settings.catalog_snapshot_ttl,
    )
    fixed = FixedSource(
        key=EpisodeKey(settings.fixed_season, settings.fixed_episode),
        local_path=settings.fixed_local_file_path,
        public_url=settings.fixed_public_media_url,
        env_url=settings.fixed_english_source,
        quality=settings.fixed_quality,
    )
    resolver = SourceResolver(
        fetch_player_data=filmix.get_player_data,
        fetch_playlist=filmix.fetch_playlist,
        catalog=catalog,
        decode_table=DecodeTable.from_keys(settings.decode_separator, settings.decode_key_list),
        preferred_translation_pattern=settings.preferred_translation_pattern,
        fixed=fixed,
        source_ttl=settings.source_cache_ttl,
        playlist_ttl=settings.playlist_cache_ttl,
        player_data_ttl=settings.player_data_cache_ttl,
    )
    tokens = PlaybackTokenService(
        secret=settings.effective_token_secret,
        ttl_sec=settings.playback_token_ttl_sec,
        max_uses=settings.playback_token_max_uses,
    )
    pipeline = TranscodePipeline(
        cache_dir=settings.transcode_cache_dir,
        downloader=httpx_downloader(http, user_agent=settings.user_agent, referer=settings.page_url),
        prober=ffprobe_prober(settings.ffprobe_bin, timeout=settings.transcode_timeout),
        remuxer=ffmpeg_remuxer(settings.ffmpeg_bin, timeout=settings.transcode_timeout),
        language=settings.transcode_language,
    )
    return GatewayServices(
        settings=settings,
        http=http,
        filmix=filmix,
        catalog=catalog,
        resolver=resolver,
        tokens=tokens,
        pipeline=pipeline,
        progress=ProgressStore(settings.playback_progress_path),
        rate_limiter=FixedWindowRateLimiter(settings.rate_limit_window_sec, settings.rate_limit_max_requests),
        owns_http=owns_http,
    )


def get_services(request: Request) -> GatewayServices:
    return request.app.state.services
