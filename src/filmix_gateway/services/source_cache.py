"""Episode source resolution over four stale-while-revalidate cache tiers.

Resolution order for an episode:

1. player-data (cached) -> translation playlists in priority order
2. one retry with forced-fresh player-data and playlists
3. the static catalog (``origin=catalog``)

The first translation whose playlist lists the episode is authoritative,
even when it lacks the requested quality.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple

from src.filmix_gateway.errors import DecodeError, EpisodeNotFound, GatewayError, UpstreamFetchError
from src.filmix_gateway.models import (
    EpisodeKey,
    QualityVariant,
    SourceDescriptor,
    SourceLadder,
    SourceOrigin,
    quality_from_url,
)
from src.filmix_gateway.services.decoder import DecodeTable, decode_playlist
from src.filmix_gateway.services.ladder import (
    MAX_QUALITY,
    find_episode_variants,
    normalize_quality,
    pick_variant,
    translation_candidates,
)
from src.filmix_gateway.services.swr_cache import StaleWhileRevalidateCache, cache_stats
from src.filmix_gateway.logger import logger

PLAYER_DATA_KEY = "player-data"


class CatalogFallback(Protocol):
    async def resolve_ladder(self, key: EpisodeKey, player_data: Any = None) -> SourceLadder: ...


class FixedSource:
    """Configured override for one episode (local file, public URL or env URL)."""

    def __init__(
        self,
        key: EpisodeKey,
        local_path: str = "",
        public_url: str = "",
        env_url: str = "",
        quality: str = MAX_QUALITY,
    ) -> None:
        self.key = key
        self.local_path = local_path
        self.public_url = public_url
        self.env_url = env_url
        self.quality = normalize_quality(quality) or MAX_QUALITY

    @property
    def configured(self) -> bool:
        return bool(self.local_path or self.public_url or self.env_url)

    def descriptor(self) -> Optional[SourceDescriptor]:
        if self.local_path:
            quality = quality_from_url(self.local_path)
            if not quality and self.quality != MAX_QUALITY:
                quality = int(self.quality)
            return SourceDescriptor(origin=SourceOrigin.FIXED_LOCAL, quality=quality, local_path=self.local_path)
        if self.public_url:
            return SourceDescriptor(
                origin=SourceOrigin.FIXED_PUBLIC, quality=quality_from_url(self.public_url), source_url=self.public_url
            )
        if self.env_url:
            return SourceDescriptor(
                origin=SourceOrigin.FIXED_ENV, quality=quality_from_url(self.env_url), source_url=self.env_url
            )
        return None


def _to_ladder(variants: Iterable[QualityVariant]) -> SourceLadder:
    sources = tuple(
        SourceDescriptor(origin=SourceOrigin.PLAYER_DATA, quality=variant.quality, source_url=variant.url)
        for variant in variants
    )
    return SourceLadder(origin=SourceOrigin.PLAYER_DATA, sources=sources)


def pick_source(ladder: SourceLadder, requested: Any) -> Optional[SourceDescriptor]:
    variants = [QualityVariant(quality=source.quality, url=source.source_url) for source in ladder.sources]
    selected = pick_variant(variants, requested)
    if selected is None:
        return None
    for source in ladder.sources:
        if source.quality == selected.quality and source.source_url == selected.url:
            return source
    return None


class SourceResolver:
    def __init__(
        self,
        fetch_player_data: Callable[[], Awaitable[Any]],
        fetch_playlist: Callable[[str], Awaitable[str]],
        catalog: CatalogFallback,
        decode_table: DecodeTable,
        preferred_translation_pattern: Optional[str] = None,
        fixed: Optional[FixedSource] = None,
        source_ttl: float = 1800.0,
        playlist_ttl: float = 600.0,
        player_data_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_player_data = fetch_player_data
        self._fetch_playlist = fetch_playlist
        self._catalog = catalog
        self._table = decode_table
        self._pattern = preferred_translation_pattern
        self.fixed = fixed
        self.player_data_cache: StaleWhileRevalidateCache[Any] = StaleWhileRevalidateCache(
            "player-data", player_data_ttl, clock=clock
        )
        self.playlist_cache: StaleWhileRevalidateCache[Any] = StaleWhileRevalidateCache(
            "playlist", playlist_ttl, clock=clock
        )
        self.source_cache: StaleWhileRevalidateCache[SourceDescriptor] = StaleWhileRevalidateCache(
            "source", source_ttl, clock=clock, serve_expired_on_error=True
        )
        self.ladder_cache: StaleWhileRevalidateCache[SourceLadder] = StaleWhileRevalidateCache(
            "ladder", playlist_ttl, clock=clock, serve_expired_on_error=True
        )

    # -- tiers -------------------------------------------------------------
    async def get_player_data(self, force: bool = False) -> Any:
        if force:
            return await self.player_data_cache.refresh(PLAYER_DATA_KEY, self._fetch_player_data)
        return await self.player_data_cache.get(PLAYER_DATA_KEY, self._fetch_player_data)

    async def get_playlist(self, url: str, force: bool = False) -> Any:
        key = url.strip()
        if not key:
            raise UpstreamFetchError("Playlist URL is empty")

        async def _produce() -> Any:
            return decode_playlist(await self._fetch_playlist(key), self._table)

        if force:
            return await self.playlist_cache.refresh(key, _produce)
        return await self.playlist_cache.get(key, _produce)

    # -- resolution --------------------------------------------------------
    async def _ladder_from_player_data(self, player_data: Any, key: EpisodeKey, force: bool) -> SourceLadder:
        last_error: Optional[GatewayError] = None
        for candidate in translation_candidates(player_data, self._table, self._pattern):
            try:
                playlist = await self.get_playlist(candidate.playlist_url, force=force)
            except (DecodeError, UpstreamFetchError) as exc:
                logger.warning("Translation %r unusable: %s", candidate.name, exc)
                last_error = exc
                continue
            variants = find_episode_variants(playlist, key.season, key.episode)
            if variants:
                logger.debug("Episode %s found in translation %r", key, candidate.name)
                return _to_ladder(variants)
        if last_error is not None:
            raise last_error
        raise EpisodeNotFound("episode source was not found in decoded playlist")

    async def _compute_ladder(self, key: EpisodeKey) -> SourceLadder:
        player_data = None
        try:
            player_data = await self.get_player_data()
            return await self._ladder_from_player_data(player_data, key, force=False)
        except (DecodeError, UpstreamFetchError, EpisodeNotFound) as exc:
            logger.info("Episode %s not resolved from cached player-data (%s); retrying fresh", key, exc)
        try:
            fresh = await self.get_player_data(force=True)
            player_data = fresh
            return await self._ladder_from_player_data(fresh, key, force=True)
        except (DecodeError, UpstreamFetchError, EpisodeNotFound) as exc:
            logger.info("Episode %s not resolved from fresh player-data (%s); using catalog", key, exc)
        return await self._catalog.resolve_ladder(key, player_data)

    async def resolve_ladder(self, season: int, episode: int) -> SourceLadder:
        key = EpisodeKey(season, episode)
        return await self.ladder_cache.get(str(key), lambda: self._compute_ladder(key))

    async def _compute_source(self, season: int, episode: int, quality: str) -> SourceDescriptor:
        ladder = await self.resolve_ladder(season, episode)
        selected = pick_source(ladder, quality)
        if selected is None:
            raise EpisodeNotFound()
        return selected

    async def resolve_source(self, season: int, episode: int, quality: Any = MAX_QUALITY) -> SourceDescriptor:
        normalized = normalize_quality(quality) or MAX_QUALITY
        key = f"{EpisodeKey(season, episode)}:{normalized}"
        return await self.source_cache.get(key, lambda: self._compute_source(season, episode, normalized))

    async def resolve_batch(
        self, season: int, episodes: Iterable[int], quality: Any = MAX_QUALITY
    ) -> List[Tuple[int, SourceDescriptor]]:
        unique = sorted({int(e) for e in episodes if int(e) > 0})

        async def _one(episode: int) -> Optional[Tuple[int, SourceDescriptor]]:
            try:
                return episode, await self.resolve_source(season, episode, quality)
            except GatewayError as exc:
                logger.info("Batch resolution skipped %s:%s: %s", season, episode, exc)
                return None

        results = await asyncio.gather(*(_one(episode) for episode in unique))
        return [item for item in results if item is not None]

    # -- fixed episode -----------------------------------------------------
    def is_fixed(self, season: int, episode: int) -> bool:
        return bool(self.fixed and self.fixed.configured and self.fixed.key == EpisodeKey(season, episode))

    async def resolve_fixed(self) -> SourceDescriptor:
        if self.fixed is None:
            raise EpisodeNotFound("Fixed episode is not configured")
        descriptor = self.fixed.descriptor()
        if descriptor is not None:
            return descriptor
        return await self.resolve_source(self.fixed.key.season, self.fixed.key.episode, self.fixed.quality)

    async def resolve_for_episode(self, season: int, episode: int, quality: Any = MAX_QUALITY) -> SourceDescriptor:
        if self.is_fixed(season, episode):
            return await self.resolve_fixed()
        return await self.resolve_source(season, episode, quality)

    # -- maintenance -------------------------------------------------------
    def caches(self) -> Tuple[StaleWhileRevalidateCache[Any], ...]:
        return (self.player_data_cache, self.playlist_cache, self.source_cache, self.ladder_cache)

    def clear(self) -> None:
        for cache in self.caches():
            cache.clear()

    def stats(self) -> dict:
        return cache_stats(*self.caches())

    async def join(self) -> None:
        await asyncio.gather(*(cache.join() for cache in self.caches()))
