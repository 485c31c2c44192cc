import asyncio
import json

import pytest

from src.filmix_gateway.errors import EpisodeNotFound, UpstreamFetchError
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor, SourceLadder, SourceOrigin
from src.filmix_gateway.services.decoder import encode_value
from src.filmix_gateway.services.source_cache import FixedSource, SourceResolver, pick_source

UKR_PLAYLIST_URL = "https://cdn.example/pl/ukr.txt"
ENG_PLAYLIST_URL = "https://cdn.example/pl/eng.txt"


def playlist(*episodes):
    return [{"title": "Season 5", "folder": [{"id": episode_id, "file": file} for episode_id, file in episodes]}]


class FakeUpstream:
    def __init__(self, table, translations, playlists, delay=0.0):
        self.table = table
        self.translations = list(translations)
        self.playlists = playlists
        self.delay = delay
        self.player_data_calls = 0
        self.playlist_calls = {}

    def _player_data(self, translations):
        return {"message": {"translations": {"video": {
            name: encode_value(url, self.table) for name, url in translations
        }}}}

    async def fetch_player_data(self):
        self.player_data_calls += 1
        await asyncio.sleep(self.delay)
        index = min(self.player_data_calls, len(self.translations)) - 1
        return self._player_data(self.translations[index])

    async def fetch_playlist(self, url):
        self.playlist_calls[url] = self.playlist_calls.get(url, 0) + 1
        await asyncio.sleep(self.delay)
        if url not in self.playlists:
            raise UpstreamFetchError("HTTP 404")
        if isinstance(self.playlists[url], str):
            return self.playlists[url]
        return encode_value(json.dumps(self.playlists[url]), self.table)


class FakeCatalog:
    def __init__(self, url=None):
        self.url = url
        self.calls = []

    async def resolve_ladder(self, key, player_data=None):
        self.calls.append((key, player_data))
        if not self.url:
            raise EpisodeNotFound()
        descriptor = SourceDescriptor(origin=SourceOrigin.CATALOG, quality=720, source_url=self.url)
        return SourceLadder(origin=SourceOrigin.CATALOG, sources=(descriptor,))


def make_resolver(upstream, table, clock, catalog=None, fixed=None):
    return SourceResolver(
        fetch_player_data=upstream.fetch_player_data,
        fetch_playlist=upstream.fetch_playlist,
        catalog=catalog or FakeCatalog(),
        decode_table=table,
        preferred_translation_pattern="ukr|укра",
        fixed=fixed,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_first_translation_with_episode_wins_with_lower_fallback(table, clock):
    upstream = FakeUpstream(
        table,
        [[("English", ENG_PLAYLIST_URL), ("Ukr Dub", UKR_PLAYLIST_URL)]],
        {
            UKR_PLAYLIST_URL: playlist(("s05e010", "[480p]https://cdn.example/u/10_480.mp4")),
            ENG_PLAYLIST_URL: playlist(
                ("s05e011", "[1080p]https://cdn.example/e/11_1080.mp4,[480p]https://cdn.example/e/11_480.mp4")
            ),
        },
    )
    resolver = make_resolver(upstream, table, clock)

    source = await resolver.resolve_source(5, 11, "720")

    assert source.source_url == "https://cdn.example/e/11_480.mp4"
    assert source.quality == 480
    assert source.origin is SourceOrigin.PLAYER_DATA
    # preferred translation was tried first
    assert upstream.playlist_calls == {UKR_PLAYLIST_URL: 1, ENG_PLAYLIST_URL: 1}


@pytest.mark.asyncio
async def test_concurrent_requests_share_upstream_fetches(table, clock):
    upstream = FakeUpstream(
        table,
        [[("Ukr Dub", UKR_PLAYLIST_URL)]],
        {UKR_PLAYLIST_URL: playlist(("s05e011", "[720p]https://cdn.example/u/11_720.mp4"))},
        delay=0.01,
    )
    resolver = make_resolver(upstream, table, clock)

    results = await asyncio.gather(*(resolver.resolve_source(5, 11, "max") for _ in range(20)))

    assert {r.source_url for r in results} == {"https://cdn.example/u/11_720.mp4"}
    assert upstream.player_data_calls == 1
    assert upstream.playlist_calls == {UKR_PLAYLIST_URL: 1}


@pytest.mark.asyncio
async def test_ladder_lists_every_rung(table, clock):
    upstream = FakeUpstream(
        table,
        [[("Ukr Dub", UKR_PLAYLIST_URL)]],
        {UKR_PLAYLIST_URL: playlist(("s05e011", "[1080p]https://c/11_1080.mp4,[480p]https://c/11_480.mp4,[720p]https://c/11_720.mp4"))},
    )
    resolver = make_resolver(upstream, table, clock)
    ladder = await resolver.resolve_ladder(5, 11)
    assert [s.quality for s in ladder.sources] == [480, 720, 1080]
    assert ladder.max_source.quality == 1080


@pytest.mark.asyncio
async def test_undecodable_playlist_skips_to_next_translation(table, clock):
    upstream = FakeUpstream(
        table,
        [[("English", ENG_PLAYLIST_URL), ("Ukr Dub", UKR_PLAYLIST_URL)]],
        {
            UKR_PLAYLIST_URL: "#2@@garbage",
            ENG_PLAYLIST_URL: playlist(("s05e011", "[720p]https://cdn.example/e/11_720.mp4")),
        },
    )
    catalog = FakeCatalog("https://static.example/11.mp4")
    resolver = make_resolver(upstream, table, clock, catalog=catalog)

    source = await resolver.resolve_source(5, 11, "max")

    assert source.origin is SourceOrigin.PLAYER_DATA
    assert source.source_url == "https://cdn.example/e/11_720.mp4"
    assert catalog.calls == []
    assert upstream.playlist_calls == {UKR_PLAYLIST_URL: 1, ENG_PLAYLIST_URL: 1}


@pytest.mark.asyncio
async def test_missing_episode_triggers_one_forced_retry(table, clock):
    upstream = FakeUpstream(
        table,
        [
            [("Ukr Dub", UKR_PLAYLIST_URL)],
            [("Ukr Dub", UKR_PLAYLIST_URL), ("English", ENG_PLAYLIST_URL)],
        ],
        {
            UKR_PLAYLIST_URL: playlist(("s05e010", "[480p]https://c/10_480.mp4")),
            ENG_PLAYLIST_URL: playlist(("s05e011", "[720p]https://c/11_720.mp4")),
        },
    )
    catalog = FakeCatalog("https://catalog.example/11_720.mp4")
    resolver = make_resolver(upstream, table, clock, catalog=catalog)

    source = await resolver.resolve_source(5, 11)

    assert source.source_url == "https://c/11_720.mp4"
    assert upstream.player_data_calls == 2
    # the forced pass refetched the cached playlist
    assert upstream.playlist_calls[UKR_PLAYLIST_URL] == 2
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_falls_back_to_catalog_after_retry(table, clock):
    upstream = FakeUpstream(
        table,
        [[("Ukr Dub", UKR_PLAYLIST_URL)]],
        {UKR_PLAYLIST_URL: playlist(("s05e010", "[480p]https://c/10_480.mp4"))},
    )
    catalog = FakeCatalog("https://catalog.example/11_720.mp4")
    resolver = make_resolver(upstream, table, clock, catalog=catalog)

    source = await resolver.resolve_source(5, 11)

    assert source.origin is SourceOrigin.CATALOG
    assert source.source_url == "https://catalog.example/11_720.mp4"
    assert upstream.player_data_calls == 2
    assert len(catalog.calls) == 1
    assert catalog.calls[0][0] == EpisodeKey(5, 11)


@pytest.mark.asyncio
async def test_not_found_anywhere(table, clock):
    upstream = FakeUpstream(table, [[("Ukr Dub", UKR_PLAYLIST_URL)]], {})
    resolver = make_resolver(upstream, table, clock)
    with pytest.raises(EpisodeNotFound):
        await resolver.resolve_source(5, 11)


@pytest.mark.asyncio
async def test_batch_omits_failed_episodes(table, clock):
    upstream = FakeUpstream(
        table,
        [[("Ukr Dub", UKR_PLAYLIST_URL)]],
        {UKR_PLAYLIST_URL: playlist(
            ("s05e001", "[480p]https://c/1_480.mp4"),
            ("s05e002", "[720p]https://c/2_720.mp4"),
        )},
    )
    resolver = make_resolver(upstream, table, clock)
    items = await resolver.resolve_batch(5, [2, 1, 3, 2], "max")
    assert [(episode, d.source_url) for episode, d in items] == [
        (1, "https://c/1_480.mp4"),
        (2, "https://c/2_720.mp4"),
    ]


@pytest.mark.asyncio
async def test_fixed_episode_prefers_configured_source(table, clock):
    upstream = FakeUpstream(table, [[("Ukr Dub", UKR_PLAYLIST_URL)]], {})
    fixed = FixedSource(EpisodeKey(5, 11), public_url="https://media.example/fixed_1080.mp4")
    resolver = make_resolver(upstream, table, clock, fixed=fixed)

    source = await resolver.resolve_for_episode(5, 11, "480")

    assert source.origin is SourceOrigin.FIXED_PUBLIC
    assert source.effective_quality == 1080
    assert upstream.player_data_calls == 0


def test_fixed_source_order():
    key = EpisodeKey(5, 11)
    fixed = FixedSource(key, local_path="/media/ep.mp4", public_url="https://p/x.mp4", env_url="https://e/x.mp4")
    assert fixed.descriptor().origin is SourceOrigin.FIXED_LOCAL
    assert FixedSource(key, env_url="https://e/x.mp4").descriptor().origin is SourceOrigin.FIXED_ENV
    assert FixedSource(key).descriptor() is None


def test_pick_source_from_ladder():
    ladder = SourceLadder(
        origin=SourceOrigin.PLAYER_DATA,
        sources=tuple(
            SourceDescriptor(origin=SourceOrigin.PLAYER_DATA, quality=q, source_url=f"https://c/{q}.mp4")
            for q in (480, 1080)
        ),
    )
    assert pick_source(ladder, "720").quality == 480
    assert pick_source(SourceLadder(origin=SourceOrigin.PLAYER_DATA), "max") is None


@pytest.mark.asyncio
async def test_clear_empties_every_tier(table, clock):
    upstream = FakeUpstream(
        table,
        [[("Ukr Dub", UKR_PLAYLIST_URL)]],
        {UKR_PLAYLIST_URL: playlist(("s05e011", "[720p]https://c/11_720.mp4"))},
    )
    resolver = make_resolver(upstream, table, clock)
    await resolver.resolve_source(5, 11)
    assert all(count == 1 for count in resolver.stats().values())
    resolver.clear()
    assert all(count == 0 for count in resolver.stats().values())
