"""Static catalog built from player-data ``links`` plus the English map.

This is the terminal fallback when no translation playlist carries the
requested episode.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.filmix_gateway.errors import EpisodeNotFound
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor, SourceLadder, SourceOrigin, quality_from_url
from src.filmix_gateway.logger import logger

LANGUAGE_ORDER = ("en", "uk", "ru")
LANGUAGE_LABELS = {"en": "English", "uk": "Ukrainian", "ru": "Russian"}

_NUMBER_RE = re.compile(r"(\d+)")
_MAP_KEY_RE = re.compile(r"^\d+:\d+$")


def detect_language(name: str) -> Optional[str]:
    normalized = (name or "").lower()
    if not normalized:
        return None
    if "eng" in normalized or "english" in normalized:
        return "en"
    if "ukr" in normalized or "укра" in normalized:
        return "uk"
    if "[ru" in normalized or "russian" in normalized or "рус" in normalized:
        return "ru"
    return None


def _first_number(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    match = _NUMBER_RE.search(value)
    return int(match.group(1)) if match else None


def _score_quality(value: Any) -> int:
    match = _NUMBER_RE.match(str(value or ""))
    if not match:
        return 0
    quality = int(match.group(1))
    if quality >= 1080:
        return 4
    if quality >= 720:
        return 3
    if quality >= 480:
        return 2
    return 1


def choose_best_source(variants: Any) -> Optional[str]:
    if not isinstance(variants, list) or not variants:
        return None
    scored = []
    for item in variants:
        if isinstance(item, str):
            scored.append((0, item))
        elif isinstance(item, dict) and isinstance(item.get("url"), str):
            scored.append((_score_quality(item.get("quality")), item["url"]))
    if not scored:
        return None
    # stable: first of the best score wins
    best = max(score for score, _ in scored)
    return next(url for score, url in scored if score == best)


@dataclass
class Catalog:
    title: str
    seasons: List[int] = field(default_factory=list)
    episodes_by_season: Dict[int, List[int]] = field(default_factory=dict)
    source_map: Dict[str, Dict[str, str]] = field(default_factory=dict)
    languages: List[str] = field(default_factory=list)


@dataclass
class EpisodeSources:
    season: int
    episode: int
    sources: List[Dict[str, str]]
    default_lang: Optional[str]

    def source_for(self, lang: str) -> Optional[Dict[str, str]]:
        return next((item for item in self.sources if item["lang"] == lang), None)


def build_catalog(player_data: Any, english_map: Optional[Dict[str, str]] = None, title: str = "Filmix Show") -> Catalog:
    try:
        links = player_data["message"]["links"]
    except (KeyError, TypeError):
        links = []
    if not isinstance(links, list):
        links = []

    source_map: Dict[str, Dict[str, str]] = {}
    episodes: Dict[int, set] = {}
    for translation in links:
        if not isinstance(translation, dict):
            continue
        lang = detect_language(translation.get("name") or "")
        if not lang:
            continue
        files = translation.get("files")
        if not isinstance(files, dict):
            continue
        for season_name, season_files in files.items():
            season = _first_number(season_name)
            if not season or not isinstance(season_files, dict):
                continue
            episodes.setdefault(season, set())
            for episode_name, variants in season_files.items():
                episode = _first_number(episode_name)
                url = choose_best_source(variants) if episode else None
                if not url:
                    continue
                episodes[season].add(episode)
                source_map.setdefault(f"{season}:{episode}", {})[lang] = url

    for key, url in (english_map or {}).items():
        if not isinstance(url, str) or not url.startswith("http"):
            continue
        season_part, _, episode_part = key.partition(":")
        source_map.setdefault(key, {})["en"] = url
        if season_part.isdigit() and episode_part.isdigit():
            episodes.setdefault(int(season_part), set()).add(int(episode_part))

    available = {lang for langs in source_map.values() for lang in langs}
    seasons = sorted(episodes)
    return Catalog(
        title=title,
        seasons=seasons,
        episodes_by_season={season: sorted(episodes[season]) for season in seasons},
        source_map=source_map,
        languages=[lang for lang in LANGUAGE_ORDER if lang in available],
    )


def episode_data(catalog: Catalog, season: int, episode: int) -> EpisodeSources:
    by_lang = catalog.source_map.get(f"{season}:{episode}", {})
    sources = [
        {"lang": lang, "label": LANGUAGE_LABELS[lang], "sourceUrl": by_lang[lang]}
        for lang in LANGUAGE_ORDER
        if by_lang.get(lang)
    ]
    default_lang = next((lang for lang in LANGUAGE_ORDER if by_lang.get(lang)), None)
    return EpisodeSources(season=season, episode=episode, sources=sources, default_lang=default_lang)


# --- English map -------------------------------------------------------------

def normalize_english_map(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict):
        return {}
    return {
        key: value
        for key, value in data.items()
        if _MAP_KEY_RE.match(str(key)) and isinstance(value, str) and value.startswith("http")
    }


def load_english_map(path: str) -> Dict[str, str]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return normalize_english_map(json.load(f))
    except FileNotFoundError:
        return {}


def save_english_map(mapping: Dict[str, str], path: str) -> Dict[str, str]:
    normalized = normalize_english_map(mapping)
    ordered = dict(
        sorted(normalized.items(), key=lambda kv: tuple(int(part) for part in kv[0].split(":")))
    )
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(ordered, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    return ordered


class StaticCatalog:
    """Catalog snapshot over player-data, refreshed at most every ``snapshot_ttl`` seconds."""

    def __init__(
        self,
        fetch_player_data: Callable[[], Awaitable[Any]],
        english_map_path: str,
        title: str,
        snapshot_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch_player_data = fetch_player_data
        self._english_map_path = english_map_path
        self._title = title
        self._snapshot_ttl = snapshot_ttl
        self._clock = clock
        self._snapshot: Optional[Catalog] = None
        self._created_at = 0.0

    async def _load_map(self) -> Dict[str, str]:
        return await asyncio.to_thread(load_english_map, self._english_map_path)

    async def snapshot(self, force: bool = False) -> Catalog:
        if not force and self._snapshot is not None and self._clock() - self._created_at < self._snapshot_ttl:
            return self._snapshot
        player_data, english_map = await asyncio.gather(self._fetch_player_data(), self._load_map())
        self._snapshot = build_catalog(player_data, english_map, self._title)
        self._created_at = self._clock()
        return self._snapshot

    async def from_player_data(self, player_data: Any) -> Catalog:
        return build_catalog(player_data, await self._load_map(), self._title)

    async def resolve_ladder(self, key: EpisodeKey, player_data: Any = None) -> SourceLadder:
        if player_data is not None:
            catalog = await self.from_player_data(player_data)
        else:
            catalog = await self.snapshot()
        source = episode_data(catalog, key.season, key.episode).source_for("en")
        if source is None:
            raise EpisodeNotFound()
        logger.info("Episode %s resolved from static catalog", key)
        url = source["sourceUrl"]
        descriptor = SourceDescriptor(origin=SourceOrigin.CATALOG, quality=quality_from_url(url), source_url=url)
        return SourceLadder(origin=SourceOrigin.CATALOG, sources=(descriptor,))

    def reset(self) -> None:
        self._snapshot = None
