"""Quality ladder extraction from decoded Filmix playlists."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from src.filmix_gateway.errors import DecodeError, UpstreamFetchError
from src.filmix_gateway.models import QualityVariant, TranslationCandidate
from src.filmix_gateway.services.decoder import DecodeTable, decode_value, is_encoded
from src.filmix_gateway.logger import logger

MAX_QUALITY = "max"

_VARIANT_RE = re.compile(r"^\[([^\]]+)\](.+)$")
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")
_EPISODE_ID_RE = re.compile(r"^s0*(\d+)e0*(\d+)$", re.IGNORECASE)
LOCALE_HEURISTIC_RE = re.compile(r"eng|english|англ|ориг|original", re.IGNORECASE)

_MAX_ALIASES = {"max", "highest", "best"}
_MIN_ALIASES = {"min", "lowest", "low"}


def parse_quality_variants(file_value: str) -> List[QualityVariant]:
    variants: List[QualityVariant] = []
    for chunk in str(file_value or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        match = _VARIANT_RE.match(chunk)
        if not match:
            continue
        quality = _LEADING_INT_RE.match(match.group(1))
        variants.append(
            QualityVariant(quality=int(quality.group(1)) if quality else 0, url=match.group(2))
        )
    return variants


def sort_ladder(variants: Sequence[QualityVariant]) -> List[QualityVariant]:
    """De-duplicate by quality (first URL wins) and sort ascending."""
    seen: Dict[int, QualityVariant] = {}
    for variant in variants:
        if variant.quality not in seen:
            seen[variant.quality] = variant
    return sorted(seen.values(), key=lambda v: v.quality)


def parse_episode_id(value: Any) -> Optional[Tuple[int, int]]:
    match = _EPISODE_ID_RE.match(str(value or ""))
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def find_episode_variants(playlist: Any, season: int, episode: int) -> List[QualityVariant]:
    if not isinstance(playlist, list):
        return []
    for season_entry in playlist:
        folder = season_entry.get("folder") if isinstance(season_entry, dict) else None
        if not isinstance(folder, list):
            continue
        for episode_entry in folder:
            if not isinstance(episode_entry, dict):
                continue
            if parse_episode_id(episode_entry.get("id")) != (season, episode):
                continue
            return sort_ladder(parse_quality_variants(episode_entry.get("file")))
    return []


def normalize_quality(value: Any) -> Optional[str]:
    """Normalize a quality request to ``"max"`` or a positive integer string.

    Returns None when the value cannot be interpreted.
    """
    if value is None:
        return MAX_QUALITY
    normalized = str(value).strip().lower()
    if not normalized or normalized in _MAX_ALIASES:
        return MAX_QUALITY
    if normalized in _MIN_ALIASES:
        return "1"
    if not re.fullmatch(r"[1-9][0-9]*p?", normalized):
        return None
    return str(int(normalized.rstrip("p")))


def pick_variant(ladder: Sequence[QualityVariant], requested: Any) -> Optional[QualityVariant]:
    """Pick the rung that best approximates ``requested``.

    ``"max"`` takes the top rung. Otherwise the exact quality, else the
    closest lower one, else the lowest available.
    """
    if not ladder:
        return None
    ordered = sorted(ladder, key=lambda v: v.quality)
    normalized = normalize_quality(requested)
    if normalized is None or normalized == MAX_QUALITY:
        return ordered[-1]
    target = int(normalized)
    for variant in ordered:
        if variant.quality == target:
            return variant
    lower = [variant for variant in ordered if variant.quality < target]
    if lower:
        return lower[-1]
    return ordered[0]


def get_video_translations(player_data: Any) -> Dict[str, Any]:
    try:
        translations = player_data["message"]["translations"]["video"]
    except (KeyError, TypeError):
        translations = None
    if not isinstance(translations, dict):
        raise UpstreamFetchError("player-data does not contain translations.video")
    return translations


def order_translations(
    entries: Sequence[Tuple[str, str]],
    preferred_pattern: Optional[str] = None,
) -> List[Tuple[str, str]]:
    ordered: List[Tuple[str, str]] = []
    consumed = set()
    if preferred_pattern:
        pattern = re.compile(preferred_pattern, re.IGNORECASE)
        for index, (name, _value) in enumerate(entries):
            if pattern.search(name):
                ordered.append(entries[index])
                consumed.add(index)
                break
    for index, (name, _value) in enumerate(entries):
        if index in consumed or not LOCALE_HEURISTIC_RE.search(name):
            continue
        ordered.append(entries[index])
        consumed.add(index)
        break
    ordered.extend(entry for index, entry in enumerate(entries) if index not in consumed)
    return ordered


def translation_candidates(
    player_data: Any,
    table: DecodeTable,
    preferred_pattern: Optional[str] = None,
) -> Iterator[TranslationCandidate]:
    """Yield playlist candidates in priority order, decoding each URL lazily.

    Candidates whose URL cannot be decoded are skipped.
    """
    translations = get_video_translations(player_data)
    entries = [(name, value) for name, value in translations.items() if is_encoded(value)]
    if not entries:
        raise UpstreamFetchError("player-data does not contain decodable translation entries")
    for name, encoded in order_translations(entries, preferred_pattern):
        try:
            playlist_url = decode_value(encoded, table)
        except DecodeError as exc:
            logger.warning("Skipping translation %r: %s", name, exc)
            continue
        if not playlist_url.startswith("http"):
            logger.warning("Skipping translation %r: decoded value is not a URL", name)
            continue
        yield TranslationCandidate(name=name, playlist_url=playlist_url)
