from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

_URL_QUALITY_RE = re.compile(r"_(\d+)\.mp4(?:$|[?&#])", re.IGNORECASE)


class SourceOrigin(str, Enum):
    PLAYER_DATA = "player-data"
    CATALOG = "catalog"
    FIXED_LOCAL = "fixed-local"
    FIXED_PUBLIC = "fixed-public"
    FIXED_ENV = "fixed-env"


@dataclass(frozen=True, order=True)
class EpisodeKey:
    season: int
    episode: int

    def __post_init__(self) -> None:
        if self.season <= 0 or self.episode <= 0:
            raise ValueError("season and episode must be positive integers")

    def __str__(self) -> str:
        return f"{self.season}:{self.episode}"


@dataclass(frozen=True)
class QualityVariant:
    quality: int
    url: str


@dataclass(frozen=True)
class TranslationCandidate:
    name: str
    playlist_url: str


def quality_from_url(url: str) -> int:
    """Read the ``_720.mp4`` style quality marker from a media URL, 0 if absent."""
    match = _URL_QUALITY_RE.search(url or "")
    if not match:
        return 0
    value = int(match.group(1))
    return value if value > 0 else 0


def build_source_key(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class SourceDescriptor:
    origin: SourceOrigin
    quality: int = 0
    source_url: str = ""
    local_path: str = ""

    def __post_init__(self) -> None:
        if bool(self.source_url) == bool(self.local_path):
            raise ValueError("exactly one of source_url and local_path must be set")

    @property
    def is_local(self) -> bool:
        return bool(self.local_path)

    @property
    def source_key(self) -> str:
        if self.local_path:
            return build_source_key(f"local:{self.local_path}")
        return build_source_key(self.source_url)

    @property
    def effective_quality(self) -> int:
        if self.quality > 0:
            return self.quality
        return quality_from_url(self.source_url or self.local_path)


@dataclass(frozen=True)
class SourceLadder:
    origin: SourceOrigin
    sources: Tuple[SourceDescriptor, ...] = field(default_factory=tuple)

    @property
    def max_source(self) -> Optional[SourceDescriptor]:
        return self.sources[-1] if self.sources else None
