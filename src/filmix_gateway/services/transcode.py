"""Download + remux pipeline producing single-audio-track MP4 artifacts.

At most one download/remux runs per output key. Artifacts live in a
content-addressed directory::

    <key>.orig.mp4    untouched download
    <key>.<lang>.mp4  remuxed output (video + one audio stream)

Partial files use a ``.part`` suffix and are renamed into place only when
complete, so a half-written artifact is never visible.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import httpx

from src.filmix_gateway.errors import TranscodeFailure
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor
from src.filmix_gateway.services.swr_cache import SingleFlight
from src.filmix_gateway.logger import logger

# ISO 639-1 -> ISO 639-2 for the audio tags ffprobe reports
_ISO639_2 = {"en": "eng", "uk": "ukr", "ru": "rus", "bg": "bul", "de": "deu", "fr": "fra", "es": "spa"}

Prober = Callable[[str], Awaitable[List[Dict[str, Any]]]]
Remuxer = Callable[[str, int, str], Awaitable[None]]
Downloader = Callable[[str, str], Awaitable[None]]


def normalize_source_identity(url: str) -> str:
    """Identity of the physical asset behind a (possibly signed) URL.

    Keeps scheme, host and the last two path segments; drops the query,
    the fragment and any token segments earlier in the path.
    """
    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split("/") if segment]
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}/" + "/".join(segments[-2:])


def output_key(episode: Optional[EpisodeKey], source: str) -> str:
    """Content address of the artifact built from ``source`` (URL or local path)."""
    if urlsplit(source).scheme in ("http", "https"):
        identity = normalize_source_identity(source)
    else:
        identity = f"local:{os.path.abspath(source)}"
    scope = str(episode) if episode is not None else "-"
    return hashlib.sha256(f"{scope}|{identity}".encode("utf-8")).hexdigest()


def language_tags(language: str) -> set:
    lang = language.lower()
    tags = {lang}
    if lang in _ISO639_2:
        tags.add(_ISO639_2[lang])
    return tags


def pick_audio_stream_index(streams: List[Dict[str, Any]], language: str = "en") -> int:
    audio = [stream for stream in streams or [] if isinstance(stream, dict) and stream.get("codec_type") == "audio"]
    if not audio:
        raise TranscodeFailure("No audio stream in source")
    wanted = language_tags(language)
    lang = language.lower()
    for stream in audio:
        tag = str((stream.get("tags") or {}).get("language") or "").strip().lower()
        if tag in wanted or tag.startswith(f"{lang}-"):
            if isinstance(stream.get("index"), int):
                return stream["index"]
    first = audio[0].get("index")
    if not isinstance(first, int):
        raise TranscodeFailure("Audio stream index is invalid")
    return first


@dataclass(frozen=True)
class ArtifactPaths:
    original: Path
    output: Path

    @property
    def partials(self) -> List[Path]:
        return [self.output.with_name(self.output.name + ".part"), self.original.with_name(self.original.name + ".part")]


def _run(cmd: List[str], timeout: float) -> subprocess.CompletedProcess:
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as exc:
        raise TranscodeFailure(f"{cmd[0]} not found", str(exc)) from exc
    except subprocess.TimeoutExpired as exc:
        raise TranscodeFailure(f"{cmd[0]} timed out after {timeout}s", str(exc.stderr or "")) from exc
    if proc.returncode != 0:
        raise TranscodeFailure(f"{cmd[0]} exited with code {proc.returncode}", proc.stderr or "")
    return proc


def ffprobe_prober(ffprobe_bin: str = "ffprobe", timeout: float = 120.0) -> Prober:
    async def _probe(path: str) -> List[Dict[str, Any]]:
        cmd = [
            ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "stream=index,codec_type:stream_tags=language",
            "-of",
            "json",
            path,
        ]
        proc = await asyncio.to_thread(_run, cmd, timeout)
        try:
            payload = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise TranscodeFailure("Failed to parse ffprobe output", proc.stdout or "") from exc
        return payload.get("streams") or []

    return _probe


def ffmpeg_remuxer(ffmpeg_bin: str = "ffmpeg", timeout: float = 900.0) -> Remuxer:
    async def _remux(source_path: str, audio_index: int, out_path: str) -> None:
        cmd = [
            ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-v",
            "error",
            "-y",
            "-i",
            source_path,
            "-map",
            "0:v:0",
            "-map",
            f"0:{audio_index}",
            "-c",
            "copy",
            "-movflags",
            "faststart",
            "-f",
            "mp4",
            out_path,
        ]
        await asyncio.to_thread(_run, cmd, timeout)

    return _remux


def httpx_downloader(
    client: httpx.AsyncClient,
    user_agent: Optional[str] = None,
    referer: Optional[str] = None,
) -> Downloader:
    async def _download(url: str, target: str) -> None:
        headers = {}
        if user_agent:
            headers["User-Agent"] = user_agent
        if referer:
            headers["Referer"] = referer
        try:
            async with client.stream("GET", url, headers=headers, follow_redirects=True) as response:
                if response.status_code >= 400:
                    raise TranscodeFailure(f"Failed to download source: HTTP {response.status_code}")
                f = await asyncio.to_thread(open, target, "wb")
                try:
                    async for chunk in response.aiter_bytes(1024 * 1024):
                        await asyncio.to_thread(f.write, chunk)
                finally:
                    await asyncio.to_thread(f.close)
        except httpx.HTTPError as exc:
            raise TranscodeFailure("Failed to download source", str(exc)) from exc

    return _download


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


class TranscodePipeline:
    def __init__(
        self,
        cache_dir: str,
        downloader: Downloader,
        prober: Prober,
        remuxer: Remuxer,
        language: str = "en",
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.language = language.lower()
        self._download = downloader
        self._probe = prober
        self._remux = remuxer
        self._flights = SingleFlight()

    def paths_for(self, key: str) -> ArtifactPaths:
        return ArtifactPaths(
            original=self.cache_dir / f"{key}.orig.mp4",
            output=self.cache_dir / f"{key}.{self.language}.mp4",
        )

    def in_flight(self, key: str) -> bool:
        return key in self._flights

    async def ensure(self, descriptor: SourceDescriptor, episode: Optional[EpisodeKey] = None) -> Path:
        """Return the remuxed artifact for ``descriptor``, building it at most once."""
        key = output_key(episode, descriptor.local_path or descriptor.source_url)
        paths = self.paths_for(key)
        if paths.output.exists():
            return paths.output
        return await self._flights.run(key, lambda: self._build(key, descriptor, paths))

    async def _build(self, key: str, descriptor: SourceDescriptor, paths: ArtifactPaths) -> Path:
        # another task may have finished between the check and registration
        if paths.output.exists():
            return paths.output
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Transcode %s started (%s)", key[:12], descriptor.origin.value)
        try:
            if descriptor.is_local:
                source_path = descriptor.local_path
            else:
                if not paths.original.exists():
                    part = paths.partials[1]
                    await self._download(descriptor.source_url, str(part))
                    os.replace(part, paths.original)
                source_path = str(paths.original)

            streams = await self._probe(source_path)
            audio_index = pick_audio_stream_index(streams, self.language)
            part = paths.partials[0]
            await self._remux(source_path, audio_index, str(part))
            os.replace(part, paths.output)
        except BaseException as exc:
            _unlink(paths.output)
            for partial in paths.partials:
                _unlink(partial)
            if isinstance(exc, TranscodeFailure) or not isinstance(exc, Exception):
                raise
            raise TranscodeFailure("Transcode failed", str(exc)) from exc
        logger.info("Transcode %s finished", key[:12])
        return paths.output
