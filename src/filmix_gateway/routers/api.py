import hmac
import json
import os
import re
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from src.filmix_gateway.dependencies import GatewayServices, get_services
from src.filmix_gateway.errors import EpisodeNotFound
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor, SourceOrigin, quality_from_url
from src.filmix_gateway.services.catalog import episode_data, load_english_map, save_english_map
from src.filmix_gateway.services.har_import import parse_har
from src.filmix_gateway.services.ladder import normalize_quality
from src.filmix_gateway.services.progress import normalize_progress
from src.filmix_gateway.services.streaming import local_file_response, proxy_response
from src.filmix_gateway.logger import logger

router = APIRouter(prefix="/api")

NO_STORE = {"Cache-Control": "no-store"}
METADATA_CACHE = {"Cache-Control": "public, max-age=30"}
BOOTSTRAP_QUALITY = 480

_POSITIVE_INT_RE = re.compile(r"^[1-9][0-9]*$")
_LANG_RE = re.compile(r"^[a-z]{2,3}$")

SEASON_EPISODE_ERROR = "season and episode are required positive integers"
QUALITY_ERROR = 'quality must be integer or "max"'


# --- parameter parsing ------------------------------------------------------

def _positive_int(value: Any) -> Optional[int]:
    text = str(value if value is not None else "").strip()
    if not _POSITIVE_INT_RE.match(text):
        return None
    return int(text)


def _season_episode(params: Any) -> EpisodeKey:
    season = _positive_int(params.get("season"))
    episode = _positive_int(params.get("episode"))
    if season is None or episode is None:
        raise HTTPException(status_code=400, detail=SEASON_EPISODE_ERROR)
    return EpisodeKey(season, episode)


def _quality(value: Any) -> str:
    normalized = normalize_quality(value)
    if normalized is None:
        raise HTTPException(status_code=400, detail=QUALITY_ERROR)
    return normalized


def _episodes_csv(value: Any) -> List[int]:
    episodes: List[int] = []
    for part in str(value or "").split(","):
        episode = _positive_int(part)
        if episode is not None and episode not in episodes:
            episodes.append(episode)
    return episodes


def _as_bool(value: Any, default: bool = False) -> bool:
    text = str(value if value is not None else "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def _now_ms() -> int:
    return int(time.time() * 1000)


# --- token payloads ---------------------------------------------------------

def stream_url(token: str) -> str:
    return f"/api/stream/{token}"


def transcode_url(token: str) -> str:
    return f"/api/transcode/{token}"


def token_payload(services: GatewayServices, key: EpisodeKey, descriptor: SourceDescriptor) -> Dict[str, Any]:
    """Issue a playback token for ``descriptor`` and describe it for the client."""
    issued = services.tokens.issue(descriptor, key)
    return {
        "season": key.season,
        "episode": key.episode,
        "quality": descriptor.effective_quality,
        "origin": descriptor.origin.value,
        "sourceKey": descriptor.source_key,
        "playbackToken": issued.token,
        "playbackUrl": stream_url(issued.token),
        "transcodeUrl": transcode_url(issued.token),
        "expiresAt": issued.expires_at,
    }


def _fixed_key(services: GatewayServices) -> EpisodeKey:
    return EpisodeKey(services.settings.fixed_season, services.settings.fixed_episode)


# --- metadata ---------------------------------------------------------------

@router.get("/health")
async def health(services: GatewayServices = Depends(get_services)):
    payload: Dict[str, Any] = {"ok": True}
    if services.settings.health_version_exposed:
        payload["version"] = services.settings.app_version or "dev"
    return JSONResponse(content=payload)


@router.get("/progress")
async def get_progress(services: GatewayServices = Depends(get_services)):
    return JSONResponse(content=await services.progress.get(), headers=NO_STORE)


@router.post("/progress")
async def post_progress(request: Request, services: GatewayServices = Depends(get_services)):
    # navigator.sendBeacon posts text/plain, so the body is parsed by hand
    raw = await request.body()
    try:
        body = json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, ValueError):
        body = None
    progress = normalize_progress(body)
    if progress is None:
        raise HTTPException(status_code=400, detail="Invalid progress payload")
    return JSONResponse(content=await services.progress.update(progress), headers=NO_STORE)


@router.get("/show")
async def show(request: Request, services: GatewayServices = Depends(get_services)):
    force = _as_bool(request.query_params.get("force"))
    catalog = await services.catalog.snapshot(force=force)
    fixed = _fixed_key(services)
    return JSONResponse(
        content={
            "title": catalog.title,
            "seasons": catalog.seasons,
            "episodesBySeason": {str(season): episodes for season, episodes in catalog.episodes_by_season.items()},
            "languages": catalog.languages,
            "fixed": {"season": fixed.season, "episode": fixed.episode},
        },
        headers=METADATA_CACHE,
    )


@router.get("/episode")
async def episode(request: Request, services: GatewayServices = Depends(get_services)):
    key = _season_episode(request.query_params)
    catalog = await services.catalog.snapshot()
    data = episode_data(catalog, key.season, key.episode)
    if not data.sources:
        raise EpisodeNotFound()
    return JSONResponse(
        content={
            "season": key.season,
            "episode": key.episode,
            "defaultLang": data.default_lang,
            "sources": [
                {"lang": item["lang"], "label": item["label"], "quality": quality_from_url(item["sourceUrl"])}
                for item in data.sources
            ],
        },
        headers=NO_STORE,
    )


# --- source resolution ------------------------------------------------------

@router.get("/fixed-episode")
async def fixed_episode(services: GatewayServices = Depends(get_services)):
    descriptor = await services.resolver.resolve_fixed()
    payload = token_payload(services, _fixed_key(services), descriptor)
    payload["playUrl"] = payload["playbackUrl"]
    return JSONResponse(content=payload, headers=NO_STORE)


@router.post("/playback-token")
async def playback_token(request: Request, services: GatewayServices = Depends(get_services)):
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail=SEASON_EPISODE_ERROR)
    key = _season_episode(body)
    quality = _quality(body.get("quality"))
    descriptor = await services.resolver.resolve_for_episode(key.season, key.episode, quality)
    return JSONResponse(content=token_payload(services, key, descriptor), headers=NO_STORE)


@router.get("/source")
async def source(request: Request, services: GatewayServices = Depends(get_services)):
    params = request.query_params
    quality = _quality(params.get("quality"))
    has_season, has_episode = "season" in params, "episode" in params
    if not has_season and not has_episode:
        descriptor = await services.resolver.resolve_fixed()
        return JSONResponse(content=token_payload(services, _fixed_key(services), descriptor), headers=NO_STORE)
    key = _season_episode(params)
    descriptor = await services.resolver.resolve_for_episode(key.season, key.episode, quality)
    return JSONResponse(content=token_payload(services, key, descriptor), headers=NO_STORE)


@router.get("/source-ladder")
async def source_ladder(request: Request, services: GatewayServices = Depends(get_services)):
    key = _season_episode(request.query_params)
    resolver = services.resolver
    if resolver.is_fixed(key.season, key.episode):
        descriptor = await resolver.resolve_fixed()
        sources = [token_payload(services, key, descriptor)]
        max_quality = descriptor.effective_quality
    else:
        ladder = await resolver.resolve_ladder(key.season, key.episode)
        ordered = sorted(ladder.sources, key=lambda item: item.effective_quality)
        sources = [token_payload(services, key, item) for item in ordered]
        max_quality = ordered[-1].effective_quality if ordered else 0
    return JSONResponse(
        content={
            "season": key.season,
            "episode": key.episode,
            "bootstrapQuality": BOOTSTRAP_QUALITY,
            "maxQuality": max_quality,
            "sources": sources,
            "generatedAt": _now_ms(),
        },
        headers=NO_STORE,
    )


@router.get("/source-batch")
async def source_batch(request: Request, services: GatewayServices = Depends(get_services)):
    params = request.query_params
    season = _positive_int(params.get("season"))
    if season is None:
        raise HTTPException(status_code=400, detail="season is required positive integer")
    episodes = _episodes_csv(params.get("episodes"))
    if not episodes:
        raise HTTPException(status_code=400, detail="episodes must be a comma-separated integer list")
    quality = _quality(params.get("quality"))
    resolved = await services.resolver.resolve_batch(season, episodes, quality)
    items = []
    for episode_number, descriptor in resolved:
        payload = token_payload(services, EpisodeKey(season, episode_number), descriptor)
        payload.pop("season")
        items.append(payload)
    return JSONResponse(content={"season": season, "items": items, "generatedAt": _now_ms()}, headers=NO_STORE)


@router.get("/play")
async def play(request: Request, services: GatewayServices = Depends(get_services)):
    params = request.query_params
    has_season, has_episode = "season" in params, "episode" in params
    if has_season != has_episode:
        raise HTTPException(status_code=400, detail="season and episode should be provided together")
    key = _season_episode(params) if has_season else _fixed_key(services)
    lang = str(params.get("lang") or "en").strip().lower()
    if not _LANG_RE.match(lang):
        raise HTTPException(status_code=400, detail="lang should be a 2-3 letter code")

    if lang == "en" and services.resolver.is_fixed(key.season, key.episode):
        descriptor = await services.resolver.resolve_fixed()
    else:
        catalog = await services.catalog.snapshot()
        item = episode_data(catalog, key.season, key.episode).source_for(lang)
        if item is None:
            raise EpisodeNotFound("Language source is not available")
        url = item["sourceUrl"]
        descriptor = SourceDescriptor(origin=SourceOrigin.CATALOG, quality=quality_from_url(url), source_url=url)
    payload = token_payload(services, key, descriptor)
    return RedirectResponse(url=payload["playbackUrl"], status_code=302, headers=NO_STORE)


# --- media ------------------------------------------------------------------

def _local_media(path: str, request: Request) -> Response:
    if not os.path.isfile(path):
        raise EpisodeNotFound("Local media file is missing")
    return local_file_response(path, request.headers.get("range"), extra_headers=NO_STORE)


@router.get("/stream/{token}")
async def stream(token: str, request: Request, services: GatewayServices = Depends(get_services)):
    record = services.tokens.consume(token)
    descriptor = record.descriptor
    if descriptor.is_local:
        return _local_media(descriptor.local_path, request)
    return await proxy_response(
        services.http,
        descriptor.source_url,
        range_header=request.headers.get("range"),
        user_agent=services.settings.user_agent,
        referer=services.settings.page_url,
        extra_headers=NO_STORE,
    )


@router.get("/transcode/{token}")
async def transcode(token: str, request: Request, services: GatewayServices = Depends(get_services)):
    record = services.tokens.consume(token)
    artifact = await services.pipeline.ensure(record.descriptor, record.episode)
    return _local_media(str(artifact), request)


# --- admin ------------------------------------------------------------------

@router.post("/admin/import-har")
async def import_har(request: Request, services: GatewayServices = Depends(get_services)):
    admin_token = services.settings.admin_token
    auth = request.headers.get("authorization") or ""
    supplied = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
    if not admin_token or not hmac.compare_digest(supplied.encode("utf-8"), admin_token.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        har = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="HAR body must be JSON")

    map_path = services.settings.english_map_path
    merged = parse_har(har, existing=load_english_map(map_path))
    saved = save_english_map(merged, map_path)
    services.resolver.clear()
    services.catalog.reset()
    logger.info("Imported HAR into English map (%d entries)", len(saved))
    return JSONResponse(content={"ok": True, "entries": len(saved)}, headers=NO_STORE)
