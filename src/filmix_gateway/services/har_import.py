"""Extract English episode sources from a browser HAR capture.

Usage::

    python -m src.filmix_gateway.services.har_import capture.har [--map data/english-map.json]
"""

from __future__ import annotations

import argparse
import json
import re
from typing import Any, Dict, Optional, Tuple

from src.filmix_gateway.services.catalog import load_english_map, save_english_map

_SEASON_EPISODE_RE = re.compile(r"s(\d{1,2})e(\d{1,2})", re.IGNORECASE)
_ENGLISH_RE = re.compile(
    r'\benglish\b|\beng\b|language[^a-z0-9]*en\b|audio[^a-z0-9]*track[^a-z0-9]*en\b|"en"|\ben-us\b'
)


def _header_value(headers: Any, name: str) -> str:
    if not isinstance(headers, list):
        return ""
    for header in headers:
        if str(header.get("name") or "").lower() == name.lower():
            return str(header.get("value") or "")
    return ""


def _join_headers(headers: Any) -> str:
    if not isinstance(headers, list):
        return ""
    return ";".join(f"{h.get('name')}:{h.get('value')}" for h in headers)


def is_media_url(url: str, mime_type: str) -> bool:
    lower_url = (url or "").lower()
    lower_mime = (mime_type or "").lower()
    if any(ext in lower_url for ext in (".mp4", ".m3u8", ".mpd")):
        return True
    return any(kind in lower_mime for kind in ("video/", "mpegurl", "dash+xml"))


def season_episode_from_url(url: str) -> Optional[Tuple[int, int]]:
    match = _SEASON_EPISODE_RE.search(url or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def has_english_marker(text: str) -> bool:
    return bool(_ENGLISH_RE.search((text or "").lower()))


def _score(entry: Dict[str, Any], url: str, text: str) -> int:
    score = 0
    lower = url.lower()
    if has_english_marker(text):
        score += 8
    if ".m3u8" in lower:
        score += 3
    if ".mp4" in lower:
        score += 2
    if (entry.get("response") or {}).get("status") in (200, 206):
        score += 1
    return score


def parse_har(har: Any, existing: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    output = dict(existing or {})
    scores: Dict[str, int] = {}
    try:
        entries = har["log"]["entries"]
    except (KeyError, TypeError):
        entries = []
    for entry in entries if isinstance(entries, list) else []:
        request = entry.get("request") or {}
        response = entry.get("response") or {}
        content = response.get("content") or {}
        url = str(request.get("url") or "").split("#", 1)[0]
        if not is_media_url(url, content.get("mimeType") or ""):
            continue
        season_episode = season_episode_from_url(url)
        if not season_episode:
            continue
        text = "\n".join([
            url,
            str((request.get("postData") or {}).get("text") or ""),
            str(content.get("text") or ""),
            _join_headers(request.get("headers")),
            _join_headers(response.get("headers")),
            _header_value(response.get("headers"), "content-language"),
        ])
        if not has_english_marker(text):
            continue
        key = f"{season_episode[0]}:{season_episode[1]}"
        score = _score(entry, url, text)
        if key not in scores or score > scores[key]:
            scores[key] = score
            output[key] = url
    return output


def import_har_file(har_path: str, map_path: str) -> Dict[str, str]:
    with open(har_path, "r", encoding="utf-8") as f:
        har = json.load(f)
    merged = parse_har(har, existing=load_english_map(map_path))
    return save_english_map(merged, map_path)


def main(argv: list[str] | None = None) -> None:
    from src.filmix_gateway.settings import settings

    parser = argparse.ArgumentParser(description="Merge English episode sources from a HAR file into the English map.")
    parser.add_argument("file", type=str, help="Path to the HAR capture.")
    parser.add_argument("--map", dest="map_path", default=settings.english_map_path, help="English map JSON path.")
    args = parser.parse_args(argv)
    saved = import_har_file(args.file, args.map_path)
    print(json.dumps({"ok": True, "entries": len(saved), "map": args.map_path}, ensure_ascii=False))


if __name__ == "__main__":
    main()
