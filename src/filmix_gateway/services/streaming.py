"""Byte-range serving for local artifacts and pass-through proxying of remote sources."""

from __future__ import annotations

import os
import re
from typing import AsyncIterator, Dict, Iterator, Optional, Tuple

import httpx
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from src.filmix_gateway.errors import RangeNotSatisfiable, UpstreamFetchError

CHUNK_SIZE = 1024 * 1024
_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)

PASS_HEADERS = (
    "content-type",
    "content-length",
    "content-range",
    "accept-ranges",
    "cache-control",
    "etag",
    "last-modified",
)


def parse_range(header: str, total: int) -> Tuple[int, int]:
    """Parse a single ``bytes=`` range into inclusive ``(start, end)``.

    Raises RangeNotSatisfiable for malformed or out-of-bounds ranges.
    """
    match = _RANGE_RE.match(header or "")
    if not match:
        raise RangeNotSatisfiable(total)
    first, last = match.group(1), match.group(2)
    if not first and not last:
        raise RangeNotSatisfiable(total)
    if not first:
        # suffix range: the last N bytes
        length = int(last)
        if length <= 0 or total <= 0:
            raise RangeNotSatisfiable(total)
        return max(total - length, 0), total - 1
    start = int(first)
    end = int(last) if last else total - 1
    if start < 0 or end < start or end >= total:
        raise RangeNotSatisfiable(total)
    return start, end


def iter_file(path: str, start: int, end: int) -> Iterator[bytes]:
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def local_file_response(
    path: str,
    range_header: Optional[str],
    media_type: str = "video/mp4",
    extra_headers: Optional[Dict[str, str]] = None,
) -> Response:
    total = os.path.getsize(path)
    headers = {"Accept-Ranges": "bytes", **(extra_headers or {})}
    if range_header:
        start, end = parse_range(range_header, total)
        headers["Content-Range"] = f"bytes {start}-{end}/{total}"
        headers["Content-Length"] = str(end - start + 1)
        return StreamingResponse(iter_file(path, start, end), status_code=206, headers=headers, media_type=media_type)
    headers["Content-Length"] = str(total)
    return StreamingResponse(iter_file(path, 0, total - 1), status_code=200, headers=headers, media_type=media_type)


async def proxy_response(
    client: httpx.AsyncClient,
    url: str,
    range_header: Optional[str] = None,
    user_agent: Optional[str] = None,
    referer: Optional[str] = None,
    extra_headers: Optional[Dict[str, str]] = None,
) -> Response:
    request_headers: Dict[str, str] = {}
    if range_header:
        request_headers["Range"] = range_header
    if user_agent:
        request_headers["User-Agent"] = user_agent
    if referer:
        request_headers["Referer"] = referer
    try:
        upstream = await client.send(
            client.build_request("GET", url, headers=request_headers),
            stream=True,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        raise UpstreamFetchError(f"source request failed: {exc}") from exc

    headers = {name: upstream.headers[name] for name in PASS_HEADERS if upstream.headers.get(name)}
    headers.update(extra_headers or {})

    async def _body() -> AsyncIterator[bytes]:
        async for chunk in upstream.aiter_raw(CHUNK_SIZE):
            yield chunk

    return StreamingResponse(
        _body(),
        status_code=upstream.status_code,
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )
