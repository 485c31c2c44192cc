"""Last playback position, persisted as a single JSON document."""

from __future__ import annotations

import asyncio
import json
import os
import time
from typing import Any, Dict, Optional

from src.filmix_gateway.logger import logger


def empty_progress() -> Dict[str, Any]:
    return {"season": None, "episode": None, "currentTime": 0, "duration": 0, "updatedAt": 0}


def _positive_int(value: Any) -> Optional[int]:
    try:
        parsed = int(str(value if value is not None else "").strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


def normalize_progress(value: Any, now_ms: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Validate a progress document; returns None when it is unusable.

    ``currentTime`` is clamped to ``duration`` when a duration is known and
    both are rounded to milliseconds. A missing ``updatedAt`` means now.
    """
    if not isinstance(value, dict):
        return None
    season = _positive_int(value.get("season"))
    episode = _positive_int(value.get("episode"))
    if season is None or episode is None:
        return None
    current = _number(value.get("currentTime"))
    if current is None or current < 0:
        return None
    duration = _number(value.get("duration"))
    if duration is None or duration < 0:
        duration = 0.0
    if duration > 0:
        current = min(current, duration)
    updated_at = _positive_int(value.get("updatedAt"))
    if updated_at is None:
        updated_at = now_ms if now_ms is not None else int(time.time() * 1000)
    return {
        "season": season,
        "episode": episode,
        "currentTime": round(current, 3),
        "duration": round(duration, 3),
        "updatedAt": updated_at,
    }


class ProgressStore:
    def __init__(self, path: str) -> None:
        self.path = path
        self._progress: Optional[Dict[str, Any]] = None
        self._loaded = False
        self._lock = asyncio.Lock()

    def _read(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return normalize_progress(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable progress file %s: %s", self.path, exc)
            return None

    def _write(self, progress: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(json.dumps(progress) + "\n")

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._progress = await asyncio.to_thread(self._read)
        self._loaded = True

    async def get(self) -> Dict[str, Any]:
        async with self._lock:
            await self._ensure_loaded()
            return dict(self._progress or empty_progress())

    async def update(self, progress: Dict[str, Any]) -> Dict[str, Any]:
        """Store ``progress`` unless the stored one is newer; returns what is stored."""
        async with self._lock:
            await self._ensure_loaded()
            current = self._progress
            if current is not None and progress["updatedAt"] < current["updatedAt"]:
                return dict(current)
            await asyncio.to_thread(self._write, progress)
            self._progress = dict(progress)
            return dict(progress)
