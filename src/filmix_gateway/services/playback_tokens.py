"""Signed, time-boxed, use-limited playback tokens.

Token format: ``base64url(json{"nonce", "exp"}) + "." + base64url(hmac_sha256)``.
The bound source stays in the server-side record keyed by nonce; it is never
part of the token.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from src.filmix_gateway.errors import TokenExpired, TokenInvalid, TokenUnavailable
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PlaybackTokenRecord:
    nonce: str
    descriptor: SourceDescriptor
    expires_at: int
    max_uses: int
    uses: int = 0
    episode: Optional[EpisodeKey] = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: int
    ttl_sec: int


class PlaybackTokenService:
    def __init__(
        self,
        secret: str,
        ttl_sec: int = 60,
        max_uses: int = 256,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        secret = (secret or "").strip()
        if not secret:
            raise ValueError("PLAYBACK_TOKEN_SECRET is required")
        self._secret = secret.encode("utf-8")
        self.ttl_sec = ttl_sec if ttl_sec > 0 else 60
        self.max_uses = max_uses if max_uses > 0 else 256
        self._clock_ms = clock_ms
        self._records: Dict[str, PlaybackTokenRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _sign(self, encoded_payload: str) -> str:
        digest = hmac.new(self._secret, encoded_payload.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def _sweep(self, now: int) -> None:
        expired = [nonce for nonce, record in self._records.items() if now >= record.expires_at]
        for nonce in expired:
            del self._records[nonce]

    def issue(self, descriptor: SourceDescriptor, episode: Optional[EpisodeKey] = None) -> IssuedToken:
        now = self._clock_ms()
        self._sweep(now)
        nonce = secrets.token_hex(16)
        expires_at = now + self.ttl_sec * 1000
        payload = json.dumps({"nonce": nonce, "exp": expires_at}, separators=(",", ":"))
        encoded = _b64url_encode(payload.encode("utf-8"))
        self._records[nonce] = PlaybackTokenRecord(
            nonce=nonce,
            descriptor=descriptor,
            expires_at=expires_at,
            max_uses=self.max_uses,
            episode=episode,
        )
        return IssuedToken(token=f"{encoded}.{self._sign(encoded)}", expires_at=expires_at, ttl_sec=self.ttl_sec)

    def _verify(self, token: str) -> tuple:
        raw = (token or "").strip()
        if not raw:
            raise TokenInvalid("Missing playback token")
        encoded, sep, signature = raw.rpartition(".")
        if not sep or not encoded or not signature:
            raise TokenInvalid("Invalid playback token")
        try:
            expected = self._sign(encoded)
        except UnicodeEncodeError:
            raise TokenInvalid("Invalid playback token")
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            raise TokenInvalid("Invalid playback token signature")
        try:
            payload = json.loads(_b64url_decode(encoded).decode("utf-8"))
        except (binascii.Error, ValueError):
            raise TokenInvalid("Invalid playback token payload")
        if not isinstance(payload, dict):
            raise TokenInvalid("Invalid playback token payload")
        nonce = str(payload.get("nonce") or "")
        exp = payload.get("exp")
        if not nonce or not isinstance(exp, int) or isinstance(exp, bool) or exp <= 0:
            raise TokenInvalid("Invalid playback token data")
        return nonce, exp

    def consume(self, token: str) -> PlaybackTokenRecord:
        nonce, exp = self._verify(token)
        now = self._clock_ms()
        if now >= exp:
            self._records.pop(nonce, None)
            raise TokenExpired()
        self._sweep(now)
        record = self._records.get(nonce)
        if record is None:
            raise TokenUnavailable("Playback token is not available")
        if record.uses >= record.max_uses:
            del self._records[nonce]
            raise TokenUnavailable("Playback token was already used")
        record.uses += 1
        if record.uses >= record.max_uses:
            del self._records[nonce]
        return record
