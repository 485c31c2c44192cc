from __future__ import annotations

from typing import Dict, Optional


class GatewayError(Exception):
    """Base class for errors that map to a client-facing status code."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class DecodeError(GatewayError):
    """Obfuscated payload could not be decoded."""

    status_code = 502


class UpstreamFetchError(GatewayError):
    """Network failure, non-2xx response or malformed upstream document."""

    status_code = 502


class EpisodeNotFound(GatewayError):
    status_code = 404

    def __init__(self, message: str = "Episode not found or no sources available") -> None:
        super().__init__(message)


class TokenInvalid(GatewayError):
    """Token is structurally broken or its signature does not match."""

    status_code = 401


class TokenUnavailable(GatewayError):
    """Token was valid once but is unknown, exhausted or expired."""

    status_code = 410


class TokenExpired(TokenUnavailable):
    def __init__(self, message: str = "Playback token expired") -> None:
        super().__init__(message)


class TranscodeFailure(GatewayError):
    status_code = 502

    def __init__(self, message: str, diagnostics: str = "") -> None:
        tail = diagnostics.strip()[-800:]
        super().__init__(f"{message}: {tail}" if tail else message)
        self.diagnostics = tail


class RangeNotSatisfiable(GatewayError):
    status_code = 416

    def __init__(self, total: int) -> None:
        super().__init__("Requested range not satisfiable")
        self.total = total

    @property
    def headers(self) -> Dict[str, str]:
        return {"Content-Range": f"bytes */{self.total}"}


class RateLimited(GatewayError):
    status_code = 429

    def __init__(self) -> None:
        super().__init__("Too many requests")
