"""Decoder for the obfuscated values served in Filmix player-data.

Encoded values start with ``#2``. The payload is base64 of the UTF-8 text
with ``separator + base64(key)`` markers interleaved; markers are removed
from the most recently applied key to the first one before decoding.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Iterable, Tuple

from src.filmix_gateway.errors import DecodeError

ENCODED_MARKER = "#2"


@dataclass(frozen=True)
class DecodeTable:
    separator: str
    keys: Tuple[str, ...]

    @classmethod
    def from_keys(cls, separator: str, keys: Iterable[str]) -> "DecodeTable":
        return cls(separator=separator, keys=tuple(keys))

    def markers(self) -> Tuple[str, ...]:
        """Markers to strip, newest key first."""
        return tuple(
            self.separator + _b64_utf8(key) for key in reversed(self.keys) if key
        )


def _b64_utf8(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def is_encoded(text: str) -> bool:
    return isinstance(text, str) and text.startswith(ENCODED_MARKER)


def decode_value(text: str, table: DecodeTable) -> str:
    source = text or ""
    if not source.startswith(ENCODED_MARKER):
        return source
    # playlist bodies may carry line breaks; base64 ignores whitespace
    payload = "".join(source[len(ENCODED_MARKER):].split())
    for marker in table.markers():
        payload = payload.replace(marker, "")

    padding = "=" * (-len(payload) % 4)
    try:
        raw = base64.b64decode(payload + padding, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"malformed base64 payload: {exc}") from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"payload is not valid UTF-8: {exc}") from exc


def decode_playlist(text: str, table: DecodeTable) -> Any:
    decoded = decode_value(text, table)
    try:
        return json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"playlist payload is not JSON: {exc}") from exc


def encode_value(text: str, table: DecodeTable) -> str:
    """Inverse of ``decode_value``; used to build fixtures."""
    return ENCODED_MARKER + _b64_utf8(text) + "".join(table.markers())
