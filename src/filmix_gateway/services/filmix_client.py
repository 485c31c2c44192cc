"""Authenticated access to the Filmix player-data endpoint and playlists."""

from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from src.filmix_gateway.errors import UpstreamFetchError
from src.filmix_gateway.logger import logger

_POST_ID_RE = re.compile(r"/(\d+)-[^/]+\.html$", re.IGNORECASE)
_HTML_RE = re.compile(r"</?[a-z][\s\S]*>", re.IGNORECASE)
_AUTH_COOKIES = ("dle_user_id", "dle_password")


def parse_post_id(page_url: str) -> str:
    match = _POST_ID_RE.search(str(page_url or ""))
    if not match:
        raise ValueError("Unable to parse post_id from page URL")
    return match.group(1)


def parse_cookie_header(cookie_header: str) -> Dict[str, str]:
    cookies: Dict[str, str] = {}
    for chunk in str(cookie_header or "").split(";"):
        name, sep, value = chunk.strip().partition("=")
        if sep and name.strip() and value.strip():
            cookies[name.strip()] = value.strip()
    return cookies


class FilmixClient:
    def __init__(
        self,
        page_url: str,
        http: httpx.AsyncClient,
        login: str = "",
        password: str = "",
        user_agent: str = "Mozilla/5.0",
        cookie: str = "",
    ) -> None:
        self.page_url = page_url
        self.login = login
        self.password = password
        self.user_agent = user_agent
        self.post_id = parse_post_id(page_url)
        parsed = urlparse(page_url)
        self.origin = f"{parsed.scheme}://{parsed.netloc}"
        self._http = http
        self._jar: Dict[str, str] = parse_cookie_header(cookie)
        self._authenticated = False

    # -- cookies ---------------------------------------------------------
    def has_auth_cookies(self) -> bool:
        values = [self._jar.get(name, "").lower() for name in _AUTH_COOKIES]
        return all(value and value != "deleted" for value in values)

    def cookie_header(self) -> str:
        return "; ".join(
            f"{name}={value}"
            for name, value in self._jar.items()
            if value and value.lower() != "deleted"
        )

    def _update_jar(self, response: httpx.Response) -> None:
        for line in response.headers.get_list("set-cookie"):
            name, sep, value = line.split(";", 1)[0].partition("=")
            if sep and name.strip():
                self._jar[name.strip()] = value.strip()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["User-Agent"] = self.user_agent
        cookie = self.cookie_header()
        if cookie:
            headers["Cookie"] = cookie
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"{method} {url} failed: {exc}") from exc
        self._update_jar(response)
        return response

    # -- auth ------------------------------------------------------------
    async def _submit_login(self) -> None:
        response = await self._request(
            "POST",
            f"{self.origin}/engine/ajax/user_auth.php",
            data={
                "login_name": self.login,
                "login_password": self.password,
                "login": "submit",
                "login_not_save": "yes",
            },
            headers={
                "Referer": self.page_url,
                "Origin": self.origin,
                "X-Requested-With": "XMLHttpRequest",
                "Accept": "*/*",
            },
        )
        if response.status_code >= 400:
            raise UpstreamFetchError(f"Filmix login failed: HTTP {response.status_code}")
        text = response.text.strip()
        if text and text not in {"AUTHORIZED", "OK"} and not _HTML_RE.search(text) and not self.has_auth_cookies():
            raise UpstreamFetchError(f"Filmix login failed: {text[:200]}")

    async def ensure_authenticated(self, force: bool = False) -> None:
        if self._authenticated and not force:
            return
        await self._request("GET", self.page_url, headers={"Accept": "text/html,application/xhtml+xml"})
        if force or not self.has_auth_cookies():
            if not self.login or not self.password:
                raise UpstreamFetchError(
                    "Filmix auth cookies are missing and FILMIX_LOGIN/FILMIX_PASSWORD are not configured"
                )
            logger.info("Logging in to Filmix as %s", self.login)
            await self._submit_login()
        if not self.has_auth_cookies():
            raise UpstreamFetchError("Filmix authentication cookies are not available")
        self._authenticated = True

    # -- data ------------------------------------------------------------
    async def get_player_data(self) -> Dict[str, Any]:
        for attempt in range(2):
            await self.ensure_authenticated(force=attempt > 0)
            response = await self._request(
                "POST",
                f"{self.origin}/api/movies/player-data",
                params={"t": str(int(time.time() * 1000))},
                data={"post_id": self.post_id, "showfull": "true"},
                headers={
                    "Referer": self.page_url,
                    "Origin": self.origin,
                    "X-Requested-With": "XMLHttpRequest",
                    "Accept": "application/json, text/javascript, */*; q=0.01",
                },
            )
            text = response.content.decode("windows-1251", errors="replace")
            try:
                data = json.loads(text)
            except json.JSONDecodeError as exc:
                self._authenticated = False
                if attempt == 1:
                    raise UpstreamFetchError(f"Invalid player-data payload: {exc}") from exc
                logger.warning("player-data is not JSON, re-authenticating")
                continue
            if isinstance(data, dict) and data.get("message"):
                return data
            self._authenticated = False
        raise UpstreamFetchError("Filmix player-data response does not contain message")

    async def fetch_playlist(self, url: str, referer: Optional[str] = None) -> str:
        try:
            response = await self._http.get(
                url,
                headers={
                    "Accept": "text/plain,application/json,*/*",
                    "User-Agent": self.user_agent,
                    "Referer": referer or self.page_url,
                },
            )
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"playlist request failed: {exc}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise UpstreamFetchError(f"playlist request failed: HTTP {response.status_code}")
        return response.text
