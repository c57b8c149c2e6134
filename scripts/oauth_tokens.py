"""OAuth2 refresh-token provider with a small on-disk access token cache."""

import asyncio
import json
import logging
import os
import time
from pathlib import Path

import httpx

from match_config import DEFAULT_OAUTH_TOKEN_URL, DEFAULT_TOKEN_CACHE_PATH

logger = logging.getLogger("match_watcher.oauth")

EXPIRY_MARGIN_SEC = 60


class TokenError(RuntimeError):
    """Raised when an access token cannot be obtained."""


def _secure_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)


class OAuthTokenProvider:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        *,
        token_url: str = DEFAULT_OAUTH_TOKEN_URL,
        cache_path: Path | None = DEFAULT_TOKEN_CACHE_PATH,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._token_url = token_url
        self._cache_path = cache_path
        self._client = http_client or httpx.AsyncClient(timeout=timeout, trust_env=False)
        self._owns_client = http_client is None
        self._lock = asyncio.Lock()
        self._access_token: str | None = None
        self._expires_at = 0.0
        self._load_cache()

    # -- cache ------------------------------------------------------------
    def _load_cache(self) -> None:
        if self._cache_path is None or not self._cache_path.exists():
            return
        try:
            data = json.loads(self._cache_path.read_text(encoding="utf-8"))
            self._access_token = str(data["access_token"])
            self._expires_at = float(data["expires_at"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable token cache %s: %s", self._cache_path, exc)
            self._access_token = None
            self._expires_at = 0.0

    def _store_cache(self) -> None:
        if self._cache_path is None:
            return
        payload = {"access_token": self._access_token, "expires_at": self._expires_at}
        try:
            _secure_write_text(self._cache_path, json.dumps(payload))
        except OSError as exc:
            logger.warning("Failed to write token cache %s: %s", self._cache_path, exc)

    def _is_fresh(self) -> bool:
        return bool(self._access_token) and self._expires_at - EXPIRY_MARGIN_SEC > time.time()

    # -- refresh ----------------------------------------------------------
    async def _refresh(self) -> None:
        form = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": self._refresh_token,
        }
        try:
            response = await self._client.post(self._token_url, data=form)
        except httpx.HTTPError as exc:
            raise TokenError(f"Token refresh failed: {exc}") from exc
        if response.status_code >= 300:
            raise TokenError(f"Token endpoint returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            data = response.json()
            token = str(data["access_token"])
            expires_in = float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise TokenError("Token endpoint returned an unexpected body") from exc

        self._access_token = token
        self._expires_at = time.time() + expires_in
        self._store_cache()
        logger.info("Refreshed access token, valid for %ds", int(expires_in))

    async def get_access_token(self) -> str:
        async with self._lock:
            if not self._is_fresh():
                await self._refresh()
            return self._access_token

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
