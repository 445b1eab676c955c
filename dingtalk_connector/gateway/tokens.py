"""Access token cache for the two DingTalk API generations.

- ``V1``: ``oapi.dingtalk.com`` (``/gettoken``), used by the legacy media upload API.
- ``V2``: ``api.dingtalk.com`` (``/v1.0/oauth2/accessToken``), used by robot
  messages, card streaming and media download.

The tokens are not interchangeable, so each generation has its own cache entry.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx
from loguru import logger

from dingtalk_connector.errors import TokenError


DINGTALK_API = "https://api.dingtalk.com"
DINGTALK_OAPI = "https://oapi.dingtalk.com"

# 在过期前 60 秒即刷新
REFRESH_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN = 7200


class TokenGeneration(str, Enum):
    V1 = "v1"
    V2 = "v2"


@dataclass
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """
    Client-credential token cache keyed by (account, app key, generation).

    Example:
        cache = TokenCache(http)
        token = await cache.get_token(account.account_id, account.app_key,
                                      account.app_secret, TokenGeneration.V2)
    """

    def __init__(self, http: httpx.AsyncClient, clock: Callable[[], float] = time.time):
        self._http = http
        self._clock = clock
        self._entries: dict[tuple[str, str, TokenGeneration], CachedToken] = {}
        self._locks: dict[tuple[str, str, TokenGeneration], asyncio.Lock] = {}

    async def get_token(
        self,
        account_id: str,
        app_key: str,
        app_secret: str,
        generation: TokenGeneration = TokenGeneration.V2,
    ) -> str:
        """
        Return a cached token or fetch a fresh one.

        A cached token is reused while its expiry is more than 60 seconds away.

        Raises:
            TokenError: The exchange failed or returned no token.
        """
        key = (account_id, app_key, generation)
        cached = self._valid(key)
        if cached:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # 等锁期间可能已被其它协程刷新
            cached = self._valid(key)
            if cached:
                return cached

            if generation == TokenGeneration.V1:
                token, expires_in = await self._fetch_v1(app_key, app_secret)
            else:
                token, expires_in = await self._fetch_v2(app_key, app_secret)

            self._entries[key] = CachedToken(token=token, expires_at=self._clock() + expires_in)
            logger.debug(f"Fetched {generation.value} access token for {account_id} (expires in {expires_in}s)")
            return token

    def invalidate(self, account_id: str) -> None:
        """Drop every cached token of an account."""
        for key in [k for k in self._entries if k[0] == account_id]:
            del self._entries[key]

    def _valid(self, key: tuple[str, str, TokenGeneration]) -> Optional[str]:
        entry = self._entries.get(key)
        if entry and self._clock() < entry.expires_at - REFRESH_MARGIN_SECONDS:
            return entry.token
        return None

    async def _fetch_v2(self, app_key: str, app_secret: str) -> tuple[str, int]:
        try:
            resp = await self._http.post(
                f"{DINGTALK_API}/v1.0/oauth2/accessToken",
                json={"appKey": app_key, "appSecret": app_secret},
            )
        except httpx.HTTPError as e:
            raise TokenError(f"DingTalk token fetch failed: {e}") from e

        if resp.status_code >= 400:
            raise TokenError(f"DingTalk token fetch failed: HTTP {resp.status_code} {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise TokenError(f"DingTalk token response is not JSON: {resp.text[:200]}") from e

        token = data.get("accessToken")
        if not token:
            raise TokenError("DingTalk token response missing accessToken")
        return token, int(data.get("expireIn") or DEFAULT_EXPIRES_IN)

    async def _fetch_v1(self, app_key: str, app_secret: str) -> tuple[str, int]:
        try:
            resp = await self._http.get(
                f"{DINGTALK_OAPI}/gettoken",
                params={"appkey": app_key, "appsecret": app_secret},
            )
        except httpx.HTTPError as e:
            raise TokenError(f"DingTalk V1 token fetch failed: {e}") from e

        if resp.status_code >= 400:
            raise TokenError(f"DingTalk V1 token fetch failed: HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise TokenError(f"DingTalk V1 token response is not JSON: {resp.text[:200]}") from e

        if data.get("errcode") != 0 or not data.get("access_token"):
            raise TokenError(f"DingTalk V1 token error: {data}")
        return data["access_token"], int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
