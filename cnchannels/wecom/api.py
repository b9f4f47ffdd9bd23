"""WeCom (WeChat Work) server API client."""

from __future__ import annotations

import json
from typing import Any

import httpx

from cnchannels.errors import AuthError, DeliveryError, ProviderApiError, RequestTimeoutError
from cnchannels.tokens import DEFAULT_TOKEN_TTL_SECONDS, AccessTokenCache, credential_key

WECOM_API_BASE = "https://qyapi.weixin.qq.com/cgi-bin"
_DEFAULT_TIMEOUT_SECONDS = 30.0


class WecomApi:
    """Async wrapper over the WeCom endpoints; the token rides in the query string."""

    def __init__(
        self,
        token_cache: AccessTokenCache,
        client: httpx.AsyncClient | None = None,
        base_url: str = WECOM_API_BASE,
    ) -> None:
        self._tokens = token_cache
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        url: str,
        *,
        timeout_ms: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        timeout = timeout_ms / 1000 if timeout_ms else _DEFAULT_TIMEOUT_SECONDS
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=timeout, **kwargs)
            async with httpx.AsyncClient(verify=True) as client:
                return await client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(timeout_ms or int(_DEFAULT_TIMEOUT_SECONDS * 1000)) from exc

    async def get_access_token(self, corp_id: str, secret: str, timeout_ms: int | None = None) -> str:
        """Cached access_token; refreshed five minutes before expiry."""

        async def fetch() -> tuple[str, float]:
            try:
                resp = await self._request(
                    "GET",
                    f"{self._base_url}/gettoken",
                    params={"corpid": corp_id, "corpsecret": secret},
                    timeout_ms=timeout_ms,
                )
                data = resp.json()
            except RequestTimeoutError:
                raise
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                raise AuthError(f"Failed to get access token: {exc}") from exc
            if not isinstance(data, dict):
                raise AuthError("Failed to get access token: response is not a JSON object")

            errcode = data.get("errcode", -1)
            token = data.get("access_token")
            if errcode != 0 or not token:
                msg = data.get("errmsg") or f"Failed to get access token: {errcode}"
                raise AuthError(msg, errcode, data.get("errmsg"))
            return token, data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS

        return await self._tokens.get_token(credential_key("wecom", corp_id, secret), fetch)

    async def call(
        self,
        endpoint: str,
        access_token: str,
        body: dict[str, Any] | None = None,
        *,
        method: str | None = None,
        query: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        error_cls: type[ProviderApiError] = ProviderApiError,
    ) -> dict[str, Any]:
        """Call ``endpoint``; a non-zero ``errcode`` raises ``error_cls``."""
        try:
            resp = await self._request(
                method or ("POST" if body is not None else "GET"),
                f"{self._base_url}{endpoint}",
                params={**(query or {}), "access_token": access_token},
                json=body,
                timeout_ms=timeout_ms,
            )
            data = resp.json()
        except RequestTimeoutError:
            raise
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise error_cls(f"WeCom API request failed: {endpoint}: {exc}") from exc
        if not isinstance(data, dict):
            raise error_cls(f"WeCom API request failed: {endpoint}: response is not a JSON object")

        if data.get("errcode") != 0:
            msg = data.get("errmsg") or f"WeCom API error: {endpoint}"
            raise error_cls(msg, data.get("errcode", -1), data.get("errmsg"))
        return data

    async def send_text_message(
        self,
        access_token: str,
        touser: str,
        agent_id: int,
        content: str,
    ) -> dict[str, Any]:
        return await self.call(
            "/message/send",
            access_token,
            {
                "touser": touser,
                "msgtype": "text",
                "agentid": agent_id,
                "text": {"content": content},
            },
            error_cls=DeliveryError,
        )

    async def get_user_info(self, access_token: str, userid: str) -> dict[str, Any]:
        return await self.call("/user/get", access_token, method="GET", query={"userid": userid})
