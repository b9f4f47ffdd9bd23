"""Feishu (Lark) Open Platform API client."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from cnchannels.config.schema import ReceiveIdType
from cnchannels.errors import AuthError, DeliveryError, ProviderApiError, RequestTimeoutError
from cnchannels.tokens import DEFAULT_TOKEN_TTL_SECONDS, AccessTokenCache, credential_key

logger = logging.getLogger(__name__)

FEISHU_API_BASE = "https://open.feishu.cn/open-apis"
_DEFAULT_TIMEOUT_SECONDS = 30.0


class FeishuApi:
    """Thin async wrapper over the Feishu REST endpoints the adapter uses.

    Pass ``client`` to reuse a connection pool (or a mock transport);
    otherwise each call opens a short-lived ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        token_cache: AccessTokenCache,
        client: httpx.AsyncClient | None = None,
        base_url: str = FEISHU_API_BASE,
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

    async def get_tenant_access_token(
        self,
        app_id: str,
        app_secret: str,
        timeout_ms: int | None = None,
    ) -> str:
        """Cached tenant_access_token; refreshed five minutes before expiry."""

        async def fetch() -> tuple[str, float]:
            try:
                resp = await self._request(
                    "POST",
                    f"{self._base_url}/auth/v3/tenant_access_token/internal",
                    json={"app_id": app_id, "app_secret": app_secret},
                    headers={"Content-Type": "application/json; charset=utf-8"},
                    timeout_ms=timeout_ms,
                )
                data = resp.json()
            except RequestTimeoutError:
                raise
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                raise AuthError(f"Failed to get tenant access token: {exc}") from exc
            if not isinstance(data, dict):
                raise AuthError("Failed to get tenant access token: response is not a JSON object")

            code = data.get("code", -1)
            token = data.get("tenant_access_token")
            if code != 0 or not token:
                msg = data.get("msg") or f"Failed to get tenant access token: {code}"
                raise AuthError(msg, code, data.get("msg"))
            return token, data.get("expire") or DEFAULT_TOKEN_TTL_SECONDS

        return await self._tokens.get_token(credential_key("feishu", app_id, app_secret), fetch)

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
        """Call an endpoint with the bearer token; non-zero ``code`` raises ``error_cls``."""
        try:
            resp = await self._request(
                method or ("POST" if body is not None else "GET"),
                f"{self._base_url}{endpoint}",
                params=query,
                json=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json; charset=utf-8",
                },
                timeout_ms=timeout_ms,
            )
            data = resp.json()
        except RequestTimeoutError:
            raise
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise error_cls(f"Feishu API request failed: {endpoint}: {exc}") from exc
        if not isinstance(data, dict):
            raise error_cls(f"Feishu API request failed: {endpoint}: response is not a JSON object")

        if data.get("code") != 0:
            msg = data.get("msg") or f"Feishu API error: {endpoint}"
            raise error_cls(msg, data.get("code", -1), data.get("msg"))
        return data

    async def send_message(
        self,
        access_token: str,
        receive_id_type: ReceiveIdType,
        receive_id: str,
        msg_type: str,
        content: str,
    ) -> dict[str, Any]:
        return await self.call(
            "/im/v1/messages",
            access_token,
            {"receive_id": receive_id, "msg_type": msg_type, "content": content},
            query={"receive_id_type": ReceiveIdType(receive_id_type).value},
            error_cls=DeliveryError,
        )

    async def send_text_message(
        self,
        access_token: str,
        receive_id_type: ReceiveIdType,
        receive_id: str,
        text: str,
    ) -> dict[str, Any]:
        content = json.dumps({"text": text}, ensure_ascii=False)
        return await self.send_message(access_token, receive_id_type, receive_id, "text", content)

    async def reply_message(
        self,
        access_token: str,
        message_id: str,
        msg_type: str,
        content: str,
    ) -> dict[str, Any]:
        return await self.call(
            f"/im/v1/messages/{message_id}/reply",
            access_token,
            {"msg_type": msg_type, "content": content},
            error_cls=DeliveryError,
        )

    async def get_bot_info(self, access_token: str, timeout_ms: int | None = None) -> dict[str, Any]:
        data = await self.call("/bot/v3/info", access_token, method="GET", timeout_ms=timeout_ms)
        return data.get("bot") or data.get("data") or {}
