"""Shared test fixtures for cnchannels."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.schema import HostConfig
from cnchannels.feishu.accounts import resolve_feishu_account
from cnchannels.feishu.monitor import FeishuWebhookTarget
from cnchannels.inbound.processor import HostServices
from cnchannels.models import (
    AuditEvent,
    AuditEventType,
    InboundContext,
    ReplyPayload,
    RiskLevel,
    SendResult,
)
from cnchannels.runtime.local import (
    InMemoryPairingStore,
    InMemorySessionStore,
    MarkdownTableText,
    SessionKeyRouter,
    SlashCommandService,
    UpstreamReplyService,
)
from cnchannels.runtime.protocols import DeliverFn, ReplyErrorFn
from cnchannels.wecom.accounts import resolve_wecom_account
from cnchannels.wecom.monitor import WecomWebhookTarget

# 43 characters; decodes to a 32-byte AES key once "=" is appended.
WECOM_AES_KEY = "abcdefghijklmnopqrstuvwxyz0123456789ABCDEFG"
WECOM_CORP_ID = "ww_test_corp"
WECOM_TOKEN = "wecom-token"

FEISHU_VERIFICATION_TOKEN = "feishu-verify"
FEISHU_ENCRYPT_KEY = "feishu-encrypt-key"


class RecordingReplyService(UpstreamReplyService):
    """Captures inbound contexts and answers each with a canned reply."""

    def __init__(self, reply_text: str | None = "hello back") -> None:
        super().__init__(upstream_url=None, upstream_token=None)
        self.reply_text = reply_text
        self.contexts: list[InboundContext] = []

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        cfg: HostConfig,
        deliver: DeliverFn,
        on_error: ReplyErrorFn,
    ) -> None:
        self.contexts.append(ctx)
        if self.reply_text is not None:
            await deliver(ReplyPayload(text=self.reply_text))


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


# --- Factory functions for test data ---


def make_host_config(
    feishu: dict[str, Any] | None = None,
    wecom: dict[str, Any] | None = None,
    **kwargs: Any,
) -> HostConfig:
    """HostConfig from camelCase dicts, the way it appears on disk."""
    channels: dict[str, Any] = {}
    if feishu is not None:
        channels["feishu"] = feishu
    if wecom is not None:
        channels["wecom"] = wecom
    return HostConfig.model_validate({"channels": channels, **kwargs})


def make_feishu_section(**kwargs: Any) -> dict[str, Any]:
    defaults: dict[str, Any] = {
        "appId": "cli_test",
        "appSecret": "secret",
        "verificationToken": FEISHU_VERIFICATION_TOKEN,
        "webhookUrl": "https://bot.example.com/feishu/events",
        "thinkingMessage": "",
    }
    defaults.update(kwargs)
    return defaults


def make_wecom_section(**kwargs: Any) -> dict[str, Any]:
    defaults: dict[str, Any] = {
        "corpId": WECOM_CORP_ID,
        "agentId": "1000002",
        "secret": "secret",
        "token": WECOM_TOKEN,
        "encodingAesKey": WECOM_AES_KEY,
        "webhookUrl": "https://bot.example.com/wecom/callback",
    }
    defaults.update(kwargs)
    return defaults


def make_services(replies: UpstreamReplyService | None = None) -> HostServices:
    return HostServices(
        routing=SessionKeyRouter(),
        sessions=InMemorySessionStore(),
        pairing=InMemoryPairingStore(),
        commands=SlashCommandService(),
        text=MarkdownTableText(),
        replies=replies or RecordingReplyService(),
    )


def make_feishu_target(config: HostConfig, **kwargs: Any) -> FeishuWebhookTarget:
    account = resolve_feishu_account(config, kwargs.pop("account_id", None))
    defaults: dict[str, Any] = {
        "path": "/feishu/events",
        "account": account,
        "config": config,
        "media_max_mb": account.media_max_mb,
        "credentials": account.credentials,
        "verification_token": account.config.verification_token or "",
        "encrypt_key": account.config.encrypt_key,
        "status_sink": MagicMock(),
    }
    defaults.update(kwargs)
    return FeishuWebhookTarget(**defaults)


def make_wecom_target(config: HostConfig, **kwargs: Any) -> WecomWebhookTarget:
    account = resolve_wecom_account(config, kwargs.pop("account_id", None))
    defaults: dict[str, Any] = {
        "path": "/wecom/callback",
        "account": account,
        "config": config,
        "media_max_mb": account.media_max_mb,
        "credentials": account.credentials,
        "token": account.config.token or "",
        "encoding_aes_key": account.config.encoding_aes_key or "",
        "status_sink": MagicMock(),
    }
    defaults.update(kwargs)
    return WecomWebhookTarget(**defaults)


def make_mock_sender(ok: bool = True) -> MagicMock:
    """Sender double whose send_text resolves to a fixed SendResult."""
    sender = MagicMock()
    result = SendResult(ok=True, message_id="msg_1") if ok else SendResult(ok=False, error="boom")
    sender.send_text = AsyncMock(return_value=result)
    return sender


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, object] = {
        "event_type": AuditEventType.WEBHOOK_REJECTED,
        "action": "test_action",
        "result": "failure",
        "risk_level": RiskLevel.HIGH,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)  # type: ignore[arg-type]


class FakeProviderApi:
    """httpx.MockTransport handler answering the Feishu and WeCom endpoints."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.sent: list[dict[str, Any]] = []
        self.token_calls = 0
        self.overrides: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        for suffix, responder in self.overrides.items():
            if path.endswith(suffix):
                return responder(request)
        if path.endswith("/auth/v3/tenant_access_token/internal"):
            self.token_calls += 1
            return httpx.Response(
                200, json={"code": 0, "msg": "ok", "tenant_access_token": "t-feishu", "expire": 7200},
            )
        if path.endswith("/bot/v3/info"):
            return httpx.Response(
                200, json={"code": 0, "msg": "ok", "bot": {"app_name": "TestBot", "open_id": "ou_bot"}},
            )
        if path.endswith("/im/v1/messages"):
            self.sent.append({**json.loads(request.content), **dict(request.url.params)})
            return httpx.Response(200, json={"code": 0, "msg": "ok", "data": {"message_id": "om_1"}})
        if path.endswith("/gettoken"):
            self.token_calls += 1
            return httpx.Response(
                200, json={"errcode": 0, "errmsg": "ok", "access_token": "t-wecom", "expires_in": 7200},
            )
        if path.endswith("/message/send"):
            self.sent.append(json.loads(request.content))
            return httpx.Response(200, json={"errcode": 0, "errmsg": "ok", "msgid": "wm_1"})
        return httpx.Response(404, json={"code": 404, "msg": "not found"})


@pytest.fixture
def fake_api() -> FakeProviderApi:
    return FakeProviderApi()


@pytest.fixture
def http_client(fake_api: FakeProviderApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_api))
