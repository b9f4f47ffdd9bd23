"""End-to-end tests for the WeCom callback through the gateway app."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from cnchannels.gateway.app import create_app
from cnchannels.gateway.manager import ChannelGateway
from cnchannels.models import AuditEventType, Provider
from cnchannels.wecom.crypto import encrypt_message, generate_signature
from tests.conftest import (
    WECOM_AES_KEY,
    WECOM_CORP_ID,
    WECOM_TOKEN,
    FakeProviderApi,
    RecordingReplyService,
    make_host_config,
    make_services,
    make_wecom_section,
)

PATH = "/wecom/callback"
TIMESTAMP = "1700000000"
NONCE = "n0nce"


def _message_xml(content: str = "你好", msg_id: str = "10001", msg_type: str = "text") -> str:
    return (
        "<xml>"
        f"<ToUserName><![CDATA[{WECOM_CORP_ID}]]></ToUserName>"
        "<FromUserName><![CDATA[zhangsan]]></FromUserName>"
        "<CreateTime>1700000000</CreateTime>"
        f"<MsgType><![CDATA[{msg_type}]]></MsgType>"
        f"<Content><![CDATA[{content}]]></Content>"
        f"<MsgId>{msg_id}</MsgId>"
        "<AgentID>1000002</AgentID>"
        "</xml>"
    )


def _encrypted_post(plaintext: str, corp_id: str = WECOM_CORP_ID) -> tuple[str, dict[str, str]]:
    encrypted = encrypt_message(plaintext, WECOM_AES_KEY, corp_id)
    body = (
        "<xml>"
        f"<ToUserName><![CDATA[{WECOM_CORP_ID}]]></ToUserName>"
        "<AgentID><![CDATA[1000002]]></AgentID>"
        f"<Encrypt><![CDATA[{encrypted}]]></Encrypt>"
        "</xml>"
    )
    params = {
        "msg_signature": generate_signature(WECOM_TOKEN, TIMESTAMP, NONCE, encrypted),
        "timestamp": TIMESTAMP,
        "nonce": NONCE,
    }
    return body, params


async def _gateway(
    http_client: httpx.AsyncClient,
    replies: RecordingReplyService | None = None,
    audit_logger: MagicMock | None = None,
    **section: Any,
) -> ChannelGateway:
    config = make_host_config(wecom=make_wecom_section(**section))
    gateway = ChannelGateway(
        config, make_services(replies), audit_logger=audit_logger, http_client=http_client,
    )
    await gateway.start_account(Provider.WECOM)
    return gateway


def _client(gateway: ChannelGateway) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app(gateway)), base_url="http://test")


class TestUrlVerification:
    @pytest.mark.asyncio
    async def test_echostr_decrypted(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        echostr = encrypt_message("echo-1234", WECOM_AES_KEY, WECOM_CORP_ID)
        params = {
            "msg_signature": generate_signature(WECOM_TOKEN, TIMESTAMP, NONCE, echostr),
            "timestamp": TIMESTAMP,
            "nonce": NONCE,
            "echostr": echostr,
        }
        async with _client(gateway) as client:
            resp = await client.get(PATH, params=params)
        assert resp.status_code == 200
        assert resp.text == "echo-1234"

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self, http_client: httpx.AsyncClient, mock_audit_logger: MagicMock,
    ) -> None:
        gateway = await _gateway(http_client, audit_logger=mock_audit_logger)
        echostr = encrypt_message("echo-1234", WECOM_AES_KEY, WECOM_CORP_ID)
        params = {"msg_signature": "0" * 40, "timestamp": TIMESTAMP, "nonce": NONCE, "echostr": echostr}
        async with _client(gateway) as client:
            resp = await client.get(PATH, params=params)
        assert resp.status_code == 401
        assert "echo-1234" not in resp.text
        assert mock_audit_logger.log.call_args.args[0].event_type == AuditEventType.WEBHOOK_REJECTED

    @pytest.mark.asyncio
    async def test_get_without_echostr_not_allowed(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        async with _client(gateway) as client:
            resp = await client.get(PATH)
        assert resp.status_code == 405
        assert resp.headers["allow"] == "GET, POST"


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_text_message_replied_to_sender(
        self, http_client: httpx.AsyncClient, fake_api: FakeProviderApi,
    ) -> None:
        replies = RecordingReplyService()
        gateway = await _gateway(http_client, replies, dmPolicy="open")
        body, params = _encrypted_post(_message_xml())
        async with _client(gateway) as client:
            resp = await client.post(PATH, params=params, content=body.encode())
            await gateway.wait_idle()

        assert resp.status_code == 200
        assert resp.text == "success"
        ctx = replies.contexts[0]
        assert ctx.raw_body == "你好"
        assert ctx.from_ == "wecom:zhangsan"
        assert fake_api.sent == [{
            "touser": "zhangsan",
            "msgtype": "text",
            "agentid": 1000002,
            "text": {"content": "hello back"},
        }]

    @pytest.mark.asyncio
    async def test_bad_signature_unauthorized(self, http_client: httpx.AsyncClient) -> None:
        replies = RecordingReplyService()
        gateway = await _gateway(http_client, replies, dmPolicy="open")
        body, params = _encrypted_post(_message_xml())
        params["msg_signature"] = "f" * 40
        async with _client(gateway) as client:
            resp = await client.post(PATH, params=params, content=body.encode())
            await gateway.wait_idle()
        assert resp.status_code == 401
        assert resp.text == "unauthorized"
        assert replies.contexts == []

    @pytest.mark.asyncio
    async def test_foreign_corp_id_unauthorized(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client, dmPolicy="open")
        body, params = _encrypted_post(_message_xml(), corp_id="ww_someone_else")
        async with _client(gateway) as client:
            resp = await client.post(PATH, params=params, content=body.encode())
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_encrypt_element(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        async with _client(gateway) as client:
            resp = await client.post(PATH, content=b"<xml><ToUserName>x</ToUserName></xml>")
        assert resp.status_code == 400
        assert resp.text == "missing encrypted message"

    @pytest.mark.asyncio
    async def test_invalid_xml(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        async with _client(gateway) as client:
            resp = await client.post(PATH, content=b"<xml><Encrypt>")
        assert resp.status_code == 400
        assert resp.text == "invalid XML"

    @pytest.mark.asyncio
    async def test_oversize_body(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        async with _client(gateway) as client:
            resp = await client.post(PATH, content=b"<" * (1024 * 1024 + 1))
        assert resp.status_code == 413

    @pytest.mark.asyncio
    async def test_put_not_allowed(self, http_client: httpx.AsyncClient) -> None:
        gateway = await _gateway(http_client)
        async with _client(gateway) as client:
            resp = await client.put(PATH, content=b"<xml/>")
        assert resp.status_code == 405

    @pytest.mark.asyncio
    async def test_redelivered_message_processed_once(self, http_client: httpx.AsyncClient) -> None:
        replies = RecordingReplyService()
        gateway = await _gateway(http_client, replies, dmPolicy="open")
        body, params = _encrypted_post(_message_xml(msg_id="20002"))
        async with _client(gateway) as client:
            await client.post(PATH, params=params, content=body.encode())
            await client.post(PATH, params=params, content=body.encode())
            await gateway.wait_idle()
        assert len(replies.contexts) == 1

    @pytest.mark.asyncio
    async def test_non_text_message_acknowledged_without_reply(
        self, http_client: httpx.AsyncClient, fake_api: FakeProviderApi,
    ) -> None:
        replies = RecordingReplyService()
        gateway = await _gateway(http_client, replies, dmPolicy="open")
        body, params = _encrypted_post(_message_xml(msg_type="image"))
        async with _client(gateway) as client:
            resp = await client.post(PATH, params=params, content=body.encode())
            await gateway.wait_idle()
        assert resp.text == "success"
        assert replies.contexts == []
        assert fake_api.sent == []
