"""Tests for the inbound dmPolicy state machine and reply delivery."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from cnchannels.config.schema import ReceiveIdType
from cnchannels.feishu.monitor import DEFAULT_THINKING_MESSAGE, FeishuMessageProcessor
from cnchannels.inbound.access import is_sender_allowed
from cnchannels.inbound.processor import InboundMessage
from cnchannels.models import AuditEventType, ChatType, StatusPatch
from cnchannels.runtime.local import InMemoryPairingStore
from cnchannels.feishu.accounts import TARGET_PREFIX
from cnchannels.wecom.monitor import WecomMessageProcessor
from tests.conftest import (
    RecordingReplyService,
    make_feishu_section,
    make_feishu_target,
    make_host_config,
    make_mock_sender,
    make_services,
    make_wecom_section,
    make_wecom_target,
)


def _dm(text: str = "hello", sender_id: str = "ou_alice", **kwargs: Any) -> InboundMessage:
    defaults: dict[str, Any] = {
        "message_id": "om_1",
        "sender_id": sender_id,
        "chat_id": "oc_p2p",
        "chat_type": ChatType.DIRECT,
        "text": text,
        "timestamp_ms": 1_700_000_000_000,
    }
    defaults.update(kwargs)
    return InboundMessage(**defaults)


def _group(text: str = "hello", sender_id: str = "ou_alice") -> InboundMessage:
    return _dm(text, sender_id, chat_id="oc_group", chat_type=ChatType.GROUP)


def _feishu(
    replies: RecordingReplyService | None = None,
    audit_logger: MagicMock | None = None,
    **section: Any,
) -> tuple[FeishuMessageProcessor, MagicMock, Any]:
    config = make_host_config(feishu=make_feishu_section(**section))
    services = make_services(replies or RecordingReplyService())
    sender = make_mock_sender()
    processor = FeishuMessageProcessor(services, sender, audit_logger)
    return processor, sender, make_feishu_target(config)


class TestIsSenderAllowed:
    def test_wildcard_allows_anyone(self) -> None:
        assert is_sender_allowed("anyone", ["*"], TARGET_PREFIX)

    def test_prefix_and_case_are_ignored(self) -> None:
        assert is_sender_allowed("ou_abc", ["Feishu:OU_ABC"], TARGET_PREFIX)
        assert is_sender_allowed("ou_abc", ["lark:ou_abc"], TARGET_PREFIX)

    def test_empty_list_allows_nobody(self) -> None:
        assert not is_sender_allowed("ou_abc", [], TARGET_PREFIX)


class TestDmPolicy:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("allow_from", [[], ["*"], ["ou_alice"], ["feishu:OU_ALICE"]])
    async def test_disabled_drops_without_reply(self, mock_audit_logger: MagicMock, allow_from: list[str]) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, mock_audit_logger, dmPolicy="disabled", allowFrom=allow_from)

        await processor.process(target, _dm())

        sender.send_text.assert_not_awaited()
        assert replies.contexts == []
        event = mock_audit_logger.log.call_args.args[0]
        assert event.event_type == AuditEventType.DM_BLOCKED

    @pytest.mark.asyncio
    async def test_disabled_ignores_approved_pairing(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="disabled")
        pairing = processor._services.pairing
        assert isinstance(pairing, InMemoryPairingStore)
        request = await pairing.upsert_pairing_request(processor.provider, "ou_alice")
        assert pairing.approve(processor.provider, request.code) == "ou_alice"

        await processor.process(target, _dm())

        sender.send_text.assert_not_awaited()
        assert replies.contexts == []

    @pytest.mark.asyncio
    async def test_open_admits_anyone(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="open")

        await processor.process(target, _dm())

        assert len(replies.contexts) == 1
        sender.send_text.assert_awaited_once()
        _creds, receive_id, text, id_type = sender.send_text.await_args.args
        assert (receive_id, text, id_type) == ("ou_alice", "hello back", ReceiveIdType.OPEN_ID)

    @pytest.mark.asyncio
    async def test_allowlist_admits_listed_sender(self) -> None:
        replies = RecordingReplyService()
        processor, _sender, target = _feishu(replies, dmPolicy="allowlist", allowFrom=["feishu:OU_ALICE"])
        await processor.process(target, _dm())
        assert len(replies.contexts) == 1

    @pytest.mark.asyncio
    async def test_allowlist_drops_unlisted_sender_without_pairing(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="allowlist", allowFrom=["ou_bob"])

        await processor.process(target, _dm())

        sender.send_text.assert_not_awaited()
        assert replies.contexts == []

    @pytest.mark.asyncio
    async def test_pairing_replies_once_per_sender(self, mock_audit_logger: MagicMock) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, mock_audit_logger, dmPolicy="pairing")

        await processor.process(target, _dm())
        await processor.process(target, _dm(message_id="om_2"))

        sender.send_text.assert_awaited_once()
        _creds, receive_id, text, _id_type = sender.send_text.await_args.args
        assert receive_id == "ou_alice"
        assert "Your Feishu open_id: ou_alice" in text
        assert "Pairing code:" in text
        assert replies.contexts == []
        logged = [call.args[0].event_type for call in mock_audit_logger.log.call_args_list]
        assert logged.count(AuditEventType.PAIRING_REQUESTED) == 1

    @pytest.mark.asyncio
    async def test_approved_pairing_admits_sender(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="pairing")
        pairing = processor._services.pairing
        assert isinstance(pairing, InMemoryPairingStore)

        await processor.process(target, _dm())
        code = sender.send_text.await_args.args[2].split("Pairing code: ")[1].split()[0]
        assert pairing.approve(processor.provider, code) == "ou_alice"

        await processor.process(target, _dm(message_id="om_2"))
        assert len(replies.contexts) == 1

    @pytest.mark.asyncio
    async def test_groups_bypass_dm_policy(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="disabled")

        await processor.process(target, _group())

        assert len(replies.contexts) == 1
        _creds, receive_id, _text, id_type = sender.send_text.await_args.args
        assert (receive_id, id_type) == ("oc_group", ReceiveIdType.CHAT_ID)


class TestCommandAuthorization:
    @pytest.mark.asyncio
    async def test_group_control_command_from_unlisted_sender_is_dropped(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies)
        await processor.process(target, _group("/reset"))
        assert replies.contexts == []
        sender.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_group_control_command_allowed_without_access_groups(self) -> None:
        config = make_host_config(feishu=make_feishu_section(), commands={"useAccessGroups": False})
        replies = RecordingReplyService()
        processor = FeishuMessageProcessor(make_services(replies), make_mock_sender())
        await processor.process(make_feishu_target(config), _group("/reset"))
        assert replies.contexts[0].command_authorized is True

    @pytest.mark.asyncio
    async def test_open_policy_with_empty_allowlist_marks_command_unauthorized(self) -> None:
        replies = RecordingReplyService()
        processor, _sender, target = _feishu(replies, dmPolicy="open")
        await processor.process(target, _dm("/status"))
        assert replies.contexts[0].command_authorized is False

    @pytest.mark.asyncio
    async def test_plain_text_leaves_command_authorization_unset(self) -> None:
        replies = RecordingReplyService()
        processor, _sender, target = _feishu(replies, dmPolicy="open")
        await processor.process(target, _dm("hi"))
        assert replies.contexts[0].command_authorized is None


class TestContextAndDelivery:
    @pytest.mark.asyncio
    async def test_direct_context_fields(self) -> None:
        replies = RecordingReplyService()
        processor, _sender, target = _feishu(replies, dmPolicy="open")

        await processor.process(target, _dm())

        ctx = replies.contexts[0]
        assert ctx.from_ == "feishu:ou_alice"
        assert ctx.to == "feishu:oc_p2p"
        assert ctx.chat_type == ChatType.DIRECT
        assert ctx.conversation_label == "user:ou_alice"
        assert ctx.raw_body == "hello"
        assert ctx.body.startswith("[Feishu user:ou_alice")
        assert ctx.message_sid == "om_1"
        assert ctx.originating_to == "feishu:oc_p2p"
        assert ctx.session_key == "agent:main:feishu:dm:oc_p2p"

    @pytest.mark.asyncio
    async def test_group_context_fields(self) -> None:
        replies = RecordingReplyService()
        processor, _sender, target = _feishu(replies)
        await processor.process(target, _group())
        ctx = replies.contexts[0]
        assert ctx.from_ == "feishu:group:oc_group"
        assert ctx.conversation_label == "group:oc_group"
        assert ctx.chat_type == ChatType.GROUP

    @pytest.mark.asyncio
    async def test_long_reply_is_chunked_at_feishu_limit(self) -> None:
        replies = RecordingReplyService(reply_text="a" * 5000)
        processor, sender, target = _feishu(replies, dmPolicy="open")

        await processor.process(target, _dm())

        sent = [call.args[2] for call in sender.send_text.await_args_list]
        assert [len(chunk) for chunk in sent] == [4096, 904]
        assert target.status_sink.call_count == 2
        assert isinstance(target.status_sink.call_args.args[0], StatusPatch)

    @pytest.mark.asyncio
    async def test_default_thinking_message_is_sent_first(self) -> None:
        config = make_host_config(feishu=make_feishu_section(dmPolicy="open", thinkingMessage=None))
        sender = make_mock_sender()
        processor = FeishuMessageProcessor(make_services(), sender)

        await processor.process(make_feishu_target(config), _dm())

        sent = [call.args[2] for call in sender.send_text.await_args_list]
        assert sent == [DEFAULT_THINKING_MESSAGE, "hello back"]

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_delivery(self, mock_audit_logger: MagicMock) -> None:
        replies = RecordingReplyService(reply_text="b" * 5000)
        config = make_host_config(feishu=make_feishu_section(dmPolicy="open"))
        sender = make_mock_sender(ok=False)
        processor = FeishuMessageProcessor(make_services(replies), sender, mock_audit_logger)

        await processor.process(make_feishu_target(config), _dm())

        assert sender.send_text.await_count == 2
        logged = [call.args[0].event_type for call in mock_audit_logger.log.call_args_list]
        assert logged == [AuditEventType.DELIVERY_FAILURE, AuditEventType.DELIVERY_FAILURE]

    @pytest.mark.asyncio
    async def test_empty_text_is_ignored(self) -> None:
        replies = RecordingReplyService()
        processor, sender, target = _feishu(replies, dmPolicy="open")
        await processor.process(target, _dm(""))
        assert replies.contexts == []
        sender.send_text.assert_not_awaited()


class TestWecomProcessor:
    @pytest.mark.asyncio
    async def test_reply_goes_to_sender_in_2048_chunks(self) -> None:
        config = make_host_config(wecom=make_wecom_section(dmPolicy="open"))
        replies = RecordingReplyService(reply_text="c" * 3000)
        sender = make_mock_sender()
        processor = WecomMessageProcessor(make_services(replies), sender)

        await processor.process(make_wecom_target(config), _dm(sender_id="zhangsan", chat_id="zhangsan"))

        calls = sender.send_text.await_args_list
        assert [call.args[1] for call in calls] == ["zhangsan", "zhangsan"]
        assert [len(call.args[2]) for call in calls] == [2048, 952]
        assert replies.contexts[0].from_ == "wecom:zhangsan"

    @pytest.mark.asyncio
    async def test_pairing_reply_uses_wecom_id_line(self) -> None:
        config = make_host_config(wecom=make_wecom_section())
        sender = make_mock_sender()
        processor = WecomMessageProcessor(make_services(), sender)

        await processor.process(make_wecom_target(config), _dm(sender_id="lisi", chat_id="lisi"))

        text = sender.send_text.await_args.args[2]
        assert "Your WeCom user id: lisi" in text
