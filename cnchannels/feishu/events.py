"""Decoded Feishu webhook payloads."""

from __future__ import annotations

import json
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

URL_VERIFICATION = "url_verification"
EVENT_SCHEMA_V2 = "2.0"
MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"


class FeishuChatType(str, Enum):
    P2P = "p2p"
    GROUP = "group"


class FeishuMessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    INTERACTIVE = "interactive"
    SHARE_CHAT = "share_chat"
    SHARE_USER = "share_user"
    POST = "post"


class _EventModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class FeishuUserId(_EventModel):
    open_id: str | None = None
    user_id: str | None = None
    union_id: str | None = None

    def preferred(self) -> str:
        return self.open_id or self.user_id or self.union_id or ""


class FeishuEventSender(_EventModel):
    sender_id: FeishuUserId = Field(default_factory=FeishuUserId)
    sender_type: str | None = None
    tenant_key: str | None = None


class FeishuMention(_EventModel):
    key: str
    id: FeishuUserId = Field(default_factory=FeishuUserId)
    name: str = ""


class FeishuEventMessage(_EventModel):
    message_id: str
    root_id: str | None = None
    parent_id: str | None = None
    create_time: str | None = None
    chat_id: str
    chat_type: FeishuChatType | str = FeishuChatType.P2P
    message_type: FeishuMessageType | str
    content: str = ""
    mentions: list[FeishuMention] = Field(default_factory=list)

    @property
    def is_group(self) -> bool:
        return self.chat_type == FeishuChatType.GROUP

    def text(self) -> str | None:
        """Trimmed text of a text message, or None when content is not text JSON."""
        try:
            content = json.loads(self.content)
        except json.JSONDecodeError:
            return None
        if not isinstance(content, dict):
            return None
        return str(content.get("text") or "").strip()


class FeishuEventHeader(_EventModel):
    event_id: str | None = None
    event_type: str | None = None
    create_time: str | None = None
    token: str | None = None
    app_id: str | None = None
    tenant_key: str | None = None


class FeishuEventBody(_EventModel):
    sender: FeishuEventSender = Field(default_factory=FeishuEventSender)
    message: FeishuEventMessage


class FeishuMessageEvent(_EventModel):
    schema_: str = Field(alias="schema")
    header: FeishuEventHeader
    event: FeishuEventBody


class FeishuUrlVerification(_EventModel):
    type: str
    token: str = ""
    challenge: str = ""
