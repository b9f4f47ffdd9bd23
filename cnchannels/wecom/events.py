"""Parsing of WeCom callback XML."""

from __future__ import annotations

from enum import Enum
from xml.etree import ElementTree

from pydantic import BaseModel, ConfigDict, Field

from cnchannels.errors import ValidationError


class WecomMessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    VIDEO = "video"
    LOCATION = "location"
    LINK = "link"
    EVENT = "event"


def parse_xml_fields(xml_text: str) -> dict[str, str]:
    """Flatten the children of the root ``<xml>`` element into a dict."""
    try:
        root = ElementTree.fromstring(xml_text)
    except ElementTree.ParseError as exc:
        raise ValidationError("invalid XML") from exc
    return {child.tag: (child.text or "") for child in root}


class WecomEnvelope(BaseModel):
    """Outer POST body; only ``Encrypt`` is trusted, after signature checks."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    to_user_name: str = Field(default="", alias="ToUserName")
    agent_id: str = Field(default="", alias="AgentID")
    encrypt: str = Field(default="", alias="Encrypt")


class WecomIncomingMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    msg_id: str = Field(default="", alias="MsgId")
    msg_type: str = Field(alias="MsgType")
    from_user_name: str = Field(alias="FromUserName")
    to_user_name: str = Field(default="", alias="ToUserName")
    create_time: int | None = Field(default=None, alias="CreateTime")
    content: str | None = Field(default=None, alias="Content")
    pic_url: str | None = Field(default=None, alias="PicUrl")
    media_id: str | None = Field(default=None, alias="MediaId")
    event: str | None = Field(default=None, alias="Event")
    event_key: str | None = Field(default=None, alias="EventKey")
    agent_id: str | None = Field(default=None, alias="AgentID")

    @classmethod
    def from_xml(cls, xml_text: str) -> WecomIncomingMessage:
        return cls.model_validate(parse_xml_fields(xml_text))

    def text(self) -> str | None:
        if self.msg_type != WecomMessageType.TEXT:
            return None
        return (self.content or "").strip() or None
