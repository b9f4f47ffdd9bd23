"""Configuration schema for the Feishu and WeCom channel adapters.

Keys are camelCase on disk (``appId``, ``dmPolicy`` ...) and snake_case in
Python. Every per-account field is optional so that top-level values and
per-account overrides can be merged.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from cnchannels.models import DmPolicy, MarkdownTableMode


class ReceiveIdType(str, Enum):
    OPEN_ID = "open_id"
    USER_ID = "user_id"
    UNION_ID = "union_id"
    EMAIL = "email"
    CHAT_ID = "chat_id"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class MarkdownConfig(_ConfigModel):
    tables: MarkdownTableMode | None = None


class _AccountFields(_ConfigModel):
    name: str | None = None
    enabled: bool | None = None
    webhook_url: str | None = None
    webhook_path: str | None = None
    dm_policy: DmPolicy | None = None
    allow_from: list[str] | None = None
    media_max_mb: float | None = None
    markdown: MarkdownConfig | None = None

    @field_validator("allow_from", mode="before")
    @classmethod
    def _stringify_entries(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(entry) for entry in value]
        return value


class FeishuAccountConfig(_AccountFields):
    app_id: str | None = None
    app_secret: str | None = None
    verification_token: str | None = None
    encrypt_key: str | None = None
    receive_id_type: ReceiveIdType | None = None
    thinking_message: str | None = None


class FeishuConfig(FeishuAccountConfig):
    accounts: dict[str, FeishuAccountConfig] = Field(default_factory=dict)
    default_account: str | None = None


class WecomAccountConfig(_AccountFields):
    corp_id: str | None = None
    agent_id: str | None = None
    secret: str | None = None
    token: str | None = None
    encoding_aes_key: str | None = None

    @field_validator("agent_id", mode="before")
    @classmethod
    def _agent_id_as_text(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class WecomConfig(WecomAccountConfig):
    accounts: dict[str, WecomAccountConfig] = Field(default_factory=dict)
    default_account: str | None = None


class ChannelsConfig(_ConfigModel):
    feishu: FeishuConfig | None = None
    wecom: WecomConfig | None = None


class CommandsConfig(_ConfigModel):
    use_access_groups: bool = True


class SessionConfig(_ConfigModel):
    store: str | None = None


class GatewayConfig(_ConfigModel):
    admin_token: str | None = None
    upstream_url: str | None = None
    upstream_token: str | None = None
    audit_log_path: str | None = None
    max_body_bytes: int = 1024 * 1024


class HostConfig(_ConfigModel):
    """Root configuration object consumed by every adapter component."""

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
