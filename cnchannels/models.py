"""Shared Pydantic data models and enums for the channel adapters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ACCOUNT_ID = "default"

# --- Enums ---


class Provider(str, Enum):
    FEISHU = "feishu"
    WECOM = "wecom"


class DmPolicy(str, Enum):
    PAIRING = "pairing"
    ALLOWLIST = "allowlist"
    OPEN = "open"
    DISABLED = "disabled"


class ChatType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class PeerKind(str, Enum):
    DM = "dm"
    GROUP = "group"


class TokenSource(str, Enum):
    CONFIG = "config"
    ENV = "env"
    NONE = "none"


class MarkdownTableMode(str, Enum):
    OFF = "off"
    BULLETS = "bullets"
    CODE = "code"


class AuditEventType(str, Enum):
    WEBHOOK_VERIFIED = "webhook_verified"
    WEBHOOK_REJECTED = "webhook_rejected"
    DECRYPT_FAILURE = "decrypt_failure"
    PAIRING_REQUESTED = "pairing_requested"
    DM_BLOCKED = "dm_blocked"
    DELIVERY_FAILURE = "delivery_failure"
    ADMIN_AUTH_SUCCESS = "admin_auth_success"
    ADMIN_AUTH_FAILURE = "admin_auth_failure"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


# --- Token / send results ---


@dataclass(frozen=True)
class AccessToken:
    """Bearer token issued by a provider; expires_at is epoch milliseconds."""

    value: str
    expires_at: float


@dataclass
class SendResult:
    ok: bool
    message_id: str | None = None
    error: str | None = None


@dataclass
class ProbeBot:
    name: str
    open_id: str


@dataclass
class ProbeResult:
    ok: bool
    elapsed_ms: int
    bot: ProbeBot | None = None
    error: str | None = None


@dataclass
class StatusPatch:
    """Partial account status update emitted by handlers and senders (epoch ms)."""

    last_inbound_at: int | None = None
    last_outbound_at: int | None = None


# --- Routing / context ---


class AgentRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent_id: str
    session_key: str
    account_id: str


class InboundContext(BaseModel):
    """Normalized inbound message context handed to the reply pipeline."""

    model_config = ConfigDict(populate_by_name=True)

    body: str = Field(alias="Body")
    raw_body: str = Field(alias="RawBody")
    command_body: str = Field(alias="CommandBody")
    from_: str = Field(alias="From")
    to: str = Field(alias="To")
    session_key: str = Field(alias="SessionKey")
    account_id: str = Field(alias="AccountId")
    chat_type: ChatType = Field(alias="ChatType")
    conversation_label: str = Field(alias="ConversationLabel")
    sender_name: str | None = Field(default=None, alias="SenderName")
    sender_id: str = Field(alias="SenderId")
    command_authorized: bool | None = Field(default=None, alias="CommandAuthorized")
    provider: Provider = Field(alias="Provider")
    surface: Provider = Field(alias="Surface")
    message_sid: str = Field(alias="MessageSid")
    originating_channel: Provider = Field(alias="OriginatingChannel")
    originating_to: str = Field(alias="OriginatingTo")


class ReplyPayload(BaseModel):
    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] = Field(default_factory=list)


class PairingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    created: bool


# --- Status ---


class StatusIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: str  # "error" | "warning"
    message: str
    hint: str


class AccountSnapshot(BaseModel):
    provider: Provider
    account_id: str
    name: str | None = None
    enabled: bool
    configured: bool
    token_source: TokenSource
    running: bool = False
    last_start_at: int | None = None
    last_stop_at: int | None = None
    last_error: str | None = None
    mode: str = "none"  # "webhook" | "none"
    last_inbound_at: int | None = None
    last_outbound_at: int | None = None
    dm_policy: DmPolicy = DmPolicy.PAIRING
    bot: dict[str, str] | None = None


# --- Audit Models ---


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    provider: Provider | None = None
    account_id: str | None = None
    source_ip: str | None = None
    sender_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "blocked"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
