"""Feishu event subscription webhook: verification, decryption and dispatch."""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import pydantic
from fastapi import Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.schema import HostConfig, ReceiveIdType
from cnchannels.errors import ConfigurationError, DecryptionError, ValidationError
from cnchannels.feishu.accounts import TARGET_PREFIX, FeishuAccount, FeishuCredentials
from cnchannels.feishu.crypto import decrypt_event, verify_signature
from cnchannels.feishu.events import (
    EVENT_SCHEMA_V2,
    MESSAGE_RECEIVE_EVENT,
    URL_VERIFICATION,
    FeishuMessageEvent,
    FeishuMessageType,
)
from cnchannels.feishu.send import FEISHU_TEXT_LIMIT, FeishuSender
from cnchannels.inbound.processor import HostServices, InboundMessage, InboundMessageProcessor
from cnchannels.models import (
    AuditEvent,
    AuditEventType,
    ChatType,
    Provider,
    RiskLevel,
    SendResult,
)
from cnchannels.webhook.body import MAX_WEBHOOK_BODY_SIZE, read_body
from cnchannels.webhook.dispatch import TaskDispatcher
from cnchannels.webhook.registry import (
    WebhookTargetRegistry,
    normalize_webhook_path,
    resolve_webhook_path,
)
from cnchannels.webhook.replay import ReplayGuard
from cnchannels.webhook.target import StatusSink, WebhookTarget

logger = logging.getLogger(__name__)

DEFAULT_THINKING_MESSAGE = "🤔 正在思考中，请稍候..."

_TIMESTAMP_HEADER = "x-lark-request-timestamp"
_NONCE_HEADER = "x-lark-request-nonce"
_SIGNATURE_HEADER = "x-lark-signature"


@dataclass(kw_only=True)
class FeishuWebhookTarget(WebhookTarget):
    credentials: FeishuCredentials
    verification_token: str
    encrypt_key: str | None = None

    @property
    def receive_id_type(self) -> ReceiveIdType:
        return self.account.config.receive_id_type or ReceiveIdType.OPEN_ID


def _token_matches(expected: str, presented: Any) -> bool:
    if not expected or not isinstance(presented, str):
        return False
    return hmac.compare_digest(expected.encode(), presented.encode())


class FeishuMessageProcessor(InboundMessageProcessor[FeishuWebhookTarget]):
    provider = Provider.FEISHU
    channel_label = "Feishu"
    text_limit = FEISHU_TEXT_LIMIT
    allow_prefix = TARGET_PREFIX

    def __init__(
        self,
        services: HostServices,
        sender: FeishuSender,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        super().__init__(services, audit_logger)
        self._sender = sender

    async def handle_event(self, target: FeishuWebhookTarget, event: FeishuMessageEvent) -> None:
        message = to_inbound_message(event)
        if message is None:
            logger.debug(
                "feishu: ignoring %s message %s",
                event.event.message.message_type,
                event.event.message.message_id,
            )
            return
        await self.process(target, message)

    async def send_text(
        self,
        target: FeishuWebhookTarget,
        message: InboundMessage,
        text: str,
        *,
        to_sender: bool,
    ) -> SendResult:
        if message.is_group and not to_sender:
            return await self._sender.send_text(target.credentials, message.chat_id, text, ReceiveIdType.CHAT_ID)
        return await self._sender.send_text(target.credentials, message.sender_id, text, target.receive_id_type)

    def pairing_id_line(self, sender_id: str) -> str:
        return f"Your Feishu open_id: {sender_id}"

    def thinking_message(self, target: FeishuWebhookTarget) -> str | None:
        configured = target.account.config.thinking_message
        return DEFAULT_THINKING_MESSAGE if configured is None else configured


def to_inbound_message(event: FeishuMessageEvent) -> InboundMessage | None:
    """Text messages only; anything else (or empty text) yields None."""
    message = event.event.message
    if message.message_type != FeishuMessageType.TEXT:
        return None
    text = message.text()
    if not text:
        return None
    timestamp_ms: int | None = None
    if message.create_time and message.create_time.isdigit():
        timestamp_ms = int(message.create_time)
    return InboundMessage(
        message_id=message.message_id,
        sender_id=event.event.sender.sender_id.preferred(),
        chat_id=message.chat_id,
        chat_type=ChatType.GROUP if message.is_group else ChatType.DIRECT,
        text=text,
        timestamp_ms=timestamp_ms,
    )


class FeishuWebhookHandler:
    """Answers Feishu event callbacks for every registered target path."""

    def __init__(
        self,
        registry: WebhookTargetRegistry[FeishuWebhookTarget],
        processor: FeishuMessageProcessor,
        dispatcher: TaskDispatcher,
        replay_guard: ReplayGuard | None = None,
        audit_logger: AuditLogger | None = None,
        max_body_bytes: int = MAX_WEBHOOK_BODY_SIZE,
    ) -> None:
        self._registry = registry
        self._processor = processor
        self._dispatcher = dispatcher
        self._replay_guard = replay_guard or ReplayGuard()
        self._audit = audit_logger
        self._max_body_bytes = max_body_bytes

    async def handle_request(self, request: Request) -> Response | None:
        """Return None when no Feishu target is registered on the path."""
        targets = self._registry.lookup(normalize_webhook_path(request.url.path))
        if not targets:
            return None

        if request.method != "POST":
            return PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "POST"})

        try:
            raw = await read_body(request, self._max_body_bytes)
        except ValidationError as exc:
            return PlainTextResponse(str(exc), status_code=exc.status_code)

        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return PlainTextResponse("invalid JSON", status_code=400)
        if not isinstance(payload, dict):
            return PlainTextResponse("invalid JSON", status_code=400)

        if payload.get("type") == URL_VERIFICATION:
            return self._answer_challenge(request, payload, targets)

        if isinstance(payload.get("encrypt"), str):
            decrypted = self._decrypt(request, raw, payload["encrypt"], targets)
            if decrypted is None:
                self._record(
                    AuditEventType.DECRYPT_FAILURE,
                    request,
                    action="decrypt_event",
                    result="failure",
                    risk_level=RiskLevel.MEDIUM,
                )
                return PlainTextResponse("decryption failed", status_code=401)
            payload = decrypted
            if payload.get("type") == URL_VERIFICATION:
                return self._answer_challenge(request, payload, targets)

        header = payload.get("header")
        if (
            payload.get("schema") == EVENT_SCHEMA_V2
            and isinstance(header, dict)
            and header.get("event_type") == MESSAGE_RECEIVE_EVENT
        ):
            return self._accept_message_event(request, payload, targets)

        return PlainTextResponse("ok")

    def _answer_challenge(
        self,
        request: Request,
        payload: dict[str, Any],
        targets: Sequence[FeishuWebhookTarget],
    ) -> Response:
        token = payload.get("token")
        target = next((t for t in targets if _token_matches(t.verification_token, token)), None)
        if target is None:
            self._record(
                AuditEventType.WEBHOOK_REJECTED,
                request,
                action="url_verification",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
            )
            return PlainTextResponse("verification failed", status_code=401)
        self._record(
            AuditEventType.WEBHOOK_VERIFIED,
            request,
            action="url_verification",
            result="success",
            risk_level=RiskLevel.INFO,
            account_id=target.account_id,
        )
        return JSONResponse({"challenge": payload.get("challenge", "")})

    def _decrypt(
        self,
        request: Request,
        raw: bytes,
        encrypted: str,
        targets: Sequence[FeishuWebhookTarget],
    ) -> dict[str, Any] | None:
        """Try each target's encrypt key; signed-request matches go first."""
        timestamp = request.headers.get(_TIMESTAMP_HEADER, "")
        nonce = request.headers.get(_NONCE_HEADER, "")
        signature = request.headers.get(_SIGNATURE_HEADER, "")
        candidates = [t for t in targets if t.encrypt_key]
        if signature:
            body = raw.decode("utf-8", errors="replace")
            signed = [t for t in candidates if verify_signature(timestamp, nonce, t.encrypt_key or "", body, signature)]
            candidates = signed + [t for t in candidates if t not in signed]

        for target in candidates:
            try:
                decrypted = json.loads(decrypt_event(encrypted, target.encrypt_key or ""))
            except (DecryptionError, json.JSONDecodeError):
                continue
            if isinstance(decrypted, dict):
                return decrypted
        return None

    def _accept_message_event(
        self,
        request: Request,
        payload: dict[str, Any],
        targets: Sequence[FeishuWebhookTarget],
    ) -> Response:
        token = payload["header"].get("token")
        target = next((t for t in targets if _token_matches(t.verification_token, token)), None)
        if target is None:
            self._record(
                AuditEventType.WEBHOOK_REJECTED,
                request,
                action="message_event",
                result="failure",
                risk_level=RiskLevel.HIGH,
            )
            return PlainTextResponse("unauthorized", status_code=401)

        try:
            event = FeishuMessageEvent.model_validate(payload)
        except pydantic.ValidationError:
            return PlainTextResponse("invalid payload", status_code=400)

        event_id = event.header.event_id
        if event_id and not self._replay_guard.check(f"feishu:{target.account_id}:{event_id}"):
            logger.debug("feishu: duplicate event %s ignored", event_id)
            return JSONResponse({})

        target.mark_inbound()
        self._dispatcher.dispatch_detached(
            self._processor.handle_event(target, event),
            context=f"[{target.account_id}] Feishu webhook failed",
        )
        return JSONResponse({})

    def _record(
        self,
        event_type: AuditEventType,
        request: Request,
        *,
        action: str,
        result: str,
        risk_level: RiskLevel,
        account_id: str | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            AuditEvent(
                event_type=event_type,
                provider=Provider.FEISHU,
                account_id=account_id,
                source_ip=request.client.host if request.client else None,
                action=action,
                result=result,
                risk_level=risk_level,
                details={"path": request.url.path},
            )
        )


def monitor_feishu_provider(
    registry: WebhookTargetRegistry[FeishuWebhookTarget],
    account: FeishuAccount,
    config: HostConfig,
    status_sink: StatusSink | None = None,
) -> Callable[[], None]:
    """Register the account's webhook target; returns the stop callback."""
    verification_token = (account.config.verification_token or "").strip()
    webhook_url = (account.config.webhook_url or "").strip()
    if not webhook_url or not verification_token:
        raise ConfigurationError("Feishu requires webhookUrl and verificationToken for receiving messages")

    path = resolve_webhook_path(account.config.webhook_path, webhook_url)
    if path is None:
        raise ConfigurationError("Feishu webhookPath could not be derived")

    target = FeishuWebhookTarget(
        path=path,
        account=account,
        config=config,
        media_max_mb=account.media_max_mb,
        status_sink=status_sink,
        credentials=account.credentials,
        verification_token=verification_token,
        encrypt_key=(account.config.encrypt_key or "").strip() or None,
    )
    logger.info("[%s] Feishu webhook listening on %s", account.account_id, path)
    return registry.register(target)
