"""WeCom application callback webhook: URL verification, decryption and dispatch."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import pydantic
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.schema import HostConfig
from cnchannels.errors import ConfigurationError, DecryptionError, ValidationError
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
from cnchannels.wecom.accounts import TARGET_PREFIX, WecomAccount, WecomCredentials
from cnchannels.wecom.crypto import decrypt_message, verify_msg_signature, verify_signature
from cnchannels.wecom.events import WecomEnvelope, WecomIncomingMessage, parse_xml_fields
from cnchannels.wecom.send import WECOM_TEXT_LIMIT, WecomSender

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class WecomWebhookTarget(WebhookTarget):
    credentials: WecomCredentials
    token: str
    encoding_aes_key: str

    @property
    def corp_id(self) -> str:
        return self.credentials.corp_id


class WecomMessageProcessor(InboundMessageProcessor[WecomWebhookTarget]):
    provider = Provider.WECOM
    channel_label = "WeCom"
    text_limit = WECOM_TEXT_LIMIT
    allow_prefix = TARGET_PREFIX

    def __init__(
        self,
        services: HostServices,
        sender: WecomSender,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        super().__init__(services, audit_logger)
        self._sender = sender

    async def handle_message(self, target: WecomWebhookTarget, incoming: WecomIncomingMessage) -> None:
        message = to_inbound_message(incoming)
        if message is None:
            logger.debug("wecom: ignoring %s message %s", incoming.msg_type, incoming.msg_id)
            return
        await self.process(target, message)

    async def send_text(
        self,
        target: WecomWebhookTarget,
        message: InboundMessage,
        text: str,
        *,
        to_sender: bool,
    ) -> SendResult:
        # Application messages only reach users; the DM chat id is the user id.
        return await self._sender.send_text(target.credentials, message.sender_id, text)

    def pairing_id_line(self, sender_id: str) -> str:
        return f"Your WeCom user id: {sender_id}"


def to_inbound_message(incoming: WecomIncomingMessage) -> InboundMessage | None:
    text = incoming.text()
    if not text:
        return None
    return InboundMessage(
        message_id=incoming.msg_id,
        sender_id=incoming.from_user_name,
        chat_id=incoming.from_user_name,
        chat_type=ChatType.DIRECT,
        text=text,
        timestamp_ms=incoming.create_time * 1000 if incoming.create_time else None,
    )


class WecomWebhookHandler:
    """Answers WeCom callbacks for every registered target path."""

    def __init__(
        self,
        registry: WebhookTargetRegistry[WecomWebhookTarget],
        processor: WecomMessageProcessor,
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
        """Return None when no WeCom target is registered on the path."""
        targets = self._registry.lookup(normalize_webhook_path(request.url.path))
        if not targets:
            return None

        params = request.query_params
        msg_signature = params.get("msg_signature", "")
        timestamp = params.get("timestamp", "")
        nonce = params.get("nonce", "")
        echostr = params.get("echostr", "")

        if request.method == "GET" and echostr:
            return self._answer_echo(request, targets, msg_signature, timestamp, nonce, echostr)

        if request.method != "POST":
            return PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "GET, POST"})

        try:
            raw = await read_body(request, self._max_body_bytes)
        except ValidationError as exc:
            return PlainTextResponse(str(exc), status_code=exc.status_code)

        try:
            envelope = WecomEnvelope.model_validate(parse_xml_fields(raw.decode("utf-8")))
        except (ValidationError, UnicodeDecodeError, pydantic.ValidationError):
            return PlainTextResponse("invalid XML", status_code=400)
        if not envelope.encrypt:
            return PlainTextResponse("missing encrypted message", status_code=400)

        matched: WecomWebhookTarget | None = None
        decrypted = ""
        for target in targets:
            if not verify_msg_signature(target.token, timestamp, nonce, envelope.encrypt, msg_signature):
                continue
            try:
                decrypted = decrypt_message(envelope.encrypt, target.encoding_aes_key, target.corp_id)
            except DecryptionError as exc:
                logger.debug("[%s] wecom: decrypt failed: %s", target.account_id, exc)
                continue
            matched = target
            break

        if matched is None:
            self._record(
                AuditEventType.WEBHOOK_REJECTED,
                request,
                action="message_callback",
                result="failure",
                risk_level=RiskLevel.HIGH,
            )
            return PlainTextResponse("unauthorized", status_code=401)

        try:
            incoming = WecomIncomingMessage.from_xml(decrypted)
        except (ValidationError, pydantic.ValidationError):
            return PlainTextResponse("invalid decrypted XML", status_code=400)

        if incoming.msg_id and not self._replay_guard.check(f"wecom:{matched.account_id}:{incoming.msg_id}"):
            logger.debug("wecom: duplicate message %s ignored", incoming.msg_id)
            return PlainTextResponse("success")

        matched.mark_inbound()
        self._dispatcher.dispatch_detached(
            self._processor.handle_message(matched, incoming),
            context=f"[{matched.account_id}] WeCom webhook failed",
        )
        return PlainTextResponse("success")

    def _answer_echo(
        self,
        request: Request,
        targets: Sequence[WecomWebhookTarget],
        msg_signature: str,
        timestamp: str,
        nonce: str,
        echostr: str,
    ) -> Response:
        for target in targets:
            if not verify_signature(target.token, timestamp, nonce, echostr, msg_signature):
                continue
            try:
                plaintext = decrypt_message(echostr, target.encoding_aes_key, target.corp_id)
            except DecryptionError:
                continue
            self._record(
                AuditEventType.WEBHOOK_VERIFIED,
                request,
                action="url_verification",
                result="success",
                risk_level=RiskLevel.INFO,
                account_id=target.account_id,
            )
            return PlainTextResponse(plaintext)

        self._record(
            AuditEventType.WEBHOOK_REJECTED,
            request,
            action="url_verification",
            result="failure",
            risk_level=RiskLevel.MEDIUM,
        )
        return PlainTextResponse("verification failed", status_code=401)

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
                provider=Provider.WECOM,
                account_id=account_id,
                source_ip=request.client.host if request.client else None,
                action=action,
                result=result,
                risk_level=risk_level,
                details={"path": request.url.path},
            )
        )


def monitor_wecom_provider(
    registry: WebhookTargetRegistry[WecomWebhookTarget],
    account: WecomAccount,
    config: HostConfig,
    status_sink: StatusSink | None = None,
) -> Callable[[], None]:
    """Register the account's webhook target; returns the stop callback."""
    token = (account.config.token or "").strip()
    encoding_aes_key = (account.config.encoding_aes_key or "").strip()
    webhook_url = (account.config.webhook_url or "").strip()
    if not webhook_url or not token or not encoding_aes_key:
        raise ConfigurationError("WeCom requires webhookUrl, token, and encodingAesKey for receiving messages")

    path = resolve_webhook_path(account.config.webhook_path, webhook_url)
    if path is None:
        raise ConfigurationError("WeCom webhookPath could not be derived")

    target = WecomWebhookTarget(
        path=path,
        account=account,
        config=config,
        media_max_mb=account.media_max_mb,
        status_sink=status_sink,
        credentials=account.credentials,
        token=token,
        encoding_aes_key=encoding_aes_key,
    )
    logger.info("[%s] WeCom webhook listening on %s", account.account_id, path)
    return registry.register(target)
