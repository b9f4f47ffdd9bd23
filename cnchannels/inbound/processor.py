"""Inbound message pipeline shared by the Feishu and WeCom adapters.

A webhook handler turns a provider event into an ``InboundMessage`` and
hands it to a processor. The processor decides whether the sender may
talk to the agent, builds the inbound context, records the session and
streams the agent's reply back through the provider's send API.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Generic, TypeVar

from cnchannels.audit.logger import AuditLogger
from cnchannels.inbound.access import AccessDecision, is_sender_allowed
from cnchannels.models import (
    AuditEvent,
    AuditEventType,
    ChatType,
    DmPolicy,
    InboundContext,
    PeerKind,
    Provider,
    ReplyPayload,
    RiskLevel,
    SendResult,
)
from cnchannels.runtime.protocols import (
    CommandService,
    PairingService,
    ReplyService,
    RoutingService,
    SessionService,
    TextService,
)
from cnchannels.text.chunker import chunk_text
from cnchannels.webhook.target import WebhookTarget

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=WebhookTarget)


@dataclass(frozen=True)
class InboundMessage:
    """Provider-neutral view of one inbound text message."""

    message_id: str
    sender_id: str
    chat_id: str
    chat_type: ChatType
    text: str
    timestamp_ms: int | None = None

    @property
    def is_group(self) -> bool:
        return self.chat_type == ChatType.GROUP


@dataclass
class HostServices:
    """Host collaborators injected into every processor."""

    routing: RoutingService
    sessions: SessionService
    pairing: PairingService
    commands: CommandService
    text: TextService
    replies: ReplyService


class InboundMessageProcessor(ABC, Generic[T]):
    """Admission, context building and reply delivery for one provider."""

    provider: ClassVar[Provider]
    channel_label: ClassVar[str]
    text_limit: ClassVar[int]
    allow_prefix: ClassVar[re.Pattern[str]]

    def __init__(self, services: HostServices, audit_logger: AuditLogger | None = None) -> None:
        self._services = services
        self._audit = audit_logger

    # --- provider hooks ---

    @abstractmethod
    async def send_text(self, target: T, message: InboundMessage, text: str, *, to_sender: bool) -> SendResult:
        """Send ``text`` to the sender directly, or to the reply destination."""

    @abstractmethod
    def pairing_id_line(self, sender_id: str) -> str: ...

    def thinking_message(self, target: T) -> str | None:
        return None

    # --- pipeline ---

    async def process(self, target: T, message: InboundMessage) -> None:
        if not message.text:
            return
        decision = await self.evaluate_access(target, message)
        if not message.is_group and not decision.admits_direct_message():
            await self._reject_direct_message(target, message, decision)
            return

        services = self._services
        cfg = target.config
        route = services.routing.resolve_agent_route(
            cfg,
            self.provider,
            target.account_id,
            PeerKind.GROUP if message.is_group else PeerKind.DM,
            message.chat_id,
        )

        if (
            message.is_group
            and services.commands.is_control_command_message(message.text, cfg)
            and decision.command_authorized is not True
        ):
            logger.debug(
                "%s: drop control command from unauthorized sender %s",
                self.provider.value,
                message.sender_id,
            )
            return

        store_path = services.sessions.resolve_store_path(cfg.session.store, route.agent_id)
        ctx = self._build_context(target, message, route.session_key, store_path, decision)
        try:
            await services.sessions.record_inbound_session(store_path, ctx.session_key or route.session_key, ctx)
        except Exception as exc:  # session metadata is advisory
            logger.error("%s: failed updating session meta: %s", self.provider.value, exc)

        thinking = self.thinking_message(target)
        if thinking:
            result = await self.send_text(target, message, thinking, to_sender=False)
            if result.ok:
                target.mark_outbound()
            else:
                logger.debug("%s: thinking message not sent: %s", self.provider.value, result.error)

        table_mode = services.text.resolve_markdown_table_mode(cfg, self.provider, target.account_id)

        async def deliver(payload: ReplyPayload) -> None:
            if payload.media_url or payload.media_urls:
                logger.debug("%s: outbound media is not supported, sending text only", self.provider.value)
            text = services.text.convert_markdown_tables(payload.text or "", table_mode)
            for chunk in chunk_text(text, self.text_limit):
                result = await self.send_text(target, message, chunk, to_sender=False)
                if result.ok:
                    target.mark_outbound()
                    continue
                logger.error("%s message send failed: %s", self.channel_label, result.error)
                self._record(
                    AuditEventType.DELIVERY_FAILURE,
                    target,
                    message.sender_id,
                    action="send_reply",
                    result="failure",
                    risk_level=RiskLevel.LOW,
                    details={"error": result.error},
                )

        def on_error(exc: BaseException, kind: str) -> None:
            logger.error("[%s] %s %s reply failed: %s", target.account_id, self.channel_label, kind, exc)

        await services.replies.dispatch_reply(ctx, cfg, deliver, on_error)

    async def evaluate_access(self, target: T, message: InboundMessage) -> AccessDecision:
        """Resolve the dmPolicy outcome and command authorization for a message."""
        services = self._services
        cfg = target.config
        policy = target.account.dm_policy
        should_compute_auth = services.commands.should_compute_command_authorized(message.text, cfg)

        store_allow_from: list[str] = []
        if not message.is_group and (policy != DmPolicy.OPEN or should_compute_auth):
            try:
                store_allow_from = await services.pairing.read_allow_from_store(self.provider)
            except Exception as exc:  # an unreadable store means no approvals yet
                logger.warning("%s: pairing allow-from store unavailable: %s", self.provider.value, exc)
        effective_allow_from = [*target.account.allow_from, *store_allow_from]

        sender_allowed = is_sender_allowed(message.sender_id, effective_allow_from, self.allow_prefix)
        command_authorized: bool | None = None
        if should_compute_auth:
            command_authorized = services.commands.resolve_command_authorized(
                cfg.commands.use_access_groups,
                [(len(effective_allow_from) > 0, sender_allowed)],
            )
        return AccessDecision(
            policy=policy,
            sender_allowed=sender_allowed,
            command_authorized=command_authorized,
        )

    async def _reject_direct_message(self, target: T, message: InboundMessage, decision: AccessDecision) -> None:
        if decision.policy == DmPolicy.DISABLED:
            logger.debug("%s: blocked DM from %s (dmPolicy=disabled)", self.provider.value, message.sender_id)
            self._record_blocked(target, message, decision)
            return

        if decision.policy != DmPolicy.PAIRING:
            logger.debug(
                "%s: blocked unauthorized sender %s (dmPolicy=%s)",
                self.provider.value,
                message.sender_id,
                decision.policy.value,
            )
            self._record_blocked(target, message, decision)
            return

        pairing = self._services.pairing
        result = await pairing.upsert_pairing_request(self.provider, message.sender_id)
        if not result.created:
            return
        logger.info("%s: pairing request sender=%s", self.provider.value, message.sender_id)
        self._record(
            AuditEventType.PAIRING_REQUESTED,
            target,
            message.sender_id,
            action="pairing_request",
            result="success",
            risk_level=RiskLevel.INFO,
        )
        reply = pairing.build_pairing_reply(self.provider, self.pairing_id_line(message.sender_id), result.code)
        sent = await self.send_text(target, message, reply, to_sender=True)
        if sent.ok:
            target.mark_outbound()
        else:
            logger.debug("%s: pairing reply failed for %s: %s", self.provider.value, message.sender_id, sent.error)

    def _build_context(
        self,
        target: T,
        message: InboundMessage,
        session_key: str,
        store_path: str,
        decision: AccessDecision,
    ) -> InboundContext:
        services = self._services
        cfg = target.config
        channel = self.provider.value
        from_label = f"group:{message.chat_id}" if message.is_group else f"user:{message.sender_id}"
        previous_timestamp = services.sessions.read_session_updated_at(store_path, session_key)
        body = services.replies.format_agent_envelope(
            self.channel_label,
            from_label,
            message.timestamp_ms,
            previous_timestamp,
            message.text,
            cfg,
        )
        ctx = InboundContext(
            body=body,
            raw_body=message.text,
            command_body=message.text,
            from_=f"{channel}:group:{message.chat_id}" if message.is_group else f"{channel}:{message.sender_id}",
            to=f"{channel}:{message.chat_id}",
            session_key=session_key,
            account_id=target.account_id,
            chat_type=message.chat_type,
            conversation_label=from_label,
            sender_id=message.sender_id,
            command_authorized=decision.command_authorized,
            provider=self.provider,
            surface=self.provider,
            message_sid=message.message_id,
            originating_channel=self.provider,
            originating_to=f"{channel}:{message.chat_id}",
        )
        return services.replies.finalize_inbound_context(ctx)

    def _record_blocked(self, target: T, message: InboundMessage, decision: AccessDecision) -> None:
        self._record(
            AuditEventType.DM_BLOCKED,
            target,
            message.sender_id,
            action="direct_message",
            result="blocked",
            risk_level=RiskLevel.LOW,
            details={"dm_policy": decision.policy.value},
        )

    def _record(
        self,
        event_type: AuditEventType,
        target: T,
        sender_id: str | None,
        *,
        action: str,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object] | None = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            AuditEvent(
                event_type=event_type,
                provider=self.provider,
                account_id=target.account_id,
                sender_id=sender_id,
                action=action,
                result=result,
                risk_level=risk_level,
                details=details,
            )
        )
