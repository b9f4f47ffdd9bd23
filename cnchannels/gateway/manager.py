"""Account lifecycle for the Feishu and WeCom webhook adapters."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
from fastapi import Request, Response

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.schema import HostConfig, ReceiveIdType
from cnchannels.errors import ConfigurationError
from cnchannels.feishu.accounts import (
    list_enabled_feishu_accounts,
    list_feishu_account_ids,
    normalize_feishu_target,
    resolve_default_feishu_account_id,
    resolve_feishu_account,
)
from cnchannels.feishu.api import FeishuApi
from cnchannels.feishu.monitor import (
    FeishuMessageProcessor,
    FeishuWebhookHandler,
    FeishuWebhookTarget,
    monitor_feishu_provider,
)
from cnchannels.feishu.probe import probe_feishu
from cnchannels.feishu.send import FeishuSender
from cnchannels.feishu.status import collect_feishu_status_issues, describe_feishu_account
from cnchannels.inbound.processor import HostServices
from cnchannels.models import AccountSnapshot, ProbeResult, Provider, SendResult, StatusIssue, StatusPatch
from cnchannels.runtime.local import (
    InMemoryPairingStore,
    InMemorySessionStore,
    MarkdownTableText,
    SessionKeyRouter,
    SlashCommandService,
    UpstreamReplyService,
)
from cnchannels.runtime.protocols import PairingAdmin
from cnchannels.tokens import AccessTokenCache
from cnchannels.webhook.dispatch import TaskDispatcher
from cnchannels.webhook.registry import WebhookTargetRegistry
from cnchannels.webhook.replay import ReplayGuard
from cnchannels.webhook.target import StatusSink, now_ms
from cnchannels.wecom.accounts import (
    list_enabled_wecom_accounts,
    list_wecom_account_ids,
    normalize_wecom_target,
    resolve_default_wecom_account_id,
    resolve_wecom_account,
)
from cnchannels.wecom.api import WecomApi
from cnchannels.wecom.monitor import (
    WecomMessageProcessor,
    WecomWebhookHandler,
    WecomWebhookTarget,
    monitor_wecom_provider,
)
from cnchannels.wecom.probe import probe_wecom
from cnchannels.wecom.send import WecomSender
from cnchannels.wecom.status import collect_wecom_status_issues, describe_wecom_account

logger = logging.getLogger(__name__)

PAIRING_APPROVED_MESSAGE = "Your pairing request has been approved. You can now chat with the assistant."
STARTUP_PROBE_TIMEOUT_MS = 2500

_AccountKey = tuple[Provider, str]


@dataclass
class AccountHandle:
    """A running account; ``stop()`` unregisters its webhook target."""

    provider: Provider
    account_id: str
    _on_stop: Callable[[], None] = field(repr=False)
    stopped: bool = False

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self._on_stop()


def default_host_services(config: HostConfig) -> HostServices:
    """Process-local collaborators; replies come from the configured upstream."""
    return HostServices(
        routing=SessionKeyRouter(),
        sessions=InMemorySessionStore(),
        pairing=InMemoryPairingStore(),
        commands=SlashCommandService(),
        text=MarkdownTableText(),
        replies=UpstreamReplyService(config.gateway.upstream_url, config.gateway.upstream_token),
    )


class ChannelGateway:
    """Owns the webhook registries, API clients and per-account status."""

    def __init__(
        self,
        config: HostConfig,
        services: HostServices | None = None,
        *,
        audit_logger: AuditLogger | None = None,
        http_client: httpx.AsyncClient | None = None,
        token_cache: AccessTokenCache | None = None,
    ) -> None:
        self.config = config
        self.services = services or default_host_services(config)
        self.token_cache = token_cache or AccessTokenCache()
        self.dispatcher = TaskDispatcher()

        self.feishu_registry: WebhookTargetRegistry[FeishuWebhookTarget] = WebhookTargetRegistry()
        self.wecom_registry: WebhookTargetRegistry[WecomWebhookTarget] = WebhookTargetRegistry()

        self.feishu_api = FeishuApi(self.token_cache, client=http_client)
        self.wecom_api = WecomApi(self.token_cache, client=http_client)
        self.feishu_sender = FeishuSender(self.feishu_api)
        self.wecom_sender = WecomSender(self.wecom_api)

        max_body = config.gateway.max_body_bytes
        self.feishu_handler = FeishuWebhookHandler(
            self.feishu_registry,
            FeishuMessageProcessor(self.services, self.feishu_sender, audit_logger),
            self.dispatcher,
            ReplayGuard(),
            audit_logger,
            max_body,
        )
        self.wecom_handler = WecomWebhookHandler(
            self.wecom_registry,
            WecomMessageProcessor(self.services, self.wecom_sender, audit_logger),
            self.dispatcher,
            ReplayGuard(),
            audit_logger,
            max_body,
        )

        self._handles: dict[_AccountKey, AccountHandle] = {}
        self._snapshots: dict[_AccountKey, AccountSnapshot] = {}

    # --- webhook entry point ---

    async def handle_request(self, request: Request) -> Response | None:
        """Offer the request to each provider; None when no target owns the path."""
        response = await self.feishu_handler.handle_request(request)
        if response is None:
            response = await self.wecom_handler.handle_request(request)
        return response

    # --- lifecycle ---

    async def start_account(self, provider: Provider, account_id: str | None = None) -> AccountHandle:
        """Register the account's webhook target; raises ConfigurationError."""
        if provider == Provider.FEISHU:
            feishu_account = resolve_feishu_account(self.config, account_id)
            key: _AccountKey = (provider, feishu_account.account_id)
            self._snapshots.setdefault(key, describe_feishu_account(feishu_account))
            logger.info("[%s] starting Feishu provider", feishu_account.account_id)
            unregister = self._monitor(
                key,
                lambda sink: monitor_feishu_provider(self.feishu_registry, feishu_account, self.config, sink),
            )
            await self._label_feishu_bot(key, feishu_account.credentials.app_id, feishu_account.credentials.app_secret)
        else:
            wecom_account = resolve_wecom_account(self.config, account_id)
            key = (provider, wecom_account.account_id)
            self._snapshots.setdefault(key, describe_wecom_account(wecom_account))
            logger.info("[%s] starting WeCom provider", wecom_account.account_id)
            unregister = self._monitor(
                key,
                lambda sink: monitor_wecom_provider(self.wecom_registry, wecom_account, self.config, sink),
            )

        previous = self._handles.pop(key, None)
        if previous is not None:
            previous.stop()
        handle = AccountHandle(provider, key[1], lambda: self._on_stop(key, unregister))
        self._handles[key] = handle
        self._patch(key, running=True, last_start_at=now_ms(), last_error=None, mode="webhook")
        return handle

    async def start_all(self) -> list[AccountHandle]:
        """Start every enabled account; a misconfigured account does not block the rest."""
        handles: list[AccountHandle] = []
        accounts: list[tuple[Provider, str]] = [
            *((Provider.FEISHU, a.account_id) for a in list_enabled_feishu_accounts(self.config)),
            *((Provider.WECOM, a.account_id) for a in list_enabled_wecom_accounts(self.config)),
        ]
        for provider, account_id in accounts:
            try:
                handles.append(await self.start_account(provider, account_id))
            except ConfigurationError as exc:
                logger.error("[%s] %s account not started: %s", account_id, provider.value, exc)
        return handles

    def stop_account(self, provider: Provider, account_id: str) -> None:
        handle = self._handles.pop((provider, account_id), None)
        if handle is not None:
            handle.stop()

    def stop_all(self) -> None:
        for key in list(self._handles):
            self.stop_account(*key)

    async def wait_idle(self) -> None:
        await self.dispatcher.wait_idle()

    def _monitor(
        self,
        key: _AccountKey,
        start: Callable[[StatusSink], Callable[[], None]],
    ) -> Callable[[], None]:
        try:
            return start(self._status_sink(key))
        except ConfigurationError as exc:
            self._patch(key, running=False, last_error=str(exc))
            raise

    def _on_stop(self, key: _AccountKey, unregister: Callable[[], None]) -> None:
        unregister()
        self._patch(key, running=False, last_stop_at=now_ms())
        logger.info("[%s] %s provider stopped", key[1], key[0].value)

    async def _label_feishu_bot(self, key: _AccountKey, app_id: str, app_secret: str) -> None:
        try:
            probe = await probe_feishu(self.feishu_api, app_id, app_secret, timeout_ms=STARTUP_PROBE_TIMEOUT_MS)
        except Exception as exc:  # labelling only; the account starts regardless
            logger.debug("[%s] Feishu bot probe failed: %s", key[1], exc)
            return
        if probe.ok and probe.bot is not None:
            self._patch(key, bot={"name": probe.bot.name, "open_id": probe.bot.open_id})
            logger.info("[%s] Feishu bot (%s)", key[1], probe.bot.name)

    # --- status ---

    def _status_sink(self, key: _AccountKey) -> StatusSink:
        def sink(patch: StatusPatch) -> None:
            updates = {
                name: value
                for name, value in (
                    ("last_inbound_at", patch.last_inbound_at),
                    ("last_outbound_at", patch.last_outbound_at),
                )
                if value is not None
            }
            self._patch(key, **updates)

        return sink

    def _patch(self, key: _AccountKey, **updates: object) -> None:
        current = self._snapshots.get(key)
        if current is None:
            return
        self._snapshots[key] = current.model_copy(update=updates)

    def snapshots(self) -> list[AccountSnapshot]:
        """Snapshots of every known account, started or not."""
        for account in resolve_known_accounts(self.config):
            self._snapshots.setdefault((account.provider, account.account_id), account)
        return [self._snapshots[key] for key in sorted(self._snapshots, key=lambda k: (k[0].value, k[1]))]

    def collect_status_issues(self, provider: Provider, account_id: str | None = None) -> list[StatusIssue]:
        if provider == Provider.FEISHU:
            return collect_feishu_status_issues(self.config, account_id)
        return collect_wecom_status_issues(self.config, account_id)

    async def probe(self, provider: Provider, account_id: str | None = None, timeout_ms: int = 5000) -> ProbeResult:
        if provider == Provider.FEISHU:
            credentials = resolve_feishu_account(self.config, account_id).credentials
            return await probe_feishu(self.feishu_api, credentials.app_id, credentials.app_secret, timeout_ms)
        wecom_credentials = resolve_wecom_account(self.config, account_id).credentials
        return await probe_wecom(self.wecom_api, wecom_credentials.corp_id, wecom_credentials.secret, timeout_ms)

    # --- outbound ---

    async def send_text(
        self,
        provider: Provider,
        to: str,
        text: str,
        account_id: str | None = None,
        receive_id_type: ReceiveIdType | None = None,
    ) -> SendResult:
        """Send to a (possibly prefixed) target through the account's credentials."""
        if provider == Provider.FEISHU:
            receive_id = normalize_feishu_target(to) or ""
            return await self.feishu_sender.send_for_account(
                self.config, receive_id, text, account_id, receive_id_type,
            )
        user_id = normalize_wecom_target(to) or ""
        return await self.wecom_sender.send_for_account(self.config, user_id, text, account_id)

    def _notifying_account_id(self, provider: Provider) -> str:
        if provider == Provider.FEISHU:
            account_id = resolve_default_feishu_account_id(self.config)
            configured = resolve_feishu_account(self.config, account_id).credentials.configured
        else:
            account_id = resolve_default_wecom_account_id(self.config)
            configured = resolve_wecom_account(self.config, account_id).credentials.configured
        if not configured:
            raise ConfigurationError(f"{provider.value} credentials not configured")
        return account_id

    async def notify_pairing_approved(self, provider: Provider, sender_id: str) -> SendResult:
        """Tell an approved sender through the provider's default account."""
        account_id = self._notifying_account_id(provider)
        return await self.send_text(provider, sender_id, PAIRING_APPROVED_MESSAGE, account_id)

    async def approve_pairing(self, provider: Provider, code: str) -> str | None:
        """Approve a pending pairing code and notify the sender."""
        pairing = self.services.pairing
        if not isinstance(pairing, PairingAdmin):
            raise ConfigurationError("the configured pairing store does not support approvals")
        self._notifying_account_id(provider)
        sender_id = pairing.approve(provider, code)
        if sender_id is None:
            return None
        result = await self.notify_pairing_approved(provider, sender_id)
        if not result.ok:
            logger.warning("pairing approved for %s but notification failed: %s", sender_id, result.error)
        return sender_id


def resolve_known_accounts(config: HostConfig) -> list[AccountSnapshot]:
    """Snapshots for every account of each configured provider section."""
    snapshots: list[AccountSnapshot] = []
    if config.channels.feishu is not None:
        snapshots += [
            describe_feishu_account(resolve_feishu_account(config, account_id))
            for account_id in list_feishu_account_ids(config)
        ]
    if config.channels.wecom is not None:
        snapshots += [
            describe_wecom_account(resolve_wecom_account(config, account_id))
            for account_id in list_wecom_account_ids(config)
        ]
    return snapshots
