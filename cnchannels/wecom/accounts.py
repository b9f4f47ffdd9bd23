"""WeCom account and credential resolution."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from cnchannels.accounts import (
    ResolvedAccount,
    list_account_ids,
    merge_account_config,
    normalize_account_id,
    resolve_default_account_id,
)
from cnchannels.config.schema import HostConfig, WecomAccountConfig
from cnchannels.models import DEFAULT_ACCOUNT_ID, TokenSource

TARGET_PREFIX = re.compile(r"^(wecom|wxwork):", re.IGNORECASE)


@dataclass(frozen=True)
class WecomCredentials:
    corp_id: str
    agent_id: str
    secret: str

    @property
    def configured(self) -> bool:
        return bool(self.corp_id and self.agent_id and self.secret)


@dataclass(frozen=True)
class WecomCredentialResolution:
    credentials: WecomCredentials
    source: TokenSource


WecomAccount = ResolvedAccount[WecomCredentials, WecomAccountConfig]

_EMPTY = WecomCredentials(corp_id="", agent_id="", secret="")


def _triple(entry: WecomAccountConfig | None) -> WecomCredentials | None:
    if entry is None:
        return None
    corp_id = (entry.corp_id or "").strip()
    agent_id = (entry.agent_id or "").strip()
    secret = (entry.secret or "").strip()
    if corp_id and agent_id and secret:
        return WecomCredentials(corp_id=corp_id, agent_id=agent_id, secret=secret)
    return None


def resolve_wecom_credentials(
    cfg: HostConfig,
    account_id: str | None = None,
) -> WecomCredentialResolution:
    """Per-account entry, then top-level fields, then WECOM_* env vars.

    All three of corpId, agentId and secret must be present at one level
    for it to count. Never raises.
    """
    section = cfg.channels.wecom
    resolved_id = normalize_account_id(account_id)

    if section is not None:
        explicit = _triple(section.accounts.get(resolved_id))
        if explicit is not None:
            return WecomCredentialResolution(explicit, TokenSource.CONFIG)

    if resolved_id == DEFAULT_ACCOUNT_ID:
        top_level = _triple(section)
        if top_level is not None:
            return WecomCredentialResolution(top_level, TokenSource.CONFIG)
        env = WecomCredentials(
            corp_id=os.environ.get("WECOM_CORP_ID", "").strip(),
            agent_id=os.environ.get("WECOM_AGENT_ID", "").strip(),
            secret=os.environ.get("WECOM_SECRET", "").strip(),
        )
        if env.configured:
            return WecomCredentialResolution(env, TokenSource.ENV)

    return WecomCredentialResolution(_EMPTY, TokenSource.NONE)


def list_wecom_account_ids(cfg: HostConfig) -> list[str]:
    section = cfg.channels.wecom
    return list_account_ids(section.accounts if section else None)


def resolve_default_wecom_account_id(cfg: HostConfig) -> str:
    section = cfg.channels.wecom
    if section is None:
        return DEFAULT_ACCOUNT_ID
    return resolve_default_account_id(section.accounts, section.default_account)


def resolve_wecom_account(cfg: HostConfig, account_id: str | None = None) -> WecomAccount:
    resolved_id = normalize_account_id(account_id)
    section = cfg.channels.wecom
    merged = merge_account_config(section, resolved_id, WecomAccountConfig)
    base_enabled = section is None or section.enabled is not False
    resolution = resolve_wecom_credentials(cfg, resolved_id)
    return ResolvedAccount(
        account_id=resolved_id,
        name=(merged.name or "").strip() or None,
        enabled=base_enabled and merged.enabled is not False,
        credentials=resolution.credentials,
        token_source=resolution.source,
        config=merged,
    )


def list_enabled_wecom_accounts(cfg: HostConfig) -> list[WecomAccount]:
    accounts = [resolve_wecom_account(cfg, account_id) for account_id in list_wecom_account_ids(cfg)]
    return [account for account in accounts if account.enabled]


def normalize_wecom_target(raw: str | None) -> str | None:
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    return TARGET_PREFIX.sub("", trimmed)
