"""Feishu account and credential resolution."""

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
from cnchannels.config.schema import FeishuAccountConfig, HostConfig
from cnchannels.models import DEFAULT_ACCOUNT_ID, TokenSource

TARGET_PREFIX = re.compile(r"^(feishu|lark|fs):", re.IGNORECASE)


@dataclass(frozen=True)
class FeishuCredentials:
    app_id: str
    app_secret: str

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret)


@dataclass(frozen=True)
class FeishuCredentialResolution:
    credentials: FeishuCredentials
    source: TokenSource


FeishuAccount = ResolvedAccount[FeishuCredentials, FeishuAccountConfig]


def _pair(entry: FeishuAccountConfig | None) -> FeishuCredentials | None:
    if entry is None:
        return None
    app_id = (entry.app_id or "").strip()
    app_secret = (entry.app_secret or "").strip()
    if app_id and app_secret:
        return FeishuCredentials(app_id=app_id, app_secret=app_secret)
    return None


def resolve_feishu_credentials(
    cfg: HostConfig,
    account_id: str | None = None,
) -> FeishuCredentialResolution:
    """Per-account entry, then top-level fields, then FEISHU_* env vars.

    The top level and the environment only apply to the default account.
    Never raises; an unresolved account gets empty credentials.
    """
    section = cfg.channels.feishu
    resolved_id = normalize_account_id(account_id)

    if section is not None:
        explicit = _pair(section.accounts.get(resolved_id))
        if explicit is not None:
            return FeishuCredentialResolution(explicit, TokenSource.CONFIG)

    if resolved_id == DEFAULT_ACCOUNT_ID:
        top_level = _pair(section)
        if top_level is not None:
            return FeishuCredentialResolution(top_level, TokenSource.CONFIG)
        env_app_id = os.environ.get("FEISHU_APP_ID", "").strip()
        env_app_secret = os.environ.get("FEISHU_APP_SECRET", "").strip()
        if env_app_id and env_app_secret:
            return FeishuCredentialResolution(
                FeishuCredentials(app_id=env_app_id, app_secret=env_app_secret),
                TokenSource.ENV,
            )

    return FeishuCredentialResolution(FeishuCredentials(app_id="", app_secret=""), TokenSource.NONE)


def list_feishu_account_ids(cfg: HostConfig) -> list[str]:
    section = cfg.channels.feishu
    return list_account_ids(section.accounts if section else None)


def resolve_default_feishu_account_id(cfg: HostConfig) -> str:
    section = cfg.channels.feishu
    if section is None:
        return DEFAULT_ACCOUNT_ID
    return resolve_default_account_id(section.accounts, section.default_account)


def resolve_feishu_account(cfg: HostConfig, account_id: str | None = None) -> FeishuAccount:
    resolved_id = normalize_account_id(account_id)
    section = cfg.channels.feishu
    merged = merge_account_config(section, resolved_id, FeishuAccountConfig)
    base_enabled = section is None or section.enabled is not False
    resolution = resolve_feishu_credentials(cfg, resolved_id)
    return ResolvedAccount(
        account_id=resolved_id,
        name=(merged.name or "").strip() or None,
        enabled=base_enabled and merged.enabled is not False,
        credentials=resolution.credentials,
        token_source=resolution.source,
        config=merged,
    )


def list_enabled_feishu_accounts(cfg: HostConfig) -> list[FeishuAccount]:
    accounts = [resolve_feishu_account(cfg, account_id) for account_id in list_feishu_account_ids(cfg)]
    return [account for account in accounts if account.enabled]


def normalize_feishu_target(raw: str | None) -> str | None:
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    return TARGET_PREFIX.sub("", trimmed)
