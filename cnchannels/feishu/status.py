"""Configuration issues and status snapshots for Feishu accounts."""

from __future__ import annotations

from cnchannels.config.schema import HostConfig
from cnchannels.feishu.accounts import FeishuAccount, resolve_feishu_account
from cnchannels.models import AccountSnapshot, Provider, StatusIssue


def collect_feishu_status_issues(cfg: HostConfig, account_id: str | None = None) -> list[StatusIssue]:
    account = resolve_feishu_account(cfg, account_id)
    if not account.credentials.configured:
        return [StatusIssue(
            severity="error",
            message="Missing Feishu credentials (appId or appSecret)",
            hint="Set appId and appSecret in channels.feishu or FEISHU_APP_ID/FEISHU_APP_SECRET",
        )]

    issues: list[StatusIssue] = []
    if not account.config.verification_token:
        issues.append(StatusIssue(
            severity="error",
            message="Missing Feishu verification token",
            hint="Configure verificationToken in channels.feishu config",
        ))
    if not account.config.webhook_url:
        issues.append(StatusIssue(
            severity="warning",
            message="No webhook URL configured",
            hint="Set webhookUrl in channels.feishu config",
        ))
    return issues


def describe_feishu_account(account: FeishuAccount) -> AccountSnapshot:
    return AccountSnapshot(
        provider=Provider.FEISHU,
        account_id=account.account_id,
        name=account.name,
        enabled=account.enabled,
        configured=account.credentials.configured,
        token_source=account.token_source,
        mode="webhook" if account.config.webhook_url else "none",
        dm_policy=account.dm_policy,
    )
