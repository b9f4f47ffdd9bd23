"""Configuration issues and status snapshots for WeCom accounts."""

from __future__ import annotations

from cnchannels.config.schema import HostConfig
from cnchannels.models import AccountSnapshot, Provider, StatusIssue
from cnchannels.wecom.accounts import WecomAccount, resolve_wecom_account
from cnchannels.wecom.crypto import ENCODING_AES_KEY_LENGTH


def collect_wecom_status_issues(cfg: HostConfig, account_id: str | None = None) -> list[StatusIssue]:
    account = resolve_wecom_account(cfg, account_id)
    if not account.credentials.configured:
        return [StatusIssue(
            severity="error",
            message="Missing WeCom credentials (corpId, agentId, or secret)",
            hint="Set corpId, agentId and secret in channels.wecom or WECOM_CORP_ID/WECOM_AGENT_ID/WECOM_SECRET",
        )]

    issues: list[StatusIssue] = []
    token = account.config.token
    aes_key = account.config.encoding_aes_key
    if not token or not aes_key:
        issues.append(StatusIssue(
            severity="error",
            message="Missing WeCom webhook configuration (token or encodingAesKey)",
            hint="Configure webhook settings to receive messages",
        ))
    elif len(aes_key) != ENCODING_AES_KEY_LENGTH:
        issues.append(StatusIssue(
            severity="error",
            message=f"WeCom encodingAesKey must be {ENCODING_AES_KEY_LENGTH} characters",
            hint="Copy the EncodingAESKey exactly as shown in the WeCom admin console",
        ))
    if not account.config.webhook_url:
        issues.append(StatusIssue(
            severity="warning",
            message="No webhook URL configured",
            hint="Set webhookUrl in channels.wecom config",
        ))
    return issues


def describe_wecom_account(account: WecomAccount) -> AccountSnapshot:
    return AccountSnapshot(
        provider=Provider.WECOM,
        account_id=account.account_id,
        name=account.name,
        enabled=account.enabled,
        configured=account.credentials.configured,
        token_source=account.token_source,
        mode="webhook" if account.config.webhook_url else "none",
        dm_policy=account.dm_policy,
    )
