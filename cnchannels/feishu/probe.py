"""Credential probe for Feishu accounts."""

from __future__ import annotations

import time

from cnchannels.errors import ChannelError, ProviderApiError
from cnchannels.feishu.api import FeishuApi
from cnchannels.models import ProbeBot, ProbeResult


async def probe_feishu(
    api: FeishuApi,
    app_id: str,
    app_secret: str,
    timeout_ms: int = 5000,
) -> ProbeResult:
    """Fetch a tenant token and the bot's identity."""
    if not app_id.strip() or not app_secret.strip():
        return ProbeResult(ok=False, error="Missing appId or appSecret", elapsed_ms=0)

    started = time.monotonic()
    try:
        access_token = await api.get_tenant_access_token(
            app_id.strip(), app_secret.strip(), timeout_ms=timeout_ms,
        )
        bot = await api.get_bot_info(access_token, timeout_ms=timeout_ms)
    except ProviderApiError as exc:
        return ProbeResult(ok=False, error=exc.provider_message, elapsed_ms=_elapsed(started))
    except ChannelError as exc:
        return ProbeResult(ok=False, error=str(exc), elapsed_ms=_elapsed(started))

    elapsed = _elapsed(started)
    if bot.get("app_name") or bot.get("open_id"):
        return ProbeResult(
            ok=True,
            bot=ProbeBot(name=bot.get("app_name", ""), open_id=bot.get("open_id", "")),
            elapsed_ms=elapsed,
        )
    return ProbeResult(ok=True, elapsed_ms=elapsed)


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
