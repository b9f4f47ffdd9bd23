"""Credential probe for WeCom accounts."""

from __future__ import annotations

import time

from cnchannels.errors import ChannelError, ProviderApiError
from cnchannels.models import ProbeResult
from cnchannels.wecom.api import WecomApi


async def probe_wecom(
    api: WecomApi,
    corp_id: str,
    secret: str,
    timeout_ms: int = 5000,
) -> ProbeResult:
    """A successful gettoken call is proof the credentials work."""
    if not corp_id.strip() or not secret.strip():
        return ProbeResult(ok=False, error="Missing corpId or secret", elapsed_ms=0)

    started = time.monotonic()
    try:
        await api.get_access_token(corp_id.strip(), secret.strip(), timeout_ms=timeout_ms)
    except ProviderApiError as exc:
        return ProbeResult(ok=False, error=exc.provider_message or str(exc), elapsed_ms=_elapsed(started))
    except ChannelError as exc:
        return ProbeResult(ok=False, error=str(exc), elapsed_ms=_elapsed(started))
    return ProbeResult(ok=True, elapsed_ms=_elapsed(started))


def _elapsed(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
