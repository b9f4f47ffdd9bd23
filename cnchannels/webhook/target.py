"""Fields every provider's webhook target carries."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cnchannels.accounts import ResolvedAccount
from cnchannels.config.schema import HostConfig
from cnchannels.models import StatusPatch

StatusSink = Callable[[StatusPatch], None]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(kw_only=True)
class WebhookTarget:
    """One account's registration on a webhook path."""

    path: str
    account: ResolvedAccount[Any, Any]
    config: HostConfig
    media_max_mb: float
    status_sink: StatusSink | None = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    def mark_inbound(self) -> None:
        if self.status_sink is not None:
            self.status_sink(StatusPatch(last_inbound_at=now_ms()))

    def mark_outbound(self) -> None:
        if self.status_sink is not None:
            self.status_sink(StatusPatch(last_outbound_at=now_ms()))
