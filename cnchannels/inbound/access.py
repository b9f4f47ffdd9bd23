"""Direct-message admission checks."""

from __future__ import annotations

import re
from dataclasses import dataclass

from cnchannels.models import DmPolicy


def is_sender_allowed(sender_id: str, allow_from: list[str], prefix: re.Pattern[str]) -> bool:
    """Case-insensitive match after stripping channel prefixes; '*' allows anyone."""
    if "*" in allow_from:
        return True
    normalized_sender = sender_id.lower()
    return any(prefix.sub("", entry.strip()).lower() == normalized_sender for entry in allow_from)


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of the dmPolicy check for one inbound message."""

    policy: DmPolicy
    sender_allowed: bool
    command_authorized: bool | None

    def admits_direct_message(self) -> bool:
        if self.policy == DmPolicy.DISABLED:
            return False
        if self.policy == DmPolicy.OPEN:
            return True
        return self.sender_allowed
