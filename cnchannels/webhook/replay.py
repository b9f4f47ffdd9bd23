"""In-memory de-duplication of provider webhook retries."""

from __future__ import annotations

import time
from collections.abc import Callable


class ReplayGuard:
    """Remembers event ids for ``ttl_seconds``.

    Providers re-deliver events they consider timed out; a repeated id
    inside the window is reported as already seen.
    """

    def __init__(
        self,
        ttl_seconds: float = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: dict[str, float] = {}

    def check(self, event_key: str) -> bool:
        """Return True if ``event_key`` has not been seen inside the window."""
        now = self._clock()
        cutoff = now - self._ttl_seconds
        self._seen = {key: at for key, at in self._seen.items() if at > cutoff}
        if event_key in self._seen:
            return False
        self._seen[event_key] = now
        return True
