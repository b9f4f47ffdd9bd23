"""Process-wide access-token cache shared by the provider API clients."""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Awaitable, Callable

from cnchannels.models import AccessToken

logger = logging.getLogger(__name__)

REFRESH_BUFFER_MS = 300_000
DEFAULT_TOKEN_TTL_SECONDS = 7200


def _now_ms() -> float:
    return time.time() * 1000


def credential_key(*parts: str) -> str:
    """Hash a credential tuple so secrets never appear as dict keys."""
    return hashlib.sha256(":".join(parts).encode()).hexdigest()


class AccessTokenCache:
    """Caches provider bearer tokens keyed by a credential hash.

    A token is never handed out when it expires within the refresh
    buffer. Concurrent refreshes for the same key may both hit the
    provider; the last write wins and both tokens are valid.
    """

    def __init__(
        self,
        refresh_buffer_ms: int = REFRESH_BUFFER_MS,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self._refresh_buffer_ms = refresh_buffer_ms
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}

    def now_ms(self) -> float:
        return self._clock()

    def peek(self, key: str) -> AccessToken | None:
        token = self._tokens.get(key)
        if token is None or token.expires_at <= self._clock() + self._refresh_buffer_ms:
            return None
        return token

    def store(self, key: str, value: str, ttl_seconds: float) -> AccessToken:
        token = AccessToken(value=value, expires_at=self._clock() + ttl_seconds * 1000)
        # Whole-entry replacement; readers never see a partial token.
        self._tokens[key] = token
        return token

    async def get_token(
        self,
        key: str,
        fetch: Callable[[], Awaitable[tuple[str, float]]],
    ) -> str:
        """Return a cached token or call ``fetch`` for ``(value, ttl_seconds)``."""
        cached = self.peek(key)
        if cached is not None:
            return cached.value
        value, ttl_seconds = await fetch()
        logger.debug("Refreshed access token (ttl=%ss)", ttl_seconds)
        return self.store(key, value, ttl_seconds).value

    def clear(self) -> None:
        self._tokens = {}
