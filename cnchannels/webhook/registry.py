"""Webhook target registry: several accounts may share one HTTP path."""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Callable
from typing import Any, Generic, Protocol, TypeVar
from urllib.parse import urlparse


class _HasPath(Protocol):
    path: str


T = TypeVar("T", bound=_HasPath)


def normalize_webhook_path(raw: str) -> str:
    """Leading slash, no trailing slash (except for the root path)."""
    trimmed = raw.strip()
    if not trimmed:
        return "/"
    with_slash = trimmed if trimmed.startswith("/") else f"/{trimmed}"
    if len(with_slash) > 1 and with_slash.endswith("/"):
        return with_slash[:-1]
    return with_slash


def resolve_webhook_path(webhook_path: str | None, webhook_url: str | None) -> str | None:
    """Prefer an explicit path; otherwise derive it from the webhook URL."""
    if webhook_path and webhook_path.strip():
        return normalize_webhook_path(webhook_path)
    if webhook_url and webhook_url.strip():
        parsed = urlparse(webhook_url.strip())
        if not parsed.scheme or not parsed.netloc:
            return None
        return normalize_webhook_path(parsed.path or "/")
    return None


class WebhookTargetRegistry(Generic[T]):
    """Maps a normalized path to the targets registered on it.

    Each path holds an immutable tuple that is replaced on every edit,
    so lookups never observe a half-applied change.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._targets: dict[str, tuple[Any, ...]] = {}

    def register(self, target: T) -> Callable[[], None]:
        key = normalize_webhook_path(target.path)
        stored = dataclasses.replace(target, path=key)  # type: ignore[type-var]
        with self._lock:
            self._targets[key] = (*self._targets.get(key, ()), stored)

        def unregister() -> None:
            with self._lock:
                remaining = tuple(t for t in self._targets.get(key, ()) if t is not stored)
                if remaining:
                    self._targets[key] = remaining
                else:
                    self._targets.pop(key, None)

        return unregister

    def lookup(self, path: str) -> tuple[T, ...]:
        return self._targets.get(normalize_webhook_path(path), ())

    def paths(self) -> frozenset[str]:
        return frozenset(self._targets)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_webhook_path(path) in self._targets
