"""Account id helpers and the merged per-account view shared by both providers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel

from cnchannels.models import DEFAULT_ACCOUNT_ID, DmPolicy, TokenSource

C = TypeVar("C")
A = TypeVar("A", bound=BaseModel)

DEFAULT_MEDIA_MAX_MB = 5.0


def normalize_account_id(raw: str | None) -> str:
    trimmed = (raw or "").strip().lower()
    return trimmed or DEFAULT_ACCOUNT_ID


@dataclass(frozen=True)
class ResolvedAccount(Generic[C, A]):
    """Merged view of top-level and per-account configuration.

    Recomputed on every access from the host configuration; never
    mutated.
    """

    account_id: str
    name: str | None
    enabled: bool
    credentials: C
    token_source: TokenSource
    config: A

    @property
    def dm_policy(self) -> DmPolicy:
        return getattr(self.config, "dm_policy", None) or DmPolicy.PAIRING

    @property
    def allow_from(self) -> list[str]:
        return list(getattr(self.config, "allow_from", None) or [])

    @property
    def media_max_mb(self) -> float:
        return getattr(self.config, "media_max_mb", None) or DEFAULT_MEDIA_MAX_MB


def list_account_ids(accounts: dict[str, object] | None) -> list[str]:
    ids = sorted(key for key in (accounts or {}) if key)
    return ids or [DEFAULT_ACCOUNT_ID]


def resolve_default_account_id(accounts: dict[str, object] | None, default_account: str | None) -> str:
    if default_account and default_account.strip():
        return default_account.strip()
    ids = list_account_ids(accounts)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0]


def merge_account_config(section: BaseModel | None, account_id: str, model: type[A]) -> A:
    """Overlay an account entry onto the section's top-level fields."""
    if section is None:
        return model()
    base = section.model_dump(exclude={"accounts", "default_account"}, exclude_none=True)
    account = getattr(section, "accounts", {}).get(account_id)
    overrides = account.model_dump(exclude_none=True) if account is not None else {}
    return model.model_validate({**base, **overrides})
