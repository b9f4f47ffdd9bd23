"""Interfaces of the host collaborators the message processor calls into.

Each capability group is a separate Protocol and is injected on its own;
the adapters never reach into a shared runtime object.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

from cnchannels.config.schema import HostConfig
from cnchannels.models import (
    AgentRoute,
    InboundContext,
    MarkdownTableMode,
    PairingResult,
    PeerKind,
    Provider,
    ReplyPayload,
)

DeliverFn = Callable[[ReplyPayload], Awaitable[None]]
ReplyErrorFn = Callable[[BaseException, str], None]


class RoutingService(Protocol):
    def resolve_agent_route(
        self,
        cfg: HostConfig,
        channel: Provider,
        account_id: str,
        peer_kind: PeerKind,
        peer_id: str,
    ) -> AgentRoute: ...


class SessionService(Protocol):
    def resolve_store_path(self, store: str | None, agent_id: str) -> str: ...

    def read_session_updated_at(self, store_path: str, session_key: str) -> int | None: ...

    async def record_inbound_session(
        self,
        store_path: str,
        session_key: str,
        ctx: InboundContext,
    ) -> None: ...


class PairingService(Protocol):
    async def read_allow_from_store(self, channel: Provider) -> list[str]: ...

    async def upsert_pairing_request(
        self,
        channel: Provider,
        sender_id: str,
        meta: dict[str, str] | None = None,
    ) -> PairingResult: ...

    def build_pairing_reply(self, channel: Provider, id_line: str, code: str) -> str: ...


class CommandService(Protocol):
    def should_compute_command_authorized(self, text: str, cfg: HostConfig) -> bool: ...

    def is_control_command_message(self, text: str, cfg: HostConfig) -> bool: ...

    def resolve_command_authorized(
        self,
        use_access_groups: bool,
        authorizers: list[tuple[bool, bool]],
    ) -> bool:
        """``authorizers`` holds ``(configured, allowed)`` pairs."""
        ...


class TextService(Protocol):
    def resolve_markdown_table_mode(
        self,
        cfg: HostConfig,
        channel: Provider,
        account_id: str,
    ) -> MarkdownTableMode: ...

    def convert_markdown_tables(self, text: str, mode: MarkdownTableMode) -> str: ...


class ReplyService(Protocol):
    def format_agent_envelope(
        self,
        channel_label: str,
        from_label: str,
        timestamp: int | None,
        previous_timestamp: int | None,
        body: str,
        cfg: HostConfig,
    ) -> str: ...

    def finalize_inbound_context(self, ctx: InboundContext) -> InboundContext: ...

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        cfg: HostConfig,
        deliver: DeliverFn,
        on_error: ReplyErrorFn,
    ) -> None:
        """Run the agent and hand each buffered reply block to ``deliver``."""
        ...


@runtime_checkable
class PairingAdmin(Protocol):
    """Optional operator side of a pairing store."""

    def approve(self, channel: Provider, code: str) -> str | None:
        """Approve a pending code; returns the approved sender id."""
        ...
