"""Process-local implementations of the host collaborator interfaces.

These let the gateway run on its own: pairing and session state live in
memory and replies come from an OpenAI-compatible upstream.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from datetime import UTC, datetime

import httpx

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
from cnchannels.runtime.protocols import DeliverFn, ReplyErrorFn

logger = logging.getLogger(__name__)

_PAIRING_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_PAIRING_CODE_LENGTH = 8


class SessionKeyRouter:
    """Routes every peer to one agent with a per-peer session key."""

    def __init__(self, agent_id: str = "main") -> None:
        self._agent_id = agent_id

    def resolve_agent_route(
        self,
        cfg: HostConfig,
        channel: Provider,
        account_id: str,
        peer_kind: PeerKind,
        peer_id: str,
    ) -> AgentRoute:
        session_key = f"agent:{self._agent_id}:{channel.value}:{peer_kind.value}:{peer_id}".lower()
        return AgentRoute(agent_id=self._agent_id, session_key=session_key, account_id=account_id)


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, dict[str, object]]] = {}

    def resolve_store_path(self, store: str | None, agent_id: str) -> str:
        return (store or "memory://sessions/{agentId}").replace("{agentId}", agent_id)

    def read_session_updated_at(self, store_path: str, session_key: str) -> int | None:
        entry = self._sessions.get(store_path, {}).get(session_key)
        return entry.get("updated_at") if entry else None  # type: ignore[return-value]

    async def record_inbound_session(
        self,
        store_path: str,
        session_key: str,
        ctx: InboundContext,
    ) -> None:
        sessions = dict(self._sessions.get(store_path, {}))
        sessions[session_key] = {
            "updated_at": int(time.time() * 1000),
            "last_from": ctx.from_,
            "chat_type": ctx.chat_type.value,
        }
        self._sessions = {**self._sessions, store_path: sessions}


class InMemoryPairingStore:
    """Pending pairing requests and approved senders, per channel."""

    def __init__(self) -> None:
        self._pending: dict[tuple[Provider, str], str] = {}
        self._approved: dict[Provider, set[str]] = {}

    async def read_allow_from_store(self, channel: Provider) -> list[str]:
        return sorted(self._approved.get(channel, set()))

    async def upsert_pairing_request(
        self,
        channel: Provider,
        sender_id: str,
        meta: dict[str, str] | None = None,
    ) -> PairingResult:
        key = (channel, sender_id)
        existing = self._pending.get(key)
        if existing is not None:
            return PairingResult(code=existing, created=False)
        code = "".join(secrets.choice(_PAIRING_ALPHABET) for _ in range(_PAIRING_CODE_LENGTH))
        self._pending[key] = code
        return PairingResult(code=code, created=True)

    def build_pairing_reply(self, channel: Provider, id_line: str, code: str) -> str:
        return (
            "Access to this assistant is not configured yet.\n\n"
            f"{id_line}\n\n"
            f"Pairing code: {code}\n\n"
            "Ask the owner to approve it with:\n"
            f"  cnchannels pairing approve {channel.value} {code}"
        )

    def approve(self, channel: Provider, code: str) -> str | None:
        for (pending_channel, sender_id), pending_code in list(self._pending.items()):
            if pending_channel == channel and pending_code == code.upper():
                del self._pending[(pending_channel, sender_id)]
                self._approved.setdefault(channel, set()).add(sender_id)
                return sender_id
        return None


class SlashCommandService:
    """Treats messages starting with '/' as control commands."""

    def is_control_command_message(self, text: str, cfg: HostConfig) -> bool:
        return text.strip().startswith("/")

    def should_compute_command_authorized(self, text: str, cfg: HostConfig) -> bool:
        return self.is_control_command_message(text, cfg)

    def resolve_command_authorized(
        self,
        use_access_groups: bool,
        authorizers: list[tuple[bool, bool]],
    ) -> bool:
        if not use_access_groups:
            return True
        return any(configured and allowed for configured, allowed in authorizers)


_TABLE_LINE = re.compile(r"^\s*\|.*\|\s*$")
_TABLE_RULE = re.compile(r"^\s*\|?\s*:?-{3,}")


class MarkdownTableText:
    """Rewrites markdown tables for chat surfaces that do not render them."""

    def resolve_markdown_table_mode(
        self,
        cfg: HostConfig,
        channel: Provider,
        account_id: str,
    ) -> MarkdownTableMode:
        section = getattr(cfg.channels, channel.value)
        if section is None:
            return MarkdownTableMode.CODE
        account = section.accounts.get(account_id)
        for candidate in (account, section):
            if candidate is not None and candidate.markdown and candidate.markdown.tables:
                return candidate.markdown.tables
        return MarkdownTableMode.CODE

    def convert_markdown_tables(self, text: str, mode: MarkdownTableMode) -> str:
        if mode == MarkdownTableMode.OFF or "|" not in text:
            return text
        output: list[str] = []
        table: list[str] = []
        for line in [*text.split("\n"), None]:
            if line is not None and _TABLE_LINE.match(line):
                table.append(line)
                continue
            if table:
                output.extend(self._render(table, mode))
                table = []
            if line is not None:
                output.append(line)
        return "\n".join(output)

    @staticmethod
    def _render(rows: list[str], mode: MarkdownTableMode) -> list[str]:
        if mode == MarkdownTableMode.CODE:
            return ["```", *rows, "```"]
        cells = [
            [cell.strip() for cell in row.strip().strip("|").split("|")]
            for row in rows
            if not _TABLE_RULE.match(row)
        ]
        if not cells:
            return []
        header, *body = cells
        bullets = []
        for row in body:
            pairs = [f"{name}: {value}" for name, value in zip(header, row, strict=False) if value]
            bullets.append(f"- {', '.join(pairs)}")
        return bullets


class UpstreamReplyService:
    """Formats envelopes and gets replies from an OpenAI-compatible upstream."""

    def __init__(
        self,
        upstream_url: str | None,
        upstream_token: str | None,
        timeout: float = 60.0,
    ) -> None:
        self._upstream_url = upstream_url
        self._upstream_token = upstream_token
        self._timeout = timeout

    def format_agent_envelope(
        self,
        channel_label: str,
        from_label: str,
        timestamp: int | None,
        previous_timestamp: int | None,
        body: str,
        cfg: HostConfig,
    ) -> str:
        parts = [channel_label, from_label]
        if timestamp:
            parts.append(datetime.fromtimestamp(timestamp / 1000, UTC).strftime("%Y-%m-%d %H:%M UTC"))
            if previous_timestamp:
                elapsed = max(0, (timestamp - previous_timestamp) // 1000)
                parts.append(f"+{elapsed}s")
        return f"[{' '.join(parts)}] {body}"

    def finalize_inbound_context(self, ctx: InboundContext) -> InboundContext:
        return ctx.model_copy(update={"body": ctx.body.strip(), "raw_body": ctx.raw_body.strip()})

    async def dispatch_reply(
        self,
        ctx: InboundContext,
        cfg: HostConfig,
        deliver: DeliverFn,
        on_error: ReplyErrorFn,
    ) -> None:
        if not self._upstream_url:
            logger.warning("No upstream configured; dropping message for %s", ctx.session_key)
            return
        try:
            text = await self._complete(ctx)
        except (httpx.HTTPError, ValueError) as exc:
            on_error(exc, "final")
            return
        if text:
            try:
                await deliver(ReplyPayload(text=text))
            except Exception as exc:  # reported through on_error like the host dispatcher
                on_error(exc, "final")

    async def _complete(self, ctx: InboundContext) -> str:
        url = f"{self._upstream_url.rstrip('/')}/v1/chat/completions"  # type: ignore[union-attr]
        headers = {"Content-Type": "application/json"}
        if self._upstream_token:
            headers["Authorization"] = f"Bearer {self._upstream_token}"
        request_body = {
            "model": "default",
            "messages": [{"role": "user", "content": ctx.body}],
            "user": ctx.session_key,
            "metadata": {"source": ctx.provider.value, "sender_id": ctx.sender_id},
        }
        async with httpx.AsyncClient() as client:
            resp = await client.post(url, json=request_body, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
            try:
                data = resp.json()
                return data.get("choices", [{}])[0].get("message", {}).get("content") or ""
            except (json.JSONDecodeError, IndexError, AttributeError):
                return resp.text
