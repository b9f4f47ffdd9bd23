"""Click CLI for running and operating the channel gateway."""

from __future__ import annotations

import asyncio
import json
import logging

import click
import httpx
import uvicorn

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.loader import load_config_from_env
from cnchannels.config.schema import HostConfig, ReceiveIdType
from cnchannels.errors import ConfigurationError
from cnchannels.gateway.app import create_app
from cnchannels.gateway.manager import ChannelGateway
from cnchannels.models import Provider

_PROVIDER = click.Choice([p.value for p in Provider])


def _gateway(ctx: click.Context) -> ChannelGateway:
    config: HostConfig = ctx.obj["config"]
    return ChannelGateway(config, audit_logger=ctx.obj["audit_logger"])


@click.group()
@click.option("--config", "config_path", default=None, help="Path to the channels config JSON.")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Feishu / WeCom channel gateway CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        config = load_config_from_env(config_path)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc
    audit_path = config.gateway.audit_log_path
    ctx.obj["config"] = config
    ctx.obj["audit_logger"] = AuditLogger.from_env(audit_path) if audit_path else None


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")
@click.option("--port", default=8080, type=int, help="Bind port.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start every enabled account and serve the webhooks."""
    app = create_app(_gateway(ctx), audit_logger=ctx.obj["audit_logger"], start_accounts=True)
    uvicorn.run(app, host=host, port=port)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Print account snapshots and configuration issues."""
    gateway = _gateway(ctx)
    output = {
        "accounts": [snapshot.model_dump(mode="json") for snapshot in gateway.snapshots()],
        "issues": {
            provider.value: [issue.model_dump(mode="json") for issue in gateway.collect_status_issues(provider)]
            for provider in Provider
        },
    }
    click.echo(json.dumps(output, indent=2, ensure_ascii=False))


@cli.command()
@click.argument("provider", type=_PROVIDER)
@click.option("--account", default=None, help="Account id (default account if omitted).")
@click.option("--timeout-ms", default=5000, type=int, help="Probe timeout in milliseconds.")
@click.pass_context
def probe(ctx: click.Context, provider: str, account: str | None, timeout_ms: int) -> None:
    """Check that an account's credentials can obtain a token."""
    result = asyncio.run(_gateway(ctx).probe(Provider(provider), account, timeout_ms))
    click.echo(json.dumps({
        "ok": result.ok,
        "elapsed_ms": result.elapsed_ms,
        "bot": {"name": result.bot.name, "open_id": result.bot.open_id} if result.bot else None,
        "error": result.error,
    }, indent=2, ensure_ascii=False))
    if not result.ok:
        ctx.exit(1)


@cli.command()
@click.argument("provider", type=_PROVIDER)
@click.argument("to")
@click.argument("text")
@click.option("--account", default=None, help="Account id (default account if omitted).")
@click.option(
    "--receive-id-type",
    type=click.Choice([t.value for t in ReceiveIdType]),
    default=None,
    help="Feishu receive_id_type override.",
)
@click.pass_context
def send(
    ctx: click.Context,
    provider: str,
    to: str,
    text: str,
    account: str | None,
    receive_id_type: str | None,
) -> None:
    """Send a text message to a user (or Feishu chat)."""
    id_type = ReceiveIdType(receive_id_type) if receive_id_type else None
    result = asyncio.run(_gateway(ctx).send_text(Provider(provider), to, text, account, id_type))
    click.echo(json.dumps({"ok": result.ok, "message_id": result.message_id, "error": result.error}, indent=2))
    if not result.ok:
        ctx.exit(1)


@cli.group("pairing")
def pairing_group() -> None:
    """Manage DM pairing requests on a running gateway."""


@pairing_group.command("approve")
@click.argument("channel", type=_PROVIDER)
@click.argument("code")
@click.option("--url", default="http://127.0.0.1:8080", help="Gateway base URL.")
@click.option("--token", default=None, help="Admin token (defaults to gateway.adminToken).")
@click.pass_context
def pairing_approve(ctx: click.Context, channel: str, code: str, url: str, token: str | None) -> None:
    """Approve a pairing code shown to a user."""
    admin_token = token or ctx.obj["config"].gateway.admin_token
    if not admin_token:
        raise click.ClickException("an admin token is required (--token or gateway.adminToken)")
    try:
        resp = httpx.post(
            f"{url.rstrip('/')}/pairing/{channel}/approve",
            json={"code": code},
            headers={"Authorization": f"Bearer {admin_token}"},
            timeout=10.0,
        )
    except httpx.HTTPError as exc:
        raise click.ClickException(f"gateway unreachable: {exc}") from exc
    if resp.status_code != 200:
        raise click.ClickException(f"approval failed ({resp.status_code}): {resp.text}")
    click.echo(f"Approved {channel} sender: {resp.json()['approved']}")
