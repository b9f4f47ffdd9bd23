"""FastAPI application hosting the Feishu and WeCom webhooks."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from cnchannels.audit.logger import AuditLogger
from cnchannels.config.loader import load_config_from_env
from cnchannels.errors import ConfigurationError
from cnchannels.gateway.auth import AdminAuthMiddleware
from cnchannels.gateway.manager import ChannelGateway
from cnchannels.models import Provider

logger = logging.getLogger(__name__)

_WEBHOOK_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    config = load_config_from_env()
    audit_path = config.gateway.audit_log_path
    audit_logger = AuditLogger.from_env(audit_path) if audit_path else None
    gateway = ChannelGateway(config, audit_logger=audit_logger)
    return create_app(gateway, audit_logger=audit_logger, start_accounts=True)


def create_app(
    gateway: ChannelGateway,
    audit_logger: AuditLogger | None = None,
    start_accounts: bool = False,
) -> FastAPI:
    """Create the webhook app; admin routes exist only when an admin token is set."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if start_accounts:
            await gateway.start_all()
        try:
            yield
        finally:
            gateway.stop_all()
            await gateway.wait_idle()

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.gateway = gateway
    admin_token = gateway.config.gateway.admin_token

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    if admin_token:

        @app.get("/status")
        async def status() -> dict[str, Any]:
            return {
                "accounts": [snapshot.model_dump(mode="json") for snapshot in gateway.snapshots()],
                "issues": {
                    provider.value: [
                        issue.model_dump(mode="json") for issue in gateway.collect_status_issues(provider)
                    ]
                    for provider in Provider
                },
            }

        @app.post("/pairing/{channel}/approve")
        async def approve_pairing(channel: Provider, request: Request) -> Response:
            try:
                body = await request.json()
            except ValueError:
                body = None
            code = str(body.get("code", "")).strip() if isinstance(body, dict) else ""
            if not code:
                return JSONResponse({"error": "code is required"}, status_code=400)
            try:
                sender_id = await gateway.approve_pairing(channel, code)
            except ConfigurationError as exc:
                return JSONResponse({"error": str(exc)}, status_code=409)
            if sender_id is None:
                return JSONResponse({"error": "unknown pairing code"}, status_code=404)
            return JSONResponse({"approved": sender_id})

    @app.api_route("/{path:path}", methods=_WEBHOOK_METHODS)
    async def webhook(request: Request, path: str) -> Response:
        response = await gateway.handle_request(request)
        if response is None:
            return PlainTextResponse("Not Found", status_code=404)
        return response

    if admin_token:
        app.add_middleware(AdminAuthMiddleware, token=admin_token, audit_logger=audit_logger)

    return app
