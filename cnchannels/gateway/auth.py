"""ASGI middleware guarding the operator endpoints with a Bearer token."""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from cnchannels.audit.logger import AuditLogger
from cnchannels.models import AuditEvent, AuditEventType, RiskLevel

# Webhook paths stay public; provider signatures authenticate them.
ADMIN_PATHS = ("/status", "/pairing")


def is_admin_path(path: str) -> bool:
    """Match admin paths by whole segment, so /pairing-feishu stays public."""
    return any(path == prefix or path.startswith(f"{prefix}/") for prefix in ADMIN_PATHS)


class AdminAuthMiddleware:
    """Validates Bearer tokens on admin paths using constant-time comparison."""

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.app = app
        self._token = token.encode()
        self.audit_logger = audit_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if not is_admin_path(path):
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            response = JSONResponse({"error": "Authentication required"}, status_code=401)
            self._log_failure(request, "missing_token" if not auth_header else "invalid_format")
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(auth_header[7:].encode(), self._token):
            response = JSONResponse({"error": "Access denied"}, status_code=403)
            self._log_failure(request, "invalid_token")
            await response(scope, receive, send)
            return

        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.ADMIN_AUTH_SUCCESS,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {path}",
                result="success",
                risk_level=RiskLevel.INFO,
            ))

        await self.app(scope, receive, send)

    def _log_failure(self, request: Request, reason: str) -> None:
        if self.audit_logger:
            self.audit_logger.log(AuditEvent(
                event_type=AuditEventType.ADMIN_AUTH_FAILURE,
                source_ip=request.client.host if request.client else None,
                action=f"{request.method} {request.url.path}",
                result="failure",
                risk_level=RiskLevel.HIGH,
                details={"reason": reason},
            ))
