"""ASGI middleware guarding operator endpoints with a Bearer token.

Webhook paths authenticate with the provider's HMAC signature instead,
so only the paths listed in ``protected_paths`` are checked here.
"""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from src.audit.logger import AuditLogger
from src.models import AuditEvent, AuditEventType, RiskLevel


class AuthMiddleware:
    """Validates Bearer tokens using constant-time comparison."""

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        protected_paths: frozenset[str],
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self.app = app
        self._token = token.encode()
        self._protected_paths = protected_paths
        self.audit_logger = audit_logger

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] not in self._protected_paths:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        auth_header = request.headers.get("authorization", "")

        if not auth_header.startswith("Bearer "):
            self._log(request, "failure", {"reason": "missing_token"})
            response = JSONResponse({"error": "Authentication required"}, status_code=401)
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(auth_header[7:].encode(), self._token):
            self._log(request, "failure", {"reason": "invalid_token"})
            response = JSONResponse({"error": "Access denied"}, status_code=403)
            await response(scope, receive, send)
            return

        self._log(request, "success")
        await self.app(scope, receive, send)

    def _log(
        self, request: Request, result: str, details: dict[str, object] | None = None,
    ) -> None:
        if not self.audit_logger:
            return
        success = result == "success"
        self.audit_logger.log(AuditEvent(
            event_type=AuditEventType.AUTH_SUCCESS if success else AuditEventType.AUTH_FAILURE,
            source_ip=request.client.host if request.client else None,
            action=f"{request.method} {request.url.path}",
            result=result,
            risk_level=RiskLevel.INFO if success else RiskLevel.HIGH,
            details=details,
        ))
