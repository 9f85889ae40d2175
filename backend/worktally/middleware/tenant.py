"""Tenant middleware: resolves the organization from the JWT on every request.

Flow:
  1. Extract Bearer token from the Authorization header
  2. Decode JWT and read the `organization_id` claim
  3. Validate it is a UUID
  4. Set the ContextVar so DataClient calls made while handling the
     request are scoped to that organization
  5. Clear the ContextVar after the response

Routes that don't need a tenant (onboarding, login, health) work fine
without one.
"""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from worktally.auth.jwt import decode_token
from worktally.tenancy import clear_tenant_context, set_current_tenant, validate_tenant_id

logger = logging.getLogger(__name__)

# Routes that never require auth; an expired token is not rejected here
_PUBLIC_PREFIXES = ("/api/auth/login", "/api/onboarding", "/docs", "/openapi.json", "/health")


class TenantMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        auth_header = request.headers.get("authorization", "")
        path = request.url.path
        clear_tenant_context()

        if auth_header.startswith("Bearer "):
            payload = decode_token(auth_header[7:])
            if not payload:
                if not path.startswith(_PUBLIC_PREFIXES):
                    return JSONResponse(
                        status_code=401,
                        content={"error": {"code": "HTTP_401", "message": "Token expired or invalid"}},
                        headers={"WWW-Authenticate": "Bearer"},
                    )
            elif payload.get("organization_id"):
                try:
                    set_current_tenant(validate_tenant_id(payload["organization_id"]))
                except ValueError:
                    logger.warning(f"Ignoring malformed organization claim for user {payload.get('sub')}")

        try:
            return await call_next(request)
        finally:
            clear_tenant_context()
