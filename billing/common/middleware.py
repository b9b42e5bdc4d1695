"""
Middleware for handling multi-tenancy
"""
from fastapi import Request, status
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import UUID
import logging

logger = logging.getLogger(__name__)


class TenantMiddleware(BaseHTTPMiddleware):
    """
    Middleware that extracts tenant_id from X-Company-ID header
    and sets it on request.state for use in endpoint handlers
    """

    # Paths that don't require tenant context
    EXEMPT_PATHS = [
        "/docs",
        "/redoc",
        "/openapi.json",
        "/health",
        # Endpoints públicos de firma: el token es la credencial
        "/signatures/validate/",
        "/signatures/submit",
        "/signatures/status/",
    ]

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path == "/" or any(path.startswith(p) for p in self.EXEMPT_PATHS):
            return await call_next(request)

        # Skip for OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        tenant_header = request.headers.get("X-Company-ID")

        if not tenant_header:
            return Response(
                content='{"error":"validation_error","detail":"Missing X-Company-ID header"}',
                status_code=status.HTTP_400_BAD_REQUEST,
                media_type="application/json"
            )

        try:
            tenant_id = UUID(tenant_header)
        except ValueError:
            return Response(
                content='{"error":"validation_error","detail":"Invalid X-Company-ID format. Must be a valid UUID"}',
                status_code=status.HTTP_400_BAD_REQUEST,
                media_type="application/json"
            )

        request.state.tenant_id = tenant_id
        logger.debug(f"Request to {path} with tenant_id: {tenant_id}")

        response = await call_next(request)
        response.headers["X-Tenant-ID"] = str(tenant_id)
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers for production
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response
