"""
HTTP middleware: response hardening headers and a request body size cap.
"""

import logging
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

# The API serves JSON, TwiML and one small HTML error page; nothing needs scripts or framing
DEFAULT_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to every response"""

    def __init__(self, app: ASGIApp, headers: dict = None):
        super().__init__(app)
        self.security_headers = dict(headers or DEFAULT_SECURITY_HEADERS)

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        for header, value in self.security_headers.items():
            response.headers.setdefault(header, value)

        if response.headers.get("content-type", "").startswith("application/json"):
            response.headers["Cache-Control"] = "no-store"

        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared Content-Length exceeds max_size bytes"""

    def __init__(self, app: ASGIApp, max_size: int = 10 * 1024 * 1024):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})

            if size > self.max_size:
                client_host = request.client.host if request.client else "unknown"
                logger.warning(f"🚫 Request size limit exceeded: {size} bytes from {client_host}")
                return JSONResponse(
                    status_code=413,
                    content={
                        "detail": "Request payload too large",
                        "max_size_mb": self.max_size // (1024 * 1024)
                    }
                )

        return await call_next(request)
