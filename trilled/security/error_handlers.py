"""
Secure Error Handlers

Client errors keep the message the endpoint chose; server errors are
replaced by a generic message so internals are never exposed.
"""

import logging
import traceback
from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

logger = logging.getLogger(__name__)


class SecureErrorHandler:
    """Handles errors securely without leaking sensitive information"""

    def __init__(self, debug_mode: bool = False):
        self.debug_mode = debug_mode

        self.safe_error_messages = {
            400: "Bad request - please check your input",
            401: "Authentication required",
            403: "Access denied - insufficient permissions",
            404: "Resource not found",
            422: "Invalid request data",
            500: "Internal server error",
            502: "Service temporarily unavailable",
            503: "Service unavailable",
        }

        self.sensitive_patterns = [
            'database', 'sql', 'postgresql', 'connection',
            'secret', 'password',
            'traceback', 'sqlalchemy', 'asyncpg'
        ]

    async def handle_http_exception(self, request: Request, exc: HTTPException) -> JSONResponse:
        status_code = exc.status_code
        client_ip = self._get_client_ip(request)
        logger.warning(
            f"HTTP {status_code} error: {request.method} {request.url.path} "
            f"from {client_ip} - {str(exc.detail)}"
        )

        if status_code < 500 and isinstance(exc.detail, str) and not self._is_sensitive(exc.detail):
            detail = exc.detail
        else:
            detail = self.safe_error_messages.get(status_code, "An error occurred while processing your request")

        return JSONResponse(
            status_code=status_code,
            content={"detail": detail, "status_code": status_code},
            headers=getattr(exc, "headers", None)
        )

    async def handle_validation_error(self, request: Request, exc: RequestValidationError) -> JSONResponse:
        client_ip = self._get_client_ip(request)
        logger.warning(
            f"Validation error: {request.method} {request.url.path} "
            f"from {client_ip} - {len(exc.errors())} errors"
        )

        safe_errors = [
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "message": error.get("msg", "Invalid value")
            }
            for error in exc.errors()[:10]
        ]

        return JSONResponse(
            status_code=422,
            content={"detail": "Invalid request data", "errors": safe_errors}
        )

    async def handle_internal_error(self, request: Request, exc: Exception) -> JSONResponse:
        client_ip = self._get_client_ip(request)
        logger.error(
            f"Internal server error: {request.method} {request.url.path} "
            f"from {client_ip} - {type(exc).__name__}: {str(exc)}"
        )
        if self.debug_mode:
            logger.error(f"Traceback: {traceback.format_exc()}")

        response_data = {"detail": "Internal server error", "type": "internal_error"}
        if self.debug_mode:
            response_data["error_type"] = type(exc).__name__

        return JSONResponse(status_code=500, content=response_data)

    def _is_sensitive(self, message: str) -> bool:
        lowered = message.lower()
        return any(pattern in lowered for pattern in self.sensitive_patterns)

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(',')[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"


# Global error handler instance
error_handler = SecureErrorHandler(debug_mode=False)
