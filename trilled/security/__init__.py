"""
Trilled Security Module

Secure error handling and hardening middleware for the HTTP API.
"""

from .error_handlers import error_handler, SecureErrorHandler
from .middleware import SecurityHeadersMiddleware, RequestSizeLimitMiddleware

__all__ = [
    'error_handler',
    'SecureErrorHandler',
    'SecurityHeadersMiddleware',
    'RequestSizeLimitMiddleware'
]
