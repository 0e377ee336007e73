"""
Domain utilities for the Quota Service.

Includes cross-cutting request processing helpers that do not belong to
the rate limiting package itself.
"""

from .auth_middleware import AuthMiddleware

__all__ = [
    "AuthMiddleware",
]
