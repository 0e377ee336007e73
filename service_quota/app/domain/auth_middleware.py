"""
Caller identification for the Quota service.
"""

from typing import Dict, Any, Optional

import jwt
from fastapi import Request

from shared.errors import AuthenticationError
from shared.logging import get_logger, set_user_context


class AuthMiddleware:
    """Bearer token verification.

    Tokens are only used to learn who the caller is (``sub``) and which quota
    tier they belong to (``tier``). Issuing them is somebody else's job.
    """

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm
        self.logger = get_logger("quota.auth_middleware")

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Verify a JWT and map its claims to user info."""
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["sub"]},
            )
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Invalid token: {e}", details={"token_error": str(e)}) from e

        return {
            "user_id": str(claims["sub"]),
            "tenant_id": claims.get("tenant_id"),
            "tier": claims.get("tier"),
        }

    def identify(self, request: Request) -> Optional[Dict[str, Any]]:
        """Attach user info to ``request.state`` when a valid bearer token is present.

        An absent or invalid token leaves the caller anonymous.
        """
        request.state.user_info = None

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        try:
            user_info = self.decode_token(auth_header[7:])
        except AuthenticationError as e:
            self.logger.warning("Bearer token rejected", error=e.message)
            return None

        request.state.user_info = user_info
        set_user_context(user_info["user_id"], user_info.get("tenant_id"))
        return user_info

    def require_user(self, request: Request) -> Dict[str, Any]:
        """FastAPI dependency for endpoints that need an authenticated caller."""
        user_info = getattr(request.state, "user_info", None)
        if not user_info:
            raise AuthenticationError("Valid bearer token required")
        return user_info
