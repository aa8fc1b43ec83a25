"""Authentication middleware for route protection."""

import logging
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.exceptions import AppError, AuthError, Forbidden, TokenMissing
from core.logging import bind_request_context, clear_request_context

logger = logging.getLogger(__name__)

# Public routes that don't require authentication
PUBLIC_PATHS = frozenset([
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/auth/status",
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/refresh",
    "/api/auth/logout",
])

# Path prefixes that are public
PUBLIC_PREFIXES = (
    "/docs/",
)

DEMO_USER = {
    "user_id": "demo-user",
    "user_email": "demo@renoai.lu",
    "user_role": "user",
}


def error_response(error: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.to_dict()}
    )


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthMiddleware(BaseHTTPMiddleware):
    """Verifies the bearer access token of every protected request.

    An expired token answers 401 ``TOKEN_EXPIRED`` (the client should
    refresh); any other token problem answers 401 ``TOKEN_INVALID`` and the
    client must log in again.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Allow public paths and CORS preflight
        if request.method == "OPTIONS" or self._is_public_path(path):
            return await call_next(request)

        settings = container.settings()
        token = extract_bearer_token(request.headers.get("authorization"))

        if not token:
            # Demo identity for local development only
            if settings.debug and settings.auth_dev_bypass:
                for name, value in DEMO_USER.items():
                    setattr(request.state, name, value)
                return await call_next(request)
            return error_response(TokenMissing())

        user_auth = container.user_auth_service()
        try:
            user = await user_auth.authenticate(token)
        except AppError as e:
            logger.debug(f"Rejected request to {path}: {e.code}")
            return error_response(e)

        # Attach user info to request state for downstream handlers
        request.state.user_id = user.id
        request.state.user_email = user.email
        request.state.user_role = user.role

        clear_request_context()
        bind_request_context(user_id=user.id, path=path)

        return await call_next(request)

    def _is_public_path(self, path: str) -> bool:
        """Check if path is public (no auth required)."""
        if path in PUBLIC_PATHS:
            return True

        for prefix in PUBLIC_PREFIXES:
            if path.startswith(prefix):
                return True

        return False


def get_current_user_id(request: Request) -> str:
    """Dependency returning the authenticated user id."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise AuthError("Authentication required")
    return user_id


def require_role(*roles: str):
    """Dependency factory restricting a route to the given roles."""

    async def check_role(request: Request) -> str:
        role = getattr(request.state, "user_role", None)
        if role is None:
            raise AuthError("Authentication required")
        if role not in roles:
            raise Forbidden()
        return role

    return check_role
