"""
Authentication middleware.

Runs on every request (except PUBLIC_ROUTES):
  1. Decode the bearer JWT → extract sub, org_slug, role
  2. Set request.state.user, user_id, org_slug, user_role

Permission checks happen per route (see venue.rbac.decorators), against
permissions loaded fresh from the store.
"""

from fastapi import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from venue.auth.helpers import decode_access_token
from venue.utils import error_response


PUBLIC_ROUTES = [
    "/login",
    "/health",
    "/openapi.json",
    "/api/docs",
    "/redoc",
]


def _unauthorized(detail: str) -> JSONResponse:
    response = error_response(message=detail, code=401)
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


class AuthPermissionMiddleware(BaseHTTPMiddleware):
    """Verifies the JWT and populates request.state for downstream handlers."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path
        if any(path.endswith(route) for route in PUBLIC_ROUTES):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            return _unauthorized("Missing Authorization header")

        if not auth_header.startswith("Bearer "):
            return _unauthorized("Invalid token format. Expected 'Bearer <token>'")

        token = auth_header.split(" ", 1)[1].strip()

        try:
            payload = decode_access_token(token)
        except HTTPException as e:
            return _unauthorized(e.detail)

        if not payload.get("sub") or not payload.get("org_slug"):
            return _unauthorized("Token is missing subject or organization")

        request.state.user = payload
        request.state.user_id = payload["sub"]
        request.state.org_slug = payload["org_slug"]
        request.state.user_role = payload.get("role")

        return await call_next(request)
