"""
Declarative permission decorators for route handlers.

Usage:
    @router.get("/")
    @require_permission("receipts:manage")
    async def list_rules(request: Request, db = Depends(get_database)):
        ...
"""

from functools import wraps

from fastapi import HTTPException, status
from starlette.requests import Request

from venue.config import get_database
from venue.utils import NotAuthenticatedError, PermissionDeniedError
from .permissions import PermissionService, check_permission


async def load_permission_map(request: Request, db) -> dict[str, set[str]]:
    """Resolve (once per request) the caller's permission map."""
    cached = getattr(request.state, "permission_map", None)
    if cached is not None:
        return cached

    user_id = getattr(request.state, "user_id", None)
    org_slug = getattr(request.state, "org_slug", None)
    if not user_id or not org_slug:
        raise NotAuthenticatedError()

    permission_map = await PermissionService(db, org_slug).get_permission_map(user_id)
    request.state.permission_map = permission_map
    return permission_map


def require_permission(permission: str):
    """
    Decorator that checks the current user (set by middleware on
    request.state) holds `permission`.

    Must be applied AFTER the route decorator.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request: Request | None = kwargs.get("request")
            if request is None:
                for arg in args:
                    if isinstance(arg, Request):
                        request = arg
                        break

            if request is None:
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Request object not found in handler",
                )

            db = kwargs.get("db")
            if db is None:
                db = await get_database()

            permission_map = await load_permission_map(request, db)
            if not check_permission(permission_map, permission):
                raise PermissionDeniedError(f"Permission denied. Requires: {permission}")

            return await func(*args, **kwargs)

        return wrapper

    return decorator
