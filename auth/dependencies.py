"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two transports are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login endpoint.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a SessionAssertion. Permission checks read the assertion's
permission snapshot, so no registry lookup happens per request.

try_get_session() is the soft variant (returns None on failure).
get_session() wraps it and raises HTTP 401 if unauthenticated.
require_permission(*perms) builds a dependency that raises 403 unless the
session holds at least one of perms.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth import policy
from auth.errors import PermissionDenied
from auth.models import SessionAssertion
from auth.tokens import decode_session


def try_get_session(request: Request) -> SessionAssertion | None:
    """Return the request's SessionAssertion, or None if there is no valid one."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None
    return decode_session(token)


def get_session(request: Request) -> SessionAssertion:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionAssertion = Depends(get_session)): ...
    """
    session = try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session


def require_permission(*permissions: str) -> Callable[[Request], SessionAssertion]:
    """Return a dependency requiring a session that holds any of permissions."""

    def dependency(request: Request) -> SessionAssertion:
        session = get_session(request)
        if not policy.has_any_permission(session, permissions):
            raise PermissionDenied()
        return session

    return dependency
