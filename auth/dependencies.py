"""
auth/dependencies.py -- FastAPI Depends() helpers for the connected user.

The gate has already authenticated every non-exempt request before FastAPI
resolves dependencies, so on gated routes these never fail. They exist for
handlers that want the username without reaching into the session, and for
exempt routes, where a missing session is a normal state.

try_get_connected_user() is the soft variant (returns None).
get_connected_user() wraps it and raises HTTP 401 if nobody is connected.

Layer rule: no imports from web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from auth.security import Security


def get_security(request: HTTPConnection) -> Security:
    """Return the Security instance the gate was built with."""
    return request.app.state.cas_gate.security


def try_get_connected_user(request: Request) -> str | None:
    """Return the connected username, or None. Never raises."""
    security = get_security(request)
    if not security.is_connected(request):
        return None
    return security.connected(request)


def get_connected_user(request: Request) -> str:
    """Require a CAS session. Raises HTTP 401 if there is none.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(username: str = Depends(get_connected_user)): ...
    """
    username = try_get_connected_user(request)
    if username is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return username
