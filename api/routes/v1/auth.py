"""
api/routes/v1/auth.py -- Session introspection endpoints.

Routes:
  GET /api/v1/auth/me      -- connected username (gated: no session -> CAS login)
  GET /api/v1/auth/status  -- whether a CAS session exists (public)

Auth policy:
- GET /api/v1/auth/me:      behind the CAS gate; get_connected_user never fails here
- GET /api/v1/auth/status:  listed in settings.cas_exempt_paths by default so
                            front-end code can probe without triggering a redirect
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import MeResponse, SessionStatusResponse
from auth.dependencies import get_connected_user, get_security

router = APIRouter()


@router.get("/auth/me", response_model=MeResponse)
async def me(username: str = Depends(get_connected_user)) -> MeResponse:
    """Return the username of the current CAS session."""
    return MeResponse(username=username)


@router.get("/auth/status", response_model=SessionStatusResponse)
async def status(request: Request) -> SessionStatusResponse:
    """Report whether the caller holds a CAS session, without redirecting."""
    security = get_security(request)
    connected = security.is_connected(request)
    return SessionStatusResponse(
        connected=connected,
        username=security.connected(request) if connected else None,
    )
