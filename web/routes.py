"""
web/routes.py -- Browser-facing CAS routes. All of them bypass the gate.

Mounted by asgi.py under settings.cas_route_prefix (default "/cas"). The gate
computes its exempt paths from the same prefix, so the two always agree.

Routes:
  GET      /cas/login          -- start a CAS login; ?next=/path to resume there
  GET|POST /cas/logout         -- clear the session, redirect to CAS logout
  GET      /cas/fail           -- failure action; 401 JSON error envelope
  GET      /cas/authenticate   -- two-step CAS callback (404 in single-step mode)

The state machine itself lives in auth/gate.py; these handlers only look the
gate up on app.state and delegate.

Layer rule: web/ imports from auth/ and core/, and from api/ only the shared
limiter and the response models. api/ never imports from web/.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from api.limiter import limiter
from api.models import AuthFailureResponse, ErrorDetail
from auth.flash import RESUME_PARAMS, get_flash, pop_resume_url
from auth.gate import AccessGate

logger = logging.getLogger("casgate.web")

router = APIRouter()

# Whitelist mapping for flash "error" codes.
# Only messages from this dict reach the response body; an unknown code falls
# back to the generic entry.
_ERROR_MESSAGES: dict[str, str] = {
    "cas_rejected": "The CAS server did not accept the service ticket.",
    "cas_unavailable": "The CAS server could not be reached. Please try again.",
    "cas_malformed": "The CAS server returned a response that could not be read.",
    "not_authorized": "Your account is not authorized to use this application.",
    "missing_ticket": "The CAS server did not return a service ticket.",
    "authentication_failed": "Authentication failed.",
}


def _gate(request: Request) -> AccessGate:
    return request.app.state.cas_gate


@router.get("/login", name="cas_login")
def login(request: Request) -> Response:
    """Redirect to the CAS login page (or straight to ?next= if already logged in)."""
    return _gate(request).login(request)


@router.api_route("/logout", methods=["GET", "POST"], name="cas_logout")
def logout(request: Request) -> Response:
    """Clear the local session and hand the browser to the CAS logout page."""
    return _gate(request).logout(request)


@router.get("/fail", response_model=AuthFailureResponse, name="cas_fail")
def fail(request: Request) -> JSONResponse:
    """Report why the CAS round trip did not produce a session."""
    flash = get_flash(request)
    code = flash.get("error")
    if code not in _ERROR_MESSAGES:
        code = "authentication_failed"
    body = AuthFailureResponse(
        error=ErrorDetail(code=code, message=_ERROR_MESSAGES[code]),
        retry_url=pop_resume_url(flash),
        params=flash.get(RESUME_PARAMS) or {},
    )
    resp = JSONResponse(status_code=401, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit("30/minute")  # one outbound CAS call per hit -- must be ABOVE @router
@router.get("/authenticate", name="cas_authenticate")
async def authenticate(request: Request) -> Response:
    """Two-step CAS callback: validate ?ticket=, then resume the original URL."""
    gate = _gate(request)
    if not gate.settings.cas_dedicated_callback:
        raise HTTPException(status_code=404)
    return await gate.authenticate(request)
