"""
auth/security.py -- The application capability set consulted by the gate.

The gate decides *when* to authenticate and check; Security decides *what*
those answers are for a given application. Subclass Security and pass an
instance to api.main.create_app(security=...) to bind CAS identities to
application accounts, evaluate profiles, and react to login/logout.

Exactly one Security instance is used per application. When none is passed,
this default is used: every username is accepted, every profile is held,
lifecycle hooks only log, and a failed check answers 403.

Hook contract for on_check_failed():
  return a Response  -> the gate returns it and stops checking
  return None        -> the failure is accepted, checking continues with the
                        next declared profile, and if nothing else objects the
                        request reaches its handler

Exceptions raised from any method propagate to the request-handling layer.
The gate has no safe default to substitute for a broken hook.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from typing import Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from core.models import SESSION_USER_KEY, Principal

logger = logging.getLogger("casgate.security")


class Security:
    def authentify(self, request: Request, username: str) -> bool:
        """Decide whether a CAS-validated username may use this application."""
        return True

    def check(self, request: Request, profile: str) -> bool:
        """Decide whether the connected user holds profile."""
        return True

    def is_connected(self, request: Request) -> bool:
        return SESSION_USER_KEY in request.session

    def connected(self, request: Request) -> Optional[str]:
        return request.session.get(SESSION_USER_KEY)

    def on_authenticated(self, request: Request, principal: Principal) -> None:
        logger.debug("onAuthenticated: %s", principal.username)

    def on_disconnected(self, request: Request, username: Optional[str]) -> None:
        logger.debug("onDisconnected: %s", username)

    def on_check_failed(self, request: Request, profile: str) -> Optional[Response]:
        logger.debug("onCheckFailed: %s lacks profile %r", self.connected(request), profile)
        return JSONResponse(
            status_code=403,
            content={"error": {"code": "forbidden", "message": "Access denied.", "detail": profile}},
        )
