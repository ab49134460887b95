"""
auth/gate.py -- The CAS access gate: per-request authentication state machine.

Every request except the exempt ones goes through AccessGate.filter():

  UNAUTHENTICATED --(no ticket)---------------------> 302 CAS login
  UNAUTHENTICATED --(ticket, single-step)--> VALIDATING
  VALIDATING      --(valid + authentified)-> AUTHENTICATED -> 302 resume URL
  VALIDATING      --(anything else)--------> DENIED        -> 302 failure route
  AUTHENTICATED   --------------------------------> routing, then profile
                                                     checks (auth/checks.py)

Two protocol shapes share this machine, selected by
settings.cas_dedicated_callback:

  single-step (False)  CAS redirects back to the originally requested URL
                       with ?ticket=..., and filter() validates inline.
  two-step    (True)   CAS redirects to <prefix>/authenticate, and
                       authenticate() validates and resumes from flash.

Exempt routes (login, logout, fail, and the callback in two-step mode) plus
settings.cas_exempt_paths bypass filter() entirely but still get a Flash.

WebSocket connections go through the same gate. A handshake cannot be
redirected, so one without a session is closed with code 1008 before it
reaches the endpoint. WebSockets never touch the flash: they cannot set the
session cookie.

Ordering: the gate must sit inside Starlette's SessionMiddleware, which is
why api/main.py registers SessionMiddleware after it.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from starlette import status
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection, Request
from starlette.responses import RedirectResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from auth.flash import (
    RESUME_PARAMS,
    RESUME_URL,
    Flash,
    get_flash,
    pop_resume_url,
    preserve_resume_url,
    request_params,
    safe_path,
)
from auth.security import Security
from core.config import Settings
from core.models import SESSION_USER_KEY, TICKET_PARAM, FailureReason, Principal, ValidationResult
from core.urls import build_login_url, strip_ticket
from core.validator import TicketValidator

logger = logging.getLogger("casgate.gate")


def _current_url(request: Request) -> str:
    url = request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


class GateState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    VALIDATING = "validating"
    AUTHENTICATED = "authenticated"
    DENIED = "denied"


# Flash "error" codes. web/routes.py maps them to user-facing messages.
ERROR_CODES: dict[FailureReason, str] = {
    FailureReason.TRANSPORT: "cas_unavailable",
    FailureReason.REJECTED: "cas_rejected",
    FailureReason.MALFORMED: "cas_malformed",
}
NOT_AUTHORIZED = "not_authorized"
MISSING_TICKET = "missing_ticket"


class AccessGate:
    def __init__(self, settings: Settings, validator: TicketValidator, security: Optional[Security] = None) -> None:
        self.settings = settings
        self.validator = validator
        self.security = security or Security()

        prefix = settings.cas_route_prefix
        self.login_path = f"{prefix}/login"
        self.logout_path = f"{prefix}/logout"
        self.fail_path = f"{prefix}/fail"
        self.callback_path = f"{prefix}/authenticate"

        exempt = {self.login_path, self.logout_path, self.fail_path, *settings.cas_exempt_paths}
        if settings.cas_dedicated_callback:
            exempt.add(self.callback_path)
        self.exempt_paths = frozenset(exempt)

    # ------------------------------------------------------------------
    # Middleware entry point
    # ------------------------------------------------------------------

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    async def handle_http(self, scope: Scope, receive: Receive, send: Send, app: ASGIApp) -> None:
        request = Request(scope, receive)
        flash = Flash.load(request.session)
        request.state.flash = flash

        async def send_with_flash(message: Message) -> None:
            # SessionMiddleware serializes the session on response start.
            if message["type"] == "http.response.start":
                flash.commit(request.session)
            await send(message)

        response = None
        if not self.is_exempt(request.url.path):
            response = await self.filter(request)
        if response is None:
            await app(scope, receive, send_with_flash)
        else:
            await response(scope, receive, send_with_flash)

    async def handle_websocket(self, scope: Scope, receive: Receive, send: Send, app: ASGIApp) -> None:
        connection = HTTPConnection(scope)
        if self.is_exempt(connection.url.path) or SESSION_USER_KEY in connection.session:
            await app(scope, receive, send)
            return
        self._transition(connection, GateState.DENIED)
        logger.info("WebSocket %s refused: no CAS session", connection.url.path)
        await WebSocketClose(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication required.")(
            scope, receive, send
        )

    async def filter(self, request: Request) -> Optional[Response]:
        """Return the response that answers an unauthenticated request.

        None means the request holds a session and goes on to routing.
        """
        logger.debug("CAS filter for %s %s", request.method, request.url.path)
        if SESSION_USER_KEY in request.session:
            self._transition(request, GateState.AUTHENTICATED)
            return None

        flash = get_flash(request)
        self._transition(request, GateState.UNAUTHENTICATED)
        if self.settings.cas_dedicated_callback:
            preserve_resume_url(request, flash, with_params=True)
            return self._redirect_to_cas(request, gateway=self.settings.cas_gateway)

        resume = preserve_resume_url(request, flash)
        ticket = request.query_params.get(TICKET_PARAM)
        if ticket is None:
            return self._redirect_to_cas(request, resume=resume)
        return await self._validate_inline(request, flash, ticket, resume)

    # ------------------------------------------------------------------
    # Exempt route actions (called from web/routes.py)
    # ------------------------------------------------------------------

    def login(self, request: Request) -> Response:
        """Start a CAS login explicitly, resuming at ?next= afterwards."""
        next_url = safe_path(request.query_params.get("next"))
        if SESSION_USER_KEY in request.session:
            return RedirectResponse(next_url, status_code=302)
        get_flash(request).put(RESUME_URL, next_url)
        return self._redirect_to_cas(request, resume=next_url)

    def logout(self, request: Request) -> Response:
        username = request.session.get(SESSION_USER_KEY)
        request.session.clear()
        self.security.on_disconnected(request, username)
        logger.info("User %s logged out", username)
        return RedirectResponse(self.settings.cas_logout_url, status_code=302)

    async def authenticate(self, request: Request) -> Response:
        """Two-step callback: CAS sends the browser here with ?ticket=..."""
        flash = get_flash(request)
        ticket = request.query_params.get(TICKET_PARAM)
        if not ticket:
            logger.info("CAS callback reached without a ticket")
            return self._deny(request, flash, MISSING_TICKET)

        self._transition(request, GateState.VALIDATING)
        service = self._service_url(request, strip_ticket(_current_url(request)))
        result: ValidationResult = await run_in_threadpool(self.validator.validate, ticket, service)
        if not result.ok:
            return self._deny(request, flash, ERROR_CODES[result.failure.reason])
        if not self._establish_session(request, result.principal):
            return self._deny(request, flash, NOT_AUTHORIZED)

        url = pop_resume_url(flash)
        flash.discard(RESUME_PARAMS)
        logger.debug("Redirecting to resume URL %s", url)
        return RedirectResponse(url, status_code=302)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _validate_inline(self, request: Request, flash: Flash, ticket: str, resume: str) -> Response:
        """Single-step: the ticket arrived on the originally requested URL."""
        self._transition(request, GateState.VALIDATING)
        resume = strip_ticket(resume)
        flash.put(RESUME_URL, resume)
        flash.put(RESUME_PARAMS, request_params(request))

        service = self._service_url(request, strip_ticket(_current_url(request)))
        result: ValidationResult = await run_in_threadpool(self.validator.validate, ticket, service)
        if not result.ok:
            return self._deny(request, flash, ERROR_CODES[result.failure.reason])
        if not self._establish_session(request, result.principal):
            return self._deny(request, flash, NOT_AUTHORIZED)

        flash.discard(RESUME_URL)
        flash.discard(RESUME_PARAMS)
        logger.debug("Redirecting to resume URL %s", resume)
        return RedirectResponse(safe_path(resume), status_code=302)

    def _establish_session(self, request: Request, principal: Principal) -> bool:
        if not self.security.authentify(request, principal.username):
            logger.info("User %s validated by CAS but refused by authentify()", principal.username)
            return False
        request.session[SESSION_USER_KEY] = principal.username
        self._transition(request, GateState.AUTHENTICATED)
        logger.info("User %s is authenticated", principal.username)
        self.security.on_authenticated(request, principal)
        return True

    def _deny(self, request: Request, flash: Flash, error_code: str) -> Response:
        """Send the browser to the failure route, keeping what a retry needs."""
        self._transition(request, GateState.DENIED)
        flash.keep(RESUME_URL)
        flash.keep(RESUME_PARAMS)
        flash.put("error", error_code)
        return RedirectResponse(self.fail_path, status_code=302)

    def _redirect_to_cas(self, request: Request, resume: str = "/", gateway: bool = False) -> Response:
        if self.settings.cas_dedicated_callback:
            service = self._service_url(request, self.callback_path)
        else:
            service = self._service_url(request, resume)
        url = build_login_url(self.settings.cas_login_url, service, gateway=gateway, renew=self.settings.cas_renew)
        logger.debug("Redirecting to CAS: %s", url)
        return RedirectResponse(url, status_code=302)

    def _base_url(self, request: Request) -> str:
        if self.settings.cas_service_base_url:
            return self.settings.cas_service_base_url
        return f"{request.url.scheme}://{request.url.netloc}"

    def _service_url(self, request: Request, path: str) -> str:
        return self._base_url(request) + path

    @staticmethod
    def _transition(connection: HTTPConnection, state: GateState) -> None:
        connection.state.cas_state = state
        logger.debug("%s %s -> %s", connection.scope.get("method", "WS"), connection.url.path, state.value)


class CASGateMiddleware:
    """ASGI adapter: app.add_middleware(CASGateMiddleware, gate=gate).

    Gates http and websocket scopes. Lifespan events pass straight through.
    """

    def __init__(self, app: ASGIApp, gate: AccessGate) -> None:
        self.app = app
        self.gate = gate

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            await self.gate.handle_http(scope, receive, send, self.app)
        elif scope["type"] == "websocket":
            await self.gate.handle_websocket(scope, receive, send, self.app)
        else:
            await self.app(scope, receive, send)
