"""
auth/checks.py -- Profile requirements declared on routes, and their evaluation.

Two declaration points, most specific first:

  @router.get("/admin")
  @check("admin")                     # on the endpoint
  def admin_page(): ...

  reports = APIRouter(dependencies=[Depends(Check("auditor"))])   # on a group
  app.include_router(reports, dependencies=[Depends(Check("auditor"))])

Checks run after FastAPI has routed the request, as dependencies, so they see
the endpoint FastAPI actually selected however deeply its router is nested:

  require_declared_profiles   app-wide dependency (api/main.py); evaluates the
                              endpoint's @check declaration
  Check(...)                  router-level dependency; evaluates its own
                              profiles unless the endpoint declares some

The gate has authenticated every non-exempt connection before routing, so
both only act on connected users.

A failed check whose on_check_failed() hook returns a Response ends the
request: over HTTP by raising ProfileCheckFailed (api/main.py turns it back
into that response), over a WebSocket by closing with code 1008.

Layer rule: no imports from api/ or web/.
"""

import logging
from typing import Callable, Optional, TypeVar

from starlette import status
from starlette.exceptions import WebSocketException
from starlette.requests import HTTPConnection
from starlette.responses import Response

from auth.dependencies import get_security
from auth.security import Security

logger = logging.getLogger("casgate.checks")

PROFILES_ATTR = "__cas_profiles__"

F = TypeVar("F", bound=Callable)


class ProfileCheckFailed(Exception):
    """Carries the response Security.on_check_failed() chose for the request."""

    def __init__(self, response: Response) -> None:
        super().__init__("profile check failed")
        self.response = response


def check(*profiles: str) -> Callable[[F], F]:
    """Declare the profiles required to reach an endpoint.

    Place it below the @router.<method> decorator or above it -- the
    attribute is set on the function object either way.
    """

    def decorator(func: F) -> F:
        setattr(func, PROFILES_ATTR, tuple(profiles))
        return func

    return decorator


def endpoint_requirement(connection: HTTPConnection) -> tuple[str, ...]:
    """Profiles declared with @check on the endpoint routing selected."""
    return getattr(connection.scope.get("endpoint"), PROFILES_ATTR, None) or ()


class AuthorizationChecker:
    """Delegates each declared profile to Security, in declaration order.

    No caching: profiles may depend on state that changes between requests.
    """

    def __init__(self, security: Security) -> None:
        self.security = security

    def run(self, request: HTTPConnection, profiles: tuple[str, ...]) -> Optional[Response]:
        """Return the response that ends the request, or None to let it through."""
        for profile in profiles:
            if self.security.check(request, profile):
                continue
            logger.info("Profile check failed: %r on %s", profile, request.url.path)
            response = self.security.on_check_failed(request, profile)
            if response is not None:
                return response
        return None


def enforce(connection: HTTPConnection, profiles: tuple[str, ...]) -> None:
    """Run the checker for profiles; raise if a failed check ends the request."""
    if not profiles:
        return
    security = get_security(connection)
    if not security.is_connected(connection):
        return

    denied = AuthorizationChecker(security).run(connection, profiles)
    if denied is None:
        return
    if connection.scope["type"] == "websocket":
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Access denied.")
    raise ProfileCheckFailed(denied)


def require_declared_profiles(connection: HTTPConnection) -> None:
    """App-wide dependency enforcing the endpoint's @check declaration."""
    enforce(connection, endpoint_requirement(connection))


class Check:
    """Router-level profile requirement, used as Depends(Check("admin")).

    Skipped when the endpoint declares its own profiles with @check.
    """

    def __init__(self, *profiles: str) -> None:
        self.profiles = tuple(profiles)

    def __call__(self, connection: HTTPConnection) -> None:
        if endpoint_requirement(connection):
            return
        enforce(connection, self.profiles)

    def __repr__(self) -> str:
        return f"Check{self.profiles!r}"
