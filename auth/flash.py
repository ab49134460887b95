"""
auth/flash.py -- Single-redirect scratch storage and resume-URL preservation.

Flash lives inside the signed session cookie under FLASH_KEY but has its own
two-phase lifetime:

  request N     put("url", "/reports")      -> written to the outgoing bucket
  request N+1   get("url") == "/reports"    -> read from the incoming bucket
  end of N+1    not re-put, not kept        -> gone

The gate loads a Flash at the start of every request (Flash.load pops the
stored bucket so it cannot leak into request N+2) and commits the outgoing
bucket back into the session after the response is produced. Route handlers
reach the same object through request.state.flash.

Values must be JSON-serializable -- Starlette's SessionMiddleware stores the
session as base64 JSON.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

from typing import Any, MutableMapping

from starlette.requests import Request

from core.models import TICKET_PARAM

FLASH_KEY = "_flash"

RESUME_URL = "url"
RESUME_PARAMS = "params"


class Flash:
    def __init__(self, incoming: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(incoming or {})
        self._out: dict[str, Any] = {}

    @classmethod
    def load(cls, session: MutableMapping[str, Any]) -> Flash:
        return cls(session.pop(FLASH_KEY, None))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def put(self, key: str, value: Any) -> None:
        """Make value readable now and during the next request."""
        self._data[key] = value
        self._out[key] = value

    def keep(self, key: str | None = None) -> None:
        """Carry an incoming value (or all of them) over one more request."""
        if key is None:
            self._out.update(self._data)
        elif key in self._data:
            self._out[key] = self._data[key]

    def discard(self, key: str) -> None:
        self._data.pop(key, None)
        self._out.pop(key, None)

    def commit(self, session: MutableMapping[str, Any]) -> None:
        if self._out:
            session[FLASH_KEY] = dict(self._out)
        else:
            session.pop(FLASH_KEY, None)


def get_flash(request: Request) -> Flash:
    """Return the Flash the gate attached to this request.

    Falls back to an empty, uncommitted Flash when the gate middleware is not
    installed (e.g. a route mounted outside the gated app), so callers never
    need a None check.
    """
    flash = getattr(request.state, "flash", None)
    if flash is None:
        flash = Flash()
        request.state.flash = flash
    return flash


# ---------------------------------------------------------------------------
# Resume URL preservation
# ---------------------------------------------------------------------------


def safe_path(url: str | None) -> str:
    """Accept only server-relative paths as redirect targets.

    Rejects absolute URLs and protocol-relative "//host" URLs, either of which
    would turn the post-login redirect into an open redirect.
    """
    if url and url.startswith("/") and not url.startswith("//"):
        return url
    return "/"


def resume_target(request: Request) -> str:
    """Return the URL to come back to after the CAS round trip.

    Only GET requests are resumed as-is. Replaying a POST body (or any other
    method) after a redirect is not possible, so those resume at the root.
    """
    if request.method != "GET":
        return "/"
    url = request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


def request_params(request: Request) -> dict[str, str | list[str]]:
    """Query parameters minus the ticket, for retry after a failed login.

    A name given once maps to its value; a repeated name maps to the list of
    its values in request order.
    """
    params: dict[str, str | list[str]] = {}
    for name in request.query_params:
        if name == TICKET_PARAM:
            continue
        values = request.query_params.getlist(name)
        params[name] = values[0] if len(values) == 1 else values
    return params


def preserve_resume_url(request: Request, flash: Flash, with_params: bool = False) -> str:
    url = resume_target(request)
    flash.put(RESUME_URL, url)
    if with_params:
        flash.put(RESUME_PARAMS, request_params(request))
    return url


def pop_resume_url(flash: Flash) -> str:
    """Read the resume URL, defaulting to "/".

    The flash entry is consumed by the read unless the caller keeps it. A
    missing entry covers flash expiry, direct navigation to the callback
    route, and an SSO session that was already valid at first touch.
    """
    return safe_path(flash.get(RESUME_URL))
