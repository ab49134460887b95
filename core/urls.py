"""
urls.py -- Service URL rewriting and CAS redirect URL construction.

The service URL presented to CAS must be identical at login time and at
validation time. CAS appends ?ticket=... (or &ticket=...) to whatever service
URL it was given, so the ticket has to be removed again before the URL is
reused, either for validation or as the post-login redirect target.

strip_ticket() works on the raw query string instead of parse_qsl/urlencode
so every other parameter survives byte for byte -- re-encoding would turn
"a=b%20c" into "a=b+c" and the CAS server would see a different service.
"""

from typing import Optional
from urllib.parse import urlencode

from core.models import TICKET_PARAM


def strip_ticket(url: str, ticket: Optional[str] = None) -> str:
    """Return url with every ticket query parameter removed.

    Handles the ticket as the sole, first, middle, or last parameter. When
    ticket is given, only parameters carrying exactly that value are removed.
    A URL with nothing to remove is returned unchanged (same string), which
    makes the function idempotent.
    """
    head, hash_sign, fragment = url.partition("#")
    base, question_mark, query = head.partition("?")
    if not question_mark:
        return url

    kept: list[str] = []
    removed = False
    for pair in query.split("&"):
        name, _, value = pair.partition("=")
        if name == TICKET_PARAM and (ticket is None or value == ticket):
            removed = True
            continue
        kept.append(pair)

    if not removed:
        return url

    rewritten = base
    if kept:
        rewritten += "?" + "&".join(kept)
    return rewritten + hash_sign + fragment


def build_login_url(login_url: str, service: str, gateway: bool = False, renew: bool = False) -> str:
    """Build the CAS login redirect: <login_url>?service=<urlencoded service>.

    gateway=true asks CAS not to prompt for credentials (it redirects back
    without a ticket if there is no SSO session). renew=true forces a fresh
    credential prompt even when an SSO session exists.
    """
    params: dict[str, str] = {"service": service}
    if gateway:
        params["gateway"] = "true"
    if renew:
        params["renew"] = "true"
    separator = "&" if "?" in login_url else "?"
    return login_url + separator + urlencode(params)
