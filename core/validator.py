"""
validator.py -- CAS service ticket validation.

One outbound GET per ticket, against the configured validation endpoint:
  CAS 1.0  /validate              -> "yes\\n<user>\\n" or "no\\n\\n"
  CAS 2.0  /serviceValidate       -> <cas:serviceResponse> XML
  CAS 3.0  /p3/serviceValidate    -> same XML plus <cas:attributes>

validate() never raises for a negative answer. A rejected ticket, an
unreachable server and an unreadable body are all normal outcomes reported
through ValidationResult.failure. Anything else (a bug) propagates.

The validator never touches the session or the flash; that is the gate's job.
"""

import logging
from typing import Any, Optional, Union
from xml.etree import ElementTree

import requests

from core.config import Settings
from core.models import FailureReason, Principal, ValidationFailure, ValidationResult

logger = logging.getLogger("casgate.validator")

CAS_NS = "{http://www.yale.edu/tp/cas}"


def _ticket_hint(ticket: str) -> str:
    """Shorten a ticket for log output. Full tickets are bearer credentials."""
    return ticket[:8] + "..." if len(ticket) > 8 else ticket


def _failure(reason: FailureReason, message: str, code: Optional[str] = None) -> ValidationResult:
    return ValidationResult(failure=ValidationFailure(reason=reason, message=message, code=code))


def parse_cas1_response(body: str) -> ValidationResult:
    """Parse a CAS 1.0 /validate body."""
    lines = body.splitlines()
    if not lines:
        return _failure(FailureReason.MALFORMED, "empty CAS 1.0 response")
    verdict = lines[0].strip()
    if verdict == "no":
        return _failure(FailureReason.REJECTED, "ticket rejected by CAS")
    if verdict != "yes":
        return _failure(FailureReason.MALFORMED, f"unexpected CAS 1.0 verdict {verdict!r}")
    username = lines[1].strip() if len(lines) > 1 else ""
    if not username:
        return _failure(FailureReason.MALFORMED, "CAS 1.0 success without a username")
    return ValidationResult(principal=Principal(username=username))


def _collect_attributes(element: Optional[ElementTree.Element]) -> dict[str, Any]:
    """Turn <cas:attributes> children into a dict; repeated names become lists."""
    attributes: dict[str, Any] = {}
    if element is None:
        return attributes
    for child in element:
        name = child.tag.split("}").pop()
        value = (child.text or "").strip()
        if name in attributes:
            existing = attributes[name]
            if isinstance(existing, list):
                existing.append(value)
            else:
                attributes[name] = [existing, value]
        else:
            attributes[name] = value
    return attributes


def parse_service_response(body: Union[str, bytes]) -> ValidationResult:
    """Parse a CAS 2.0/3.0 <cas:serviceResponse> document."""
    try:
        tree = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        return _failure(FailureReason.MALFORMED, f"unparsable CAS response: {e}")

    success = tree.find(CAS_NS + "authenticationSuccess")
    if success is not None:
        user = success.find(CAS_NS + "user")
        username = (user.text or "").strip() if user is not None else ""
        if not username:
            return _failure(FailureReason.MALFORMED, "authenticationSuccess without cas:user")
        attributes = _collect_attributes(success.find(CAS_NS + "attributes"))
        return ValidationResult(principal=Principal(username=username, attributes=attributes))

    failure = tree.find(CAS_NS + "authenticationFailure")
    if failure is not None:
        return _failure(
            FailureReason.REJECTED,
            (failure.text or "").strip() or "ticket rejected by CAS",
            code=failure.get("code"),
        )

    return _failure(FailureReason.MALFORMED, f"unexpected CAS response element {tree.tag!r}")


class TicketValidator:
    """Validates service tickets against one CAS server.

    Holds a requests.Session for connection pooling across validations.
    max_redirects=3 replaces the requests default of 30 -- the validation URL
    is a fixed, configured endpoint and should not wander.
    """

    def __init__(
        self,
        validate_url: str,
        version: str = "2",
        timeout: float = 10.0,
        renew: bool = False,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.validate_url = validate_url
        self.version = version
        self.timeout = timeout
        self.renew = renew
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "TicketValidator":
        return cls(
            validate_url=settings.cas_validate_url,
            version=settings.cas_version,
            timeout=settings.cas_validate_timeout,
            renew=settings.cas_renew,
        )

    def validate(self, ticket: str, service: str) -> ValidationResult:
        """Ask the CAS server whether ticket was issued for service."""
        params = {"service": service, "ticket": ticket}
        if self.renew:
            params["renew"] = "true"
        logger.debug("Validating ticket %s for service %s", _ticket_hint(ticket), service)
        try:
            resp = self._session.get(self.validate_url, params=params, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("CAS validation request failed for %s: %s", service, e)
            return _failure(FailureReason.TRANSPORT, str(e))

        if self.version == "1":
            result = parse_cas1_response(resp.text)
        else:
            result = parse_service_response(resp.content)

        if result.ok:
            logger.info("CAS validated ticket %s for user %s", _ticket_hint(ticket), result.principal.username)
        else:
            logger.info(
                "CAS did not validate ticket %s: %s (%s)",
                _ticket_hint(ticket),
                result.failure.reason.value,
                result.failure.message,
            )
        return result

    def close(self) -> None:
        self._session.close()
