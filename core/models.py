from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Query parameter CAS appends to the service URL when it redirects back.
TICKET_PARAM = "ticket"

# Session key whose presence means "authenticated". Nothing else in the
# session is consulted by the gate.
SESSION_USER_KEY = "username"


class FailureReason(str, Enum):
    TRANSPORT = "transport"  # network error or non-2xx from the CAS server
    REJECTED = "rejected"  # CAS answered: ticket not valid for this service
    MALFORMED = "malformed"  # CAS answered something we could not read


@dataclass
class Principal:
    username: str
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationFailure:
    reason: FailureReason
    message: str = ""
    code: Optional[str] = None  # CAS failure code, e.g. INVALID_TICKET


@dataclass
class ValidationResult:
    principal: Optional[Principal] = None
    failure: Optional[ValidationFailure] = None

    @property
    def ok(self) -> bool:
        return self.principal is not None
