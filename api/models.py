"""
API request and response models for CAS Gate HTTP endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in core/models.py, which own the
internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class AuthFailureResponse(ErrorResponse):
    """Response for GET /cas/fail.

    retry_url and params are what the browser was trying to reach when the
    CAS round trip failed, so a client can offer a "try again" link.
    """

    retry_url: str = "/"
    params: dict[str, Union[str, list[str]]] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Health and session
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    username: str


class SessionStatusResponse(BaseModel):
    """Response for GET /api/v1/auth/status (public)."""

    model_config = ConfigDict(frozen=True)

    connected: bool
    username: Optional[str] = None
