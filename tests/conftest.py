"""
tests/conftest.py -- Shared test fixtures for CAS Gate integration tests.

This module provides:
  - StubValidator: accepts ticket "T1", rejects everything else, records calls
  - RecordingSecurity: Security subclass that records every hook invocation
  - make_gate: factory fixture -> GateHarness(client, validator, security, hits)
  - gate / callback_gate: single-step and two-step harnesses with defaults

Every harness gets a fresh app built through asgi.build_app(), the same
assembly path production uses, plus a handful of protected routes standing
in for the host application. TestClient runs with follow_redirects=False:
we assert on redirect *locations*, which are invisible once the client
follows the redirect.

The DEBUG and CAS_* env vars must be set before any app import: importing
asgi builds the module-level app from get_settings().
"""

from __future__ import annotations

import os
from collections.abc import Generator
from dataclasses import dataclass, field
from typing import Callable, Optional

# CRITICAL: Set env before any core/asgi import so get_settings() can build
# the module-level app in asgi.py.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("CAS_LOGIN_URL", "https://cas.example.org/cas/login")
os.environ.setdefault("CAS_VALIDATE_URL", "https://cas.example.org/cas/serviceValidate")
os.environ.setdefault("CAS_LOGOUT_URL", "https://cas.example.org/cas/logout")

import pytest
from fastapi import APIRouter, Depends, FastAPI, WebSocket
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.limiter import limiter
from asgi import build_app
from auth.checks import Check, check
from auth.security import Security
from core.config import Settings
from core.models import SESSION_USER_KEY, FailureReason, Principal, ValidationFailure, ValidationResult

CAS_LOGIN_URL = "https://cas.example.org/cas/login"
CAS_VALIDATE_URL = "https://cas.example.org/cas/serviceValidate"
CAS_LOGOUT_URL = "https://cas.example.org/cas/logout"

VALID_TICKET = "T1"


# ---------------------------------------------------------------------------
# Collaborator stubs
# ---------------------------------------------------------------------------


class StubValidator:
    """Stand-in for TicketValidator: T1 is valid, anything else is rejected."""

    def __init__(self, username: str = "alice", attributes: Optional[dict] = None) -> None:
        self.username = username
        self.attributes = attributes or {}
        self.calls: list[tuple[str, str]] = []

    def validate(self, ticket: str, service: str) -> ValidationResult:
        self.calls.append((ticket, service))
        if ticket == VALID_TICKET:
            return ValidationResult(principal=Principal(username=self.username, attributes=dict(self.attributes)))
        return ValidationResult(
            failure=ValidationFailure(
                reason=FailureReason.REJECTED,
                message=f"Ticket {ticket} not recognized",
                code="INVALID_TICKET",
            )
        )


class RecordingSecurity(Security):
    """Security that records hook calls.

    denied:           profiles check() answers False for (mutable set)
    refused:          usernames authentify() refuses
    accept_failures:  on_check_failed() returns None instead of the default 403
    """

    def __init__(self, denied=(), refused=(), accept_failures: bool = False) -> None:
        self.denied = set(denied)
        self.refused = set(refused)
        self.accept_failures = accept_failures
        self.events: list[tuple] = []

    def authentify(self, request: Request, username: str) -> bool:
        self.events.append(("authentify", username))
        return username not in self.refused

    def check(self, request: Request, profile: str) -> bool:
        self.events.append(("check", profile))
        return profile not in self.denied

    def on_authenticated(self, request: Request, principal: Principal) -> None:
        self.events.append(("authenticated", principal))

    def on_disconnected(self, request: Request, username: Optional[str]) -> None:
        self.events.append(("disconnected", username))

    def on_check_failed(self, request: Request, profile: str):
        self.events.append(("check_failed", profile))
        if self.accept_failures:
            return None
        return super().on_check_failed(request, profile)

    def named(self, kind: str) -> list:
        return [event[1] for event in self.events if event[0] == kind]


# ---------------------------------------------------------------------------
# App helpers
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "cas_login_url": CAS_LOGIN_URL,
        "cas_validate_url": CAS_VALIDATE_URL,
        "cas_logout_url": CAS_LOGOUT_URL,
    }
    values.update(overrides)
    return Settings(**values)


def _mount_host_routes(app: FastAPI, hits: list[str]) -> None:
    """Protected routes standing in for the host application."""

    @app.get("/reports")
    def reports() -> dict:
        hits.append("reports")
        return {"page": "reports"}

    @app.post("/reports")
    def create_report() -> dict:
        hits.append("create_report")
        return {"page": "reports"}

    @app.get("/admin")
    @check("admin")
    def admin() -> dict:
        hits.append("admin")
        return {"page": "admin"}

    @app.get("/ops")
    @check("admin", "operator")
    def ops() -> dict:
        hits.append("ops")
        return {"page": "ops"}

    audit = APIRouter(dependencies=[Depends(Check("auditor"))])

    @audit.get("/audit/log")
    def audit_log() -> dict:
        hits.append("audit_log")
        return {"page": "audit_log"}

    @audit.get("/audit/admin")
    @check("admin")
    def audit_admin() -> dict:
        hits.append("audit_admin")
        return {"page": "audit_admin"}

    app.include_router(audit)

    # Nested groups: /teams requires "staff", /teams/members adds "auditor".
    teams = APIRouter(prefix="/teams", dependencies=[Depends(Check("staff"))])
    members = APIRouter(prefix="/members", dependencies=[Depends(Check("auditor"))])

    @members.get("/list")
    def member_list() -> dict:
        hits.append("member_list")
        return {"page": "member_list"}

    @members.get("/admin")
    @check("admin")
    def member_admin() -> dict:
        hits.append("member_admin")
        return {"page": "member_admin"}

    teams.include_router(members)
    app.include_router(teams)

    # Requirement given at include time rather than on the router.
    console = APIRouter()

    @console.get("/console")
    def console_page() -> dict:
        hits.append("console")
        return {"page": "console"}

    app.include_router(console, dependencies=[Depends(Check("operator"))])

    @app.websocket("/ws/feed")
    async def feed(websocket: WebSocket) -> None:
        await websocket.accept()
        hits.append("ws_feed")
        await websocket.send_json({"username": websocket.session.get(SESSION_USER_KEY)})
        await websocket.close()

    @app.websocket("/ws/admin")
    @check("admin")
    async def ws_admin(websocket: WebSocket) -> None:
        await websocket.accept()
        hits.append("ws_admin")
        await websocket.send_json({"page": "ws_admin"})
        await websocket.close()


@dataclass
class GateHarness:
    client: TestClient
    validator: StubValidator
    security: RecordingSecurity
    hits: list[str] = field(default_factory=list)
    dedicated_callback: bool = False

    def login(self) -> None:
        """Establish a session through the configured protocol variant."""
        if self.dedicated_callback:
            resp = self.client.get(f"/cas/authenticate?ticket={VALID_TICKET}")
        else:
            resp = self.client.get(f"/reports?ticket={VALID_TICKET}")
        assert resp.status_code == 302

    def status(self) -> dict:
        return self.client.get("/api/v1/auth/status").json()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_gate() -> Generator[Callable[..., GateHarness], None, None]:
    """Yield a factory building an isolated app + TestClient per call.

    Keyword arguments other than validator/security are Settings overrides.
    """
    clients: list[TestClient] = []

    def factory(
        validator: Optional[StubValidator] = None,
        security: Optional[RecordingSecurity] = None,
        **overrides,
    ) -> GateHarness:
        limiter.reset()
        validator = validator or StubValidator()
        security = security or RecordingSecurity()
        hits: list[str] = []
        app = build_app(make_settings(**overrides), validator, security)
        _mount_host_routes(app, hits)
        client = TestClient(app, follow_redirects=False, raise_server_exceptions=True)
        client.__enter__()
        clients.append(client)
        return GateHarness(
            client=client,
            validator=validator,
            security=security,
            hits=hits,
            dedicated_callback=app.state.settings.cas_dedicated_callback,
        )

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def gate(make_gate) -> GateHarness:
    """Single-step harness: tickets arrive on the requested URL."""
    return make_gate()


@pytest.fixture
def callback_gate(make_gate) -> GateHarness:
    """Two-step harness: CAS calls back on /cas/authenticate."""
    return make_gate(cas_dedicated_callback=True)
