"""
asgi.py -- Application assembly for CAS Gate.

This is the ONLY file that imports from both api/ and web/. It joins the
gated API application and the browser-facing CAS routes into a single ASGI
app. api/main.py knows nothing about web/.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from typing import Optional

from fastapi import FastAPI

from api.main import create_app
from auth.security import Security
from core.config import Settings
from core.validator import TicketValidator
from web.routes import router as web_router


def build_app(
    settings: Optional[Settings] = None,
    validator: Optional[TicketValidator] = None,
    security: Optional[Security] = None,
) -> FastAPI:
    """create_app() plus the CAS routes, mounted where the gate expects them."""
    app = create_app(settings, validator, security)
    app.include_router(web_router, prefix=app.state.settings.cas_route_prefix, tags=["CAS"])
    return app


app = build_app()
