#!/usr/bin/env python3
"""
CAS Gate -- CAS client gate for ASGI applications.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080
  python main.py validate ST-1-abc https://app.example.org/reports
  python main.py validate ST-1-abc https://app.example.org/reports --json
  python main.py login-url https://app.example.org/reports
  python main.py login-url https://app.example.org/cas/authenticate --gateway

Environment variables (or .env):
  CAS_LOGIN_URL, CAS_VALIDATE_URL, CAS_LOGOUT_URL   Required.
  CAS_VERSION                                       1, 2 (default) or 3.
  SECRET_KEY                                        Required unless DEBUG=true.
"""

import argparse
import json
import sys
from dataclasses import asdict

from core.config import get_settings
from core.urls import build_login_url
from core.validator import TicketValidator


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _validate(args: argparse.Namespace) -> int:
    """Validate one ticket against the configured CAS server and report the outcome.

    Service tickets are single-use: a ticket validated here is spent and
    cannot be replayed through the application afterwards.
    """
    settings = get_settings()
    validator = TicketValidator.from_settings(settings)
    try:
        result = validator.validate(args.ticket, args.service)
    finally:
        validator.close()

    if args.json:
        payload = {
            "ok": result.ok,
            "principal": asdict(result.principal) if result.principal else None,
            "failure": (
                {**asdict(result.failure), "reason": result.failure.reason.value} if result.failure else None
            ),
        }
        print(json.dumps(payload, indent=2))
    elif result.ok:
        print(f"  Authenticated: {result.principal.username}")
        for name, value in result.principal.attributes.items():
            print(f"    {name}: {value}")
    else:
        failure = result.failure
        code = f" [{failure.code}]" if failure.code else ""
        print(f"  [!] Not authenticated ({failure.reason.value}){code}: {failure.message}")
    return 0 if result.ok else 1


def _login_url(args: argparse.Namespace) -> int:
    settings = get_settings()
    print(build_login_url(settings.cas_login_url, args.service, gateway=args.gateway, renew=settings.cas_renew))
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="casgate",
        description="CAS client gate: serve the gated app or exercise the CAS configuration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the gated application with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_serve)

    validate = sub.add_parser("validate", help="Validate a service ticket against the configured CAS server")
    validate.add_argument("ticket", metavar="TICKET", help="Service ticket issued by CAS, e.g. ST-1-abc")
    validate.add_argument("service", metavar="SERVICE", help="Service URL the ticket was issued for")
    validate.add_argument("--json", action="store_true", help="Output structured JSON")
    validate.set_defaults(func=_validate)

    login_url = sub.add_parser("login-url", help="Print the CAS login redirect for a service URL")
    login_url.add_argument("service", metavar="SERVICE", help="Service URL CAS should redirect back to")
    login_url.add_argument("--gateway", action="store_true", help="Add gateway=true (no credential prompt)")
    login_url.set_defaults(func=_login_url)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
