"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CAS Gate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The app
      factory also accepts an explicit Settings instance, which is how tests
      inject configuration.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. cas_login_url -> CAS_LOGIN_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. The session cookie is signed with
      SECRET_KEY, so the DEBUG-conditional key logic applies: dev mode
      generates a key with a warning, production mode refuses to start.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. The session cookie
  carries the authenticated username; a short key makes it forgeable.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a
  hard startup failure.

  The three CAS endpoints are mandatory in every mode. A gate without a
  login or validation endpoint cannot authenticate anybody.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("casgate.config")

_CAS_VERSIONS = ("1", "2", "3")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `cas_validate_url` reads from CAS_VALIDATE_URL, `debug` reads from DEBUG.
    List fields (allowed_hosts, cas_exempt_paths) are read as JSON arrays.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_max_age: int = 8 * 3600

    # ------------------------------------------------------------------
    # CAS server endpoints
    # ------------------------------------------------------------------

    cas_login_url: str = ""
    cas_validate_url: str = ""
    cas_logout_url: str = ""
    # "1" -> /validate plain text, "2" -> /serviceValidate XML,
    # "3" -> /p3/serviceValidate XML with attributes.
    cas_version: str = "2"
    cas_validate_timeout: float = 10.0

    # ------------------------------------------------------------------
    # Gate behaviour
    # ------------------------------------------------------------------

    # False: the ticket comes back on the originally requested URL.
    # True: CAS redirects to <cas_route_prefix>/authenticate.
    cas_dedicated_callback: bool = False
    cas_gateway: bool = False
    cas_renew: bool = False
    # Scheme and host used to build service URLs. Empty means "derive from the
    # request", which is wrong behind a TLS-terminating proxy.
    cas_service_base_url: str = ""
    cas_route_prefix: str = "/cas"
    cas_exempt_paths: list[str] = ["/api/v1/health", "/api/v1/auth/status"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("cas_version")
    @classmethod
    def validate_cas_version(cls, value: str) -> str:
        if value not in _CAS_VERSIONS:
            raise ValueError(f"CAS_VERSION must be one of {', '.join(_CAS_VERSIONS)}, got {value!r}.")
        return value

    @field_validator("cas_route_prefix", "cas_service_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_cas_endpoints(self) -> "Settings":
        """Refuse to start without the CAS login, validate and logout URLs."""
        missing = [
            name.upper()
            for name in ("cas_login_url", "cas_validate_url", "cas_logout_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"Missing CAS configuration: {', '.join(missing)}.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or pass a Settings instance to
    the app factory directly.
    """
    return Settings()
