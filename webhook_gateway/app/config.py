"""
Configuration module for the Webhook Gateway.

This module uses Pydantic Settings to load and validate environment variables
for Entra ID authentication, server-side sessions, the downstream chat
webhook, and cookie security.

Environment variables are loaded from .env file or system environment.
The resulting Settings object is frozen: it is built once at startup and
handed to every component by reference.
"""

import logging
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlsplit

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigMissing

logger = logging.getLogger("webhook_gateway.config")


REQUIRED_IN_PRODUCTION = (
    "SESSION_SECRET",
    "REDIS_URL",
    "ENTRA_TENANT_ID",
    "ENTRA_CLIENT_ID",
    "ENTRA_CLIENT_SECRET",
    "ENTRA_ALLOWED_GROUP_ID",
    "BASE_URL",
)

DEV_SESSION_SECRET = "dev-session-secret-change-in-production"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All configuration for Entra ID (OIDC), sessions, the webhook proxy and
    the server itself is defined here.
    """

    # =========================================================================
    # Runtime
    # =========================================================================

    APP_ENV: str = Field(
        default="development",
        description="Deployment environment ('production' enables fail-fast validation)",
    )

    PORT: int = Field(default=3000, ge=1, le=65535)

    BASE_URL: str = Field(
        default="",
        description="Public base URL of this service (defaults to http://localhost:<PORT>)",
    )

    LOG_LEVEL: str = Field(default="INFO")

    # =========================================================================
    # Session Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        default="",
        description="Secret used to sign the session cookie",
    )

    SESSION_COOKIE_NAME: str = Field(default="gateway.sid")

    SESSION_COOKIE_SECURE: Optional[bool] = Field(
        default=None,
        description="Send the session cookie over HTTPS only (defaults to true in production)",
    )

    SESSION_COOKIE_SAMESITE: str = Field(default="lax")

    REDIS_URL: Optional[str] = Field(
        default=None,
        description="Redis connection string for the session store (memory store when unset)",
    )

    # =========================================================================
    # Microsoft Entra ID Configuration (OIDC Authentication)
    # =========================================================================

    ENTRA_AUTHORITY_HOST: str = Field(default="https://login.microsoftonline.com")

    ENTRA_TENANT_ID: str = Field(default="", description="Entra tenant ID")

    ENTRA_CLIENT_ID: str = Field(default="", description="Application (client) ID")

    ENTRA_CLIENT_SECRET: str = Field(default="", description="Client secret (confidential client)")

    ENTRA_REDIRECT_PATH: str = Field(default="/auth/callback")

    ENTRA_POST_LOGOUT_REDIRECT_PATH: str = Field(default="/")

    ENTRA_ALLOWED_GROUP_ID: str = Field(
        default="",
        description="Object ID of the group whose members may use the chat (empty allows everyone)",
    )

    DEFAULT_RETURN_PATH: str = Field(
        default="/chat.html",
        description="Where users land after login when no returnTo was given",
    )

    # =========================================================================
    # Downstream Webhook Configuration
    # =========================================================================

    N8N_WEBHOOK_URL: str = Field(default="")

    N8N_WEBHOOK_URL_TEST: str = Field(default="")

    N8N_USERNAME: str = Field(default="")

    N8N_PASSWORD: str = Field(default="")

    PROXY_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    PROXY_MAX_BODY_BYTES: int = Field(default=1024 * 1024, gt=0)

    # =========================================================================
    # Legacy password login (not served, kept so old deployments still parse)
    # =========================================================================

    ENABLE_LEGACY_PASSWORD_LOGIN: bool = Field(default=False)

    JWT_SECRET: str = Field(default="")

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        env_ignore_empty=True,
        frozen=True,
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("APP_ENV")
    @classmethod
    def normalize_env(cls, v: str) -> str:
        return (v or "development").strip().lower()

    @field_validator("SESSION_COOKIE_SAMESITE")
    @classmethod
    def validate_samesite(cls, v: str) -> str:
        """Unknown SameSite values fall back to 'lax'."""
        lower = (v or "lax").strip().lower()
        return lower if lower in ("lax", "strict", "none") else "lax"

    @field_validator("BASE_URL", "ENTRA_AUTHORITY_HOST")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @model_validator(mode="after")
    def fill_defaults(self) -> "Settings":
        # frozen model: defaults derived from other fields go through __dict__
        if not self.BASE_URL:
            self.__dict__["BASE_URL"] = f"http://localhost:{self.PORT}"
        if self.SESSION_COOKIE_SECURE is None:
            self.__dict__["SESSION_COOKIE_SECURE"] = self.is_production
        return self

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def oidc_configured(self) -> bool:
        return bool(self.ENTRA_TENANT_ID and self.ENTRA_CLIENT_ID)

    @property
    def authority(self) -> str:
        """Entra authority URL for the configured tenant."""
        return f"{self.ENTRA_AUTHORITY_HOST}/{self.ENTRA_TENANT_ID}"

    @property
    def issuer_url(self) -> str:
        return f"{self.authority}/v2.0"

    @property
    def discovery_url(self) -> str:
        return f"{self.issuer_url}/.well-known/openid-configuration"

    @property
    def redirect_uri(self) -> str:
        return f"{self.BASE_URL}{self.ENTRA_REDIRECT_PATH}"

    @property
    def post_logout_redirect_uri(self) -> str:
        return f"{self.BASE_URL}{self.ENTRA_POST_LOGOUT_REDIRECT_PATH}"

    @property
    def base_origin(self) -> str:
        parts = urlsplit(self.BASE_URL)
        return f"{parts.scheme}://{parts.netloc}".lower()

    @property
    def session_secret(self) -> str:
        return self.SESSION_SECRET or DEV_SESSION_SECRET

    @property
    def webhook_target_test(self) -> str:
        """Test webhook URL, falling back to the main one."""
        return self.N8N_WEBHOOK_URL_TEST or self.N8N_WEBHOOK_URL

    def missing_required(self) -> List[str]:
        """Names of production-required variables that were not provided."""
        missing = []
        for name in REQUIRED_IN_PRODUCTION:
            if name == "BASE_URL":
                if "BASE_URL" not in self.model_fields_set:
                    missing.append(name)
                continue
            if not getattr(self, name):
                missing.append(name)
        return missing


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Only the process entry point calls this; everything else receives the
    Settings object from the application factory.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    In production a missing required variable aborts startup with
    ConfigMissing. Outside production the problems are logged as warnings
    and the service keeps running with reduced functionality.

    Example:
        >>> status = validate_configuration(Settings(APP_ENV="development"))
        >>> status["valid"]
        False
    """
    errors = []
    warnings = []

    missing = settings.missing_required()
    if missing:
        message = f"Missing required environment variables: {', '.join(missing)}"
        if settings.is_production:
            logger.error(message)
            raise ConfigMissing(message, missing=missing)
        errors.append(message)
        logger.warning(
            "Running in development mode with missing config. Some features may not work.",
            extra={"missing": missing},
        )

    if not settings.SESSION_SECRET:
        warnings.append("SESSION_SECRET is not set; using the development default")

    if not settings.ENTRA_ALLOWED_GROUP_ID:
        warnings.append("ENTRA_ALLOWED_GROUP_ID is not set; every authenticated user is authorized")

    if not settings.N8N_WEBHOOK_URL:
        warnings.append("N8N_WEBHOOK_URL is not set; /proxy/webhook will return 500")

    if settings.ENABLE_LEGACY_PASSWORD_LOGIN:
        warnings.append("ENABLE_LEGACY_PASSWORD_LOGIN is set but legacy password login is not served")

    for warning in warnings:
        logger.warning(warning)

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": settings.APP_ENV,
    }
