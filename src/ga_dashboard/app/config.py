"""
Configuration Module for GA Dashboard

This module defines the configuration system for the GA Dashboard service, using Pydantic for
settings validation and dependency injection through AppKeys.

The Settings class is loaded from environment variables with defaults suitable for development
environments. All application components access settings and shared resources through typed
AppKeys.

Key configuration areas include:
- Service networking and public URL
- Database connection
- Google OAuth client and API endpoints
- App session signing keys and cookie
- Monitoring and observability
"""

import asyncio
import logging
from typing import Annotated, Final, List, Optional

from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ga_dashboard.app.metrics import MetricsClient
from ga_dashboard.model.health import HealthGauge


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the GA Dashboard service.

    Environment variables are mapped to settings fields automatically, with aliases for the
    database connection string so that either DATABASE_DSN, PG_DSN or DATABASE_URL can be used.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and detailed error bodies.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_url: str = "http://localhost:5100"
    """
    Public base URL of the service, used to build the OAuth redirect URI.
    Set with EXTERNAL_URL environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    database_dsn: str = Field(
        "postgresql+asyncpg://postgres:password@db/ga_dashboard",
        validation_alias=AliasChoices("database_dsn", "pg_dsn", "database_url"),
    )
    """
    SQLAlchemy async connection string.
    Set with DATABASE_DSN, PG_DSN or DATABASE_URL environment variables.
    """

    google_client_id: str = ""
    """OAuth client id from the Google Cloud console."""

    google_client_secret: str = ""
    """OAuth client secret from the Google Cloud console."""

    google_authorization_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_token_endpoint: str = "https://oauth2.googleapis.com/token"
    google_userinfo_endpoint: str = "https://openidconnect.googleapis.com/v1/userinfo"

    google_scopes: Annotated[List[str], NoDecode] = [
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/analytics.readonly",
    ]
    """
    Scopes requested at login.
    Set with GOOGLE_SCOPES environment variable as comma-separated values.
    """

    analytics_data_endpoint: str = "https://analyticsdata.googleapis.com/v1beta"
    analytics_admin_endpoint: str = "https://analyticsadmin.googleapis.com/v1beta"

    default_token_expiry: int = 3600
    """
    Lifetime in seconds assumed for an access token when Google omits `expires_in`.
    Set with DEFAULT_TOKEN_EXPIRY environment variable.
    """

    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the keys that sign app session tokens.
    Can be set to a JWKSet object or path to a JSON file containing keys.
    Set with JSON_WEB_KEYS environment variable.
    """

    service_auth_keys: Annotated[List[str], NoDecode] = list()
    """
    Key IDs (kid) from json_web_keys used to sign app session tokens. The first is used for
    signing, all of them are accepted for verification.
    Set with SERVICE_AUTH_KEYS environment variable as comma-separated values.
    """

    app_session_expiry: int = 604800  # 1 week
    """
    Lifetime in seconds of an app session.
    Set with APP_SESSION_EXPIRY environment variable.
    """

    oauth_request_expiry: int = 600  # 10 minutes
    """
    Time in seconds a user has to complete the Google consent screen.
    Set with OAUTH_REQUEST_EXPIRY environment variable.
    """

    session_cookie_name: str = "ga_dashboard_session"
    session_cookie_secure: bool = True

    metrics_backend: str = "telegraf"
    """
    Metrics backend, 'telegraf' or 'none'.
    Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)

    @property
    def redirect_uri(self) -> str:
        return f"{self.external_url.rstrip('/')}/auth/callback"

    @field_validator("google_scopes", "service_auth_keys", mode="before")
    @classmethod
    def decode_comma_separated(cls, v) -> List[str]:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """
        Validate and process the json_web_keys setting.

        This validator accepts either:
        - An existing JWKSet object (for programmatic configuration)
        - A file path to a JSON file containing a JWK Set

        Raises:
            ValueError: If the input is neither a JWKSet nor a valid file path
        """
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that drains the health gauge"""

CleanupTaskAppKey: Final = web.AppKey("cleanup_task", asyncio.Task[None])
"""AppKey for the background task that removes expired login requests and sessions"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""
