"""
Shared test configuration and fixtures for GA Dashboard tests.

Provides database setup, a fake Google server (token, userinfo, GA4 Data and Admin APIs),
application settings pointing at it, and a helper that signs a user in through the real
/auth/google and /auth/callback handlers.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from jwcrypto import jwk
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from yarl import URL

from ga_dashboard.app.config import DatabaseAppKey, Settings
from ga_dashboard.app.server import start_web_server
from ga_dashboard.model.base import Base
from tests.test_helpers import (
    TEST_CLIENT_ID,
    TEST_CLIENT_SECRET,
    TEST_SIGNING_KEY_ID,
)


UNAUTHENTICATED_BODY = {
    "error": {
        "code": 401,
        "message": "Request had invalid authentication credentials.",
        "status": "UNAUTHENTICATED",
    }
}


@dataclass
class FakeGoogle:
    """
    In-memory stand-in for Google's OAuth and Analytics endpoints.

    Authorization codes:
        valid-code: access token "ya29.access" with refresh token "1//refresh"
        no-refresh-code: access token "ya29.norefresh", no refresh token and no expires_in
        stale-code: access token "ya29.stale" (rejected by the APIs) with a refresh token
        stale-no-refresh-code: access token "ya29.stale" without a refresh token
        empty-code: a token response without an access token
    """

    valid_access_tokens: set = field(
        default_factory=lambda: {"ya29.access", "ya29.refreshed", "ya29.norefresh"}
    )
    token_requests: List[Dict[str, str]] = field(default_factory=list)
    report_requests: List[Dict[str, Any]] = field(default_factory=list)
    refresh_succeeds: bool = True

    CODES = {
        "valid-code": {
            "access_token": "ya29.access",
            "expires_in": 3599,
            "refresh_token": "1//refresh",
            "scope": "openid email https://www.googleapis.com/auth/analytics.readonly",
            "token_type": "Bearer",
        },
        "no-refresh-code": {
            "access_token": "ya29.norefresh",
            "token_type": "Bearer",
        },
        "stale-code": {
            "access_token": "ya29.stale",
            "expires_in": 3599,
            "refresh_token": "1//refresh",
            "token_type": "Bearer",
        },
        "stale-no-refresh-code": {
            "access_token": "ya29.stale",
            "expires_in": 3599,
            "token_type": "Bearer",
        },
        "empty-code": {
            "token_type": "Bearer",
        },
    }

    def grants(self, grant_type: str) -> List[Dict[str, str]]:
        return [r for r in self.token_requests if r.get("grant_type") == grant_type]

    def bearer(self, request: web.Request) -> Optional[str]:
        authorization = request.headers.get("Authorization", "")
        if not authorization.startswith("Bearer "):
            return None
        return authorization[7:]

    async def handle_token(self, request: web.Request) -> web.Response:
        data = dict(await request.post())
        self.token_requests.append(data)

        if (
            data.get("client_id") != TEST_CLIENT_ID
            or data.get("client_secret") != TEST_CLIENT_SECRET
        ):
            return web.json_response(status=401, data={"error": "invalid_client"})

        if data.get("grant_type") == "authorization_code":
            token = self.CODES.get(data.get("code", ""))
            if token is None or not data.get("code_verifier"):
                return web.json_response(
                    status=400,
                    data={"error": "invalid_grant", "error_description": "Bad Request"},
                )
            return web.json_response(token)

        if data.get("grant_type") == "refresh_token":
            if not self.refresh_succeeds or data.get("refresh_token") != "1//refresh":
                return web.json_response(
                    status=400,
                    data={
                        "error": "invalid_grant",
                        "error_description": "Token has been expired or revoked.",
                    },
                )
            return web.json_response(
                {
                    "access_token": "ya29.refreshed",
                    "expires_in": 3599,
                    "token_type": "Bearer",
                }
            )

        return web.json_response(status=400, data={"error": "unsupported_grant_type"})

    async def handle_userinfo(self, request: web.Request) -> web.Response:
        token = self.bearer(request)
        if token is None or not token.startswith("ya29."):
            return web.json_response(status=401, data={"error": "invalid_token"})
        return web.json_response(
            {"sub": "108234567890123456789", "email": "analyst@example.com"}
        )

    async def handle_run_report(self, request: web.Request) -> web.Response:
        token = self.bearer(request)
        body = await request.json()
        self.report_requests.append(
            {
                "property_id": request.match_info["property_id"],
                "token": token,
                "body": body,
            }
        )

        if token not in self.valid_access_tokens:
            return web.json_response(status=401, data=UNAUTHENTICATED_BODY)

        if request.match_info["property_id"] == "403403":
            return web.json_response(
                status=403,
                data={
                    "error": {
                        "code": 403,
                        "message": "User does not have sufficient permissions for this property.",
                        "status": "PERMISSION_DENIED",
                    }
                },
            )

        dimension = body["dimensions"][0]["name"]
        return web.json_response(
            {
                "dimensionHeaders": [{"name": dimension}],
                "metricHeaders": [{"name": "sessions", "type": "TYPE_INTEGER"}],
                "rows": [
                    {
                        "dimensionValues": [{"value": "20261016"}],
                        "metricValues": [{"value": "41"}],
                    },
                    {
                        "dimensionValues": [{"value": "20261017"}],
                        "metricValues": [{"value": "37"}],
                    },
                ],
                "rowCount": 2,
                "kind": "analyticsData#runReport",
            }
        )

    async def handle_accounts(self, request: web.Request) -> web.Response:
        if self.bearer(request) not in self.valid_access_tokens:
            return web.json_response(status=401, data=UNAUTHENTICATED_BODY)
        return web.json_response(
            {
                "accounts": [
                    {"name": "accounts/1000", "displayName": "Example Co"},
                    {"name": "accounts/2000", "displayName": "Side Project"},
                ]
            }
        )

    async def handle_properties(self, request: web.Request) -> web.Response:
        if self.bearer(request) not in self.valid_access_tokens:
            return web.json_response(status=401, data=UNAUTHENTICATED_BODY)
        if request.query.get("filter") != "parent:accounts/1000":
            return web.json_response({})
        return web.json_response(
            {
                "properties": [
                    {
                        "name": "properties/98765",
                        "displayName": "example.com",
                        "parent": "accounts/1000",
                        "createTime": "2024-03-01T10:00:00.000Z",
                        "updateTime": "2026-09-12T08:30:00.000Z",
                    }
                ]
            }
        )

    def make_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/token", self.handle_token),
                web.get("/userinfo", self.handle_userinfo),
                web.post(
                    r"/v1beta/properties/{property_id:\d+}:runReport",
                    self.handle_run_report,
                ),
                web.get("/v1beta/accounts", self.handle_accounts),
                web.get("/v1beta/properties", self.handle_properties),
            ]
        )
        return app


@pytest.fixture
def database_url(tmp_path):
    """SQLite database per test unless TEST_DATABASE_URL selects another database."""
    return os.getenv(
        "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'ga_dashboard.db'}"
    )


@pytest_asyncio.fixture(scope="function")
async def engine(database_url):
    """Create async SQLAlchemy engine with all tables."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def dialect_name(engine):
    return engine.dialect.name


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker):
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def json_web_keys():
    signing_key = jwk.JWK.generate(
        kty="EC", curve="P-256", kid=TEST_SIGNING_KEY_ID, alg="ES256"
    )
    keys = jwk.JWKSet()
    keys.add(signing_key)
    return keys


@pytest.fixture
def fake_google():
    return FakeGoogle()


@pytest_asyncio.fixture
async def fake_google_server(aiohttp_server, fake_google):
    return await aiohttp_server(fake_google.make_app())


@pytest.fixture
def settings(fake_google_server, database_url, json_web_keys):
    return Settings(
        debug=False,
        external_url="http://localhost:5100",
        database_dsn=database_url,
        google_client_id=TEST_CLIENT_ID,
        google_client_secret=TEST_CLIENT_SECRET,
        google_authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
        google_token_endpoint=str(fake_google_server.make_url("/token")),
        google_userinfo_endpoint=str(fake_google_server.make_url("/userinfo")),
        analytics_data_endpoint=str(fake_google_server.make_url("/v1beta")),
        analytics_admin_endpoint=str(fake_google_server.make_url("/v1beta")),
        json_web_keys=json_web_keys,
        service_auth_keys=[TEST_SIGNING_KEY_ID],
        session_cookie_secure=False,
        metrics_backend="none",
    )


@pytest_asyncio.fixture
async def client(aiohttp_client, settings):
    """Test client for the application, with tables created on its database."""
    app = await start_web_server(settings)
    test_client = await aiohttp_client(app)

    async with test_client.app[DatabaseAppKey].begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    return test_client


@pytest.fixture
def sign_in(settings):
    """Sign in through /auth/google and /auth/callback; returns the callback response."""

    async def _sign_in(client, code: str = "valid-code"):
        login_response = await client.get("/auth/google", allow_redirects=False)
        assert login_response.status == 302
        state = URL(login_response.headers["Location"]).query["state"]

        return await client.get(
            "/auth/callback",
            params={"code": code, "state": state},
            allow_redirects=False,
        )

    return _sign_in


@pytest.fixture
def auth_headers(settings, sign_in):
    """Sign in and return the Authorization header for the new app session."""

    async def _auth_headers(client, code: str = "valid-code") -> Dict[str, str]:
        response = await sign_in(client, code)
        assert response.status == 302
        auth_token = response.cookies[settings.session_cookie_name].value
        return {"Authorization": f"Bearer {auth_token}"}

    return _auth_headers
