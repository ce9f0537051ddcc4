"""
Tests for the Google sign-in handlers and the page guards.

Every test goes through the running application with the fake Google server behind it.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from yarl import URL

from ga_dashboard.app.config import DatabaseAppKey, DatabaseSessionMakerAppKey
from ga_dashboard.model.oauth import GoogleToken
from ga_dashboard.model.settings import upsert_user_settings_stmt
from ga_dashboard.model.user import AppSession, User


async def select_property(client, user_id: str, property_id: str) -> None:
    database_session_maker = client.app[DatabaseSessionMakerAppKey]
    async with database_session_maker() as database_session:
        async with database_session.begin():
            await database_session.execute(
                upsert_user_settings_stmt(
                    client.app[DatabaseAppKey].dialect.name,
                    user_id,
                    property_id,
                    datetime.now(timezone.utc),
                )
            )


async def only_user(client) -> User:
    async with client.app[DatabaseSessionMakerAppKey]() as database_session:
        return (await database_session.scalars(select(User))).one()


class TestGoogleLogin:
    async def test_redirects_to_google(self, client):
        response = await client.get("/auth/google", allow_redirects=False)

        assert response.status == 302
        location = URL(response.headers["Location"])
        assert location.host == "accounts.google.com"
        assert location.query["state"]
        assert location.query["code_challenge"]


class TestGoogleCallback:
    async def test_new_user_goes_to_setup(self, client, settings, sign_in):
        """A first sign-in stores the token and sends the user to pick a property."""
        response = await sign_in(client)

        assert response.status == 302
        assert response.headers["Location"] == "/setup"

        cookie = response.cookies[settings.session_cookie_name]
        assert cookie.value
        assert cookie["httponly"]
        assert cookie["samesite"] == "Lax"

        async with client.app[DatabaseSessionMakerAppKey]() as database_session:
            google_token = (await database_session.scalars(select(GoogleToken))).one()
        assert google_token.access_token == "ya29.access"

    async def test_user_with_target_goes_to_dashboard(self, client, sign_in):
        await sign_in(client)
        user = await only_user(client)
        await select_property(client, user.guid, "98765")

        response = await sign_in(client)

        assert response.status == 302
        assert response.headers["Location"] == "/dashboard"

    async def test_bad_code_goes_to_login(self, client, sign_in):
        """A failed exchange never errors out to the browser."""
        response = await sign_in(client, "expired-code")

        assert response.status == 302
        assert response.headers["Location"] == "/login"

        async with client.app[DatabaseSessionMakerAppKey]() as database_session:
            assert (await database_session.scalars(select(GoogleToken))).first() is None

    async def test_unknown_state_goes_to_login(self, client):
        response = await client.get(
            "/auth/callback",
            params={"code": "valid-code", "state": "not-a-real-state"},
            allow_redirects=False,
        )

        assert response.status == 302
        assert response.headers["Location"] == "/login"

    async def test_missing_code_goes_to_login(self, client):
        response = await client.get("/auth/callback", allow_redirects=False)

        assert response.status == 302
        assert response.headers["Location"] == "/login"

    async def test_consent_denied_goes_to_login(self, client):
        response = await client.get(
            "/auth/callback",
            params={"error": "access_denied", "state": "anything"},
            allow_redirects=False,
        )

        assert response.status == 302
        assert response.headers["Location"] == "/login"

    async def test_missing_access_token_goes_to_login(self, client, sign_in):
        response = await sign_in(client, "empty-code")

        assert response.status == 302
        assert response.headers["Location"] == "/login"


class TestLogout:
    async def test_logout_ends_session(self, client, auth_headers):
        headers = await auth_headers(client)

        response = await client.post(
            "/auth/logout", headers=headers, allow_redirects=False
        )

        assert response.status == 302
        assert response.headers["Location"] == "/login"

        async with client.app[DatabaseSessionMakerAppKey]() as database_session:
            assert (await database_session.scalars(select(AppSession))).first() is None

        me = await client.get("/internal/api/me", headers=headers)
        assert me.status == 401

    async def test_logout_without_session(self, client):
        response = await client.get("/auth/logout", allow_redirects=False)

        assert response.status == 302
        assert response.headers["Location"] == "/login"


class TestPages:
    async def test_index(self, client):
        response = await client.get("/")

        assert response.status == 200
        assert "GA Dashboard" in await response.text()

    async def test_login_page(self, client):
        response = await client.get("/login")

        assert response.status == 200
        assert "/auth/google" in await response.text()

    async def test_no_session_redirects_to_login(self, client):
        for path in ("/setup", "/dashboard"):
            response = await client.get(path, allow_redirects=False)

            assert response.status == 302
            assert response.headers["Location"] == "/login"

    async def test_no_target(self, client, auth_headers):
        headers = await auth_headers(client)

        dashboard = await client.get(
            "/dashboard", headers=headers, allow_redirects=False
        )
        assert dashboard.status == 302
        assert dashboard.headers["Location"] == "/setup"

        setup = await client.get("/setup", headers=headers, allow_redirects=False)
        assert setup.status == 200
        assert "analyst@example.com" in await setup.text()

        login = await client.get("/login", headers=headers, allow_redirects=False)
        assert login.status == 302
        assert login.headers["Location"] == "/dashboard"

    async def test_with_target(self, client, auth_headers):
        headers = await auth_headers(client)
        user = await only_user(client)
        await select_property(client, user.guid, "98765")

        setup = await client.get("/setup", headers=headers, allow_redirects=False)
        assert setup.status == 302
        assert setup.headers["Location"] == "/dashboard"

        dashboard = await client.get(
            "/dashboard", headers=headers, allow_redirects=False
        )
        assert dashboard.status == 200
        assert "98765" in await dashboard.text()
