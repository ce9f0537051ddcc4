"""
Google Sign-in Handlers

This module implements the web request handlers for signing in with Google.

OAuth Flow with Google:
1. User visits /auth/google and is redirected to Google's consent screen
2. Google redirects back to /auth/callback with an authorization code
3. Application exchanges the code for access and refresh tokens
4. Application stores the tokens, opens an app session and sets the session cookie
5. User lands on /dashboard when a GA4 property is already selected, /setup otherwise

The handlers in this module provide the following endpoints:
- GET /auth/google - Redirect to Google's consent screen
- GET /auth/callback - OAuth callback from Google
- GET|POST /auth/logout - End the app session
"""

import logging
from typing import Optional
from aiohttp import web
from sqlalchemy import delete
import sentry_sdk

from ga_dashboard.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from ga_dashboard.app.handlers.helpers import auth_token_helper, set_session_cookie
from ga_dashboard.google.oauth import oauth_complete, oauth_init
from ga_dashboard.model.user import AppSession

logger = logging.getLogger(__name__)


async def handle_google_login(request: web.Request):
    """
    Start the OAuth flow.

    Raises:
        HTTPFound: To redirect to Google's authorization endpoint
    """
    settings = request.app[SettingsAppKey]
    database_session_maker = request.app[DatabaseSessionMakerAppKey]

    redirect_destination = await oauth_init(settings, database_session_maker)
    raise web.HTTPFound(redirect_destination)


async def handle_google_callback(request: web.Request):
    """
    Handle the OAuth callback from Google.

    Query Parameters:
        code: Authorization code to exchange for tokens
        state: OAuth state parameter issued by /auth/google

    Any failure sends the user back to /login. The error is logged and reported, never
    shown to the caller.

    Returns:
        HTTP redirect to /dashboard or /setup with the session cookie set
    """
    state: Optional[str] = request.query.get("state", None)
    code: Optional[str] = request.query.get("code", None)

    settings = request.app[SettingsAppKey]
    http_session = request.app[SessionAppKey]
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    provider_error: Optional[str] = request.query.get("error", None)
    if provider_error is not None:
        logger.info("Google sign-in was not completed: %s", provider_error)
        metrics_client.increment(
            "ga_dashboard.oauth.callback.denied", 1, tag_dict={"error": provider_error}
        )
        raise web.HTTPFound("/login")

    try:
        completion = await oauth_complete(
            settings,
            http_session,
            metrics_client,
            database_session_maker,
            request.app[DatabaseAppKey].dialect.name,
            state,
            code,
        )
    except Exception as e:
        logger.exception("Authorization exchange failed")
        sentry_sdk.capture_exception(e)
        metrics_client.increment(
            "ga_dashboard.oauth.callback.exception",
            1,
            tag_dict={"exception": type(e).__name__},
        )
        raise web.HTTPFound("/login")

    metrics_client.increment("ga_dashboard.oauth.callback.success", 1)

    destination = "/dashboard" if completion.has_target else "/setup"
    response = web.Response(status=302, headers={"Location": destination})
    set_session_cookie(
        response, settings, completion.auth_token, completion.session_expires_at
    )
    return response


async def handle_logout(request: web.Request):
    """
    End the current app session.

    The session row is deleted so the JWT can no longer be used, even before it expires.
    Stored Google tokens and the property selection are kept for the next sign-in.
    """
    settings = request.app[SettingsAppKey]
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    async with database_session_maker() as database_session:
        auth_token = await auth_token_helper(database_session, metrics_client, request)

        if auth_token is not None:
            async with database_session.begin():
                await database_session.execute(
                    delete(AppSession).where(
                        AppSession.session_group == auth_token.session_group
                    )
                )

    response = web.Response(status=302, headers={"Location": "/login"})
    response.del_cookie(settings.session_cookie_name, path="/")
    return response
