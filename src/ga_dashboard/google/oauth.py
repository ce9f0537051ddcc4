"""
Google OAuth 2.0 Client Implementation

This module implements the OAuth 2.0 authorization code flow against Google's identity
platform. It provides the functionality for initiating the flow, completing it on the
redirect callback, and refreshing an expired access token.

The implementation follows these standards:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OpenID Connect userinfo endpoint for identifying the user

The flow is implemented in three stages:
1. Initialization (`oauth_init`): Store state and PKCE verifier, return the Google
   authorization URL
2. Completion (`oauth_complete`): Exchange the authorization code for tokens, identify the
   user, write the tokens through to the token store and open an app session
3. Refresh (`oauth_refresh`): Use the stored refresh token to obtain a new access token
"""

import base64
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
import hashlib
import logging
import secrets
from typing import Optional, Tuple
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

from aiohttp import ClientSession
from jwcrypto import jwt
from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from ga_dashboard.app.config import Settings
from ga_dashboard.app.metrics import MetricsClient
from ga_dashboard.google.chain import (
    BearerTokenMiddleware,
    ChainMiddlewareClient,
    MetricsMiddleware,
)
from ga_dashboard.model.oauth import GoogleToken, OAuthRequest, upsert_google_token_stmt
from ga_dashboard.model.settings import UserSettings
from ga_dashboard.model.user import AppSession, upsert_user_stmt

logger = logging.getLogger(__name__)


class OAuthException(Exception):
    """
    Exception raised when a step of the Google OAuth flow fails.

    Static constructors carry stable error codes so that log lines and Sentry events can be
    grouped by failure mode.
    """

    @staticmethod
    def invalid_request() -> "OAuthException":
        """The callback is missing the code or state parameter."""
        return OAuthException("error-google-oauth-1000 Invalid request")

    @staticmethod
    def unknown_state() -> "OAuthException":
        """The state does not match a pending, unexpired login request."""
        return OAuthException("error-google-oauth-1001 Invalid request: no matching state")

    @staticmethod
    def token_exchange_failed(msg: str = "") -> "OAuthException":
        """The token endpoint rejected the code or refresh token."""
        return OAuthException(f"error-google-oauth-1002 Invalid token response: {msg}")

    @staticmethod
    def no_access_token() -> "OAuthException":
        """The token endpoint answered without an access token."""
        return OAuthException("error-google-oauth-1003 No access token")

    @staticmethod
    def userinfo_failed(msg: str = "") -> "OAuthException":
        """The userinfo endpoint did not identify the user."""
        return OAuthException(f"error-google-oauth-1004 Invalid userinfo response: {msg}")

    @staticmethod
    def no_refresh_token() -> "OAuthException":
        """A refresh was requested but no refresh token is stored."""
        return OAuthException("error-google-oauth-1005 No refresh token")

    @staticmethod
    def no_signing_key() -> "OAuthException":
        """No service auth key is configured to sign app session tokens."""
        return OAuthException("error-google-oauth-1006 No service auth key available")


class GoogleTokenResponse(BaseModel):
    """Token endpoint response body."""

    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = None


class GoogleUserInfo(BaseModel):
    """OpenID Connect userinfo response body."""

    sub: str
    email: Optional[str] = None


@dataclass(repr=False, eq=False)
class OAuthCompletion:
    """
    Result of a successful authorization exchange.

    Attributes:
        user_id: GUID of the signed-in user
        session_group: Identifier of the app session that was opened
        session_expires_at: When the app session ends
        auth_token: Signed JWT identifying the app session
        has_target: Whether the user already selected a GA4 property
    """

    user_id: str
    session_group: str
    session_expires_at: datetime
    auth_token: str
    has_target: bool


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier that will be sent in the token request
        - pkce_challenge: The S256 challenge sent in the authorization request
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def token_expires_at(settings: Settings, now: datetime, expires_in: Optional[int]) -> datetime:
    """Expiry of an access token, using the provider lifetime when it is known."""
    if expires_in is None or expires_in <= 0:
        expires_in = settings.default_token_expiry
    return now + timedelta(0, expires_in)


async def oauth_init(
    settings: Settings,
    database_session_maker: async_sessionmaker[AsyncSession],
) -> str:
    """
    Initialize the OAuth flow with Google.

    Stores a new login request holding the state and PKCE verifier, then returns the URL of
    Google's consent screen. Offline access and a forced consent prompt are requested so that
    Google issues a refresh token.
    """
    state = secrets.token_urlsafe(32)
    (pkce_verifier, code_challenge) = generate_pkce_verifier()

    now = datetime.now(timezone.utc)

    async with database_session_maker() as database_session:
        async with database_session.begin():
            database_session.add(
                OAuthRequest(
                    oauth_state=state,
                    pkce_verifier=pkce_verifier,
                    created_at=now,
                    expires_at=now + timedelta(0, settings.oauth_request_expiry),
                )
            )

    parsed_authorization_endpoint = urlparse(settings.google_authorization_endpoint)
    query = dict(parse_qsl(parsed_authorization_endpoint.query))
    query.update(
        {
            "client_id": settings.google_client_id,
            "redirect_uri": settings.redirect_uri,
            "response_type": "code",
            "scope": " ".join(settings.google_scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
    )
    parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
        query=urlencode(query)
    )
    return str(urlunparse(parsed_authorization_endpoint))


async def exchange_token(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    data: dict,
) -> GoogleTokenResponse:
    """Post a grant to Google's token endpoint and validate the response."""
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        middleware=[MetricsMiddleware(metrics_client)],
    )
    async with chain_client.post(
        settings.google_token_endpoint,
        data={
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            **data,
        },
    ) as (client_response, chain_response):
        if client_response.status != 200 or not isinstance(chain_response.body, dict):
            raise OAuthException.token_exchange_failed(chain_response.error_message())

        try:
            token_response = GoogleTokenResponse.model_validate(chain_response.body)
        except ValidationError as e:
            raise OAuthException.token_exchange_failed(str(e)) from e

    if not token_response.access_token:
        raise OAuthException.no_access_token()

    return token_response


async def fetch_userinfo(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    access_token: str,
) -> GoogleUserInfo:
    chain_client = ChainMiddlewareClient(
        client_session=http_session,
        middleware=[
            MetricsMiddleware(metrics_client),
            BearerTokenMiddleware(access_token),
        ],
    )
    async with chain_client.get(settings.google_userinfo_endpoint) as (
        client_response,
        chain_response,
    ):
        if client_response.status != 200 or not isinstance(chain_response.body, dict):
            raise OAuthException.userinfo_failed(chain_response.error_message())

        try:
            return GoogleUserInfo.model_validate(chain_response.body)
        except ValidationError as e:
            raise OAuthException.userinfo_failed(str(e)) from e


async def oauth_complete(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    database_session_maker: async_sessionmaker[AsyncSession],
    dialect_name: str,
    state: Optional[str],
    code: Optional[str],
) -> OAuthCompletion:
    """
    Complete the OAuth flow by exchanging the authorization code for tokens.

    Flow:
        1. Parameter validation
        2. Login request retrieval (consumed so a state can only be used once)
        3. Token endpoint request with the PKCE verifier
        4. Userinfo request to identify the Google account
        5. User upsert and token write-through to the token store
        6. App session creation and target lookup

    Raises:
        OAuthException: When any step fails
    """
    if state is None or code is None or len(code) == 0:
        raise OAuthException.invalid_request()

    # Get service auth key for signing the app session token
    service_auth_key_id = next(iter(settings.service_auth_keys), None)
    if service_auth_key_id is None:
        raise OAuthException.no_signing_key()

    service_auth_key = settings.json_web_keys.get_key(service_auth_key_id)
    if service_auth_key is None:
        raise OAuthException.no_signing_key()

    now = datetime.now(timezone.utc)

    async with database_session_maker() as database_session:
        async with database_session.begin():
            oauth_request_stmt = select(OAuthRequest).where(
                OAuthRequest.oauth_state == state,
                OAuthRequest.expires_at > now,
            )
            oauth_request: Optional[OAuthRequest] = (
                await database_session.scalars(oauth_request_stmt)
            ).first()

            await database_session.execute(
                delete(OAuthRequest).where(OAuthRequest.oauth_state == state)
            )

        if oauth_request is None:
            raise OAuthException.unknown_state()

        token_response = await exchange_token(
            settings,
            http_session,
            metrics_client,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.redirect_uri,
                "code_verifier": oauth_request.pkce_verifier,
            },
        )
        access_token = str(token_response.access_token)

        userinfo = await fetch_userinfo(
            settings, http_session, metrics_client, access_token
        )

        session_group = str(ULID())
        session_expires_at = now + timedelta(0, settings.app_session_expiry)

        async with database_session.begin():
            user_result = await database_session.execute(
                upsert_user_stmt(dialect_name, userinfo.sub, userinfo.email, now)
            )
            user_id = user_result.scalars().one()

            await database_session.execute(
                upsert_google_token_stmt(
                    dialect_name,
                    user_id=user_id,
                    access_token=access_token,
                    refresh_token=token_response.refresh_token or "",
                    expires_at=token_expires_at(settings, now, token_response.expires_in),
                    updated_at=now,
                )
            )

            database_session.add(
                AppSession(
                    session_group=session_group,
                    user_id=user_id,
                    created_at=now,
                    expires_at=session_expires_at,
                )
            )

            user_settings: Optional[UserSettings] = (
                await database_session.scalars(
                    select(UserSettings).where(UserSettings.user_id == user_id)
                )
            ).first()

    logger.info(
        "Authorization exchange complete for user %s (refresh token issued: %s)",
        user_id,
        token_response.refresh_token is not None,
    )

    auth_token = jwt.JWT(
        header={"alg": "ES256", "kid": service_auth_key_id},
        claims={
            "sub": user_id,
            "grp": session_group,
            "iat": int(now.timestamp()),
            "exp": int(session_expires_at.timestamp()),
        },
    )
    auth_token.make_signed_token(service_auth_key)

    return OAuthCompletion(
        user_id=user_id,
        session_group=session_group,
        session_expires_at=session_expires_at,
        auth_token=str(auth_token.serialize()),
        has_target=user_settings is not None and user_settings.ga_property_id is not None,
    )


async def oauth_refresh(
    settings: Settings,
    http_session: ClientSession,
    metrics_client: MetricsClient,
    database_session_maker: async_sessionmaker[AsyncSession],
    current_google_token: GoogleToken,
) -> str:
    """
    Refresh an access token with the stored refresh token.

    Google may rotate the refresh token; a new one replaces the stored value, otherwise the
    stored one is kept.

    Returns:
        str: The new access token

    Raises:
        OAuthException: When no refresh token is stored or Google rejects it
    """
    if not current_google_token.refresh_token:
        raise OAuthException.no_refresh_token()

    token_response = await exchange_token(
        settings,
        http_session,
        metrics_client,
        {
            "grant_type": "refresh_token",
            "refresh_token": current_google_token.refresh_token,
        },
    )
    access_token = str(token_response.access_token)

    now = datetime.now(timezone.utc)
    values = {
        "access_token": access_token,
        "expires_at": token_expires_at(settings, now, token_response.expires_in),
        "updated_at": now,
    }
    if token_response.refresh_token:
        values["refresh_token"] = token_response.refresh_token

    async with database_session_maker() as database_session:
        async with database_session.begin():
            await database_session.execute(
                update(GoogleToken)
                .where(GoogleToken.user_id == current_google_token.user_id)
                .values(**values)
            )

    logger.info("Refreshed access token for user %s", current_google_token.user_id)
    return access_token
