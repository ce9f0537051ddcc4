from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import (
    Optional,
    Dict,
)
from aiohttp import web
from jwcrypto import jwt
from jwcrypto.common import JWException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
)
import sentry_sdk

from ga_dashboard.app.config import (
    Settings,
    SettingsAppKey,
)
from ga_dashboard.app.metrics import MetricsClient
from ga_dashboard.model.oauth import GoogleToken
from ga_dashboard.model.settings import UserSettings
from ga_dashboard.model.user import AppSession, User

logger = logging.getLogger(__name__)


@dataclass(repr=False, eq=False)
class AuthToken:
    """
    An authenticated app session.

    Attributes:
        user_id: The guid of the signed-in user
        session_group: The app session the request was made with
        email: The Google account email, if Google shared it
    """

    user_id: str
    session_group: str
    email: Optional[str] = None


class AuthenticationException(Exception):
    """
    Exception raised for app session authentication failures.

    This exception class provides static methods for creating specific
    authentication failure instances with appropriate error messages.
    """

    @staticmethod
    def jwt_subject_missing() -> "AuthenticationException":
        """JWT is missing the required 'sub' claim."""
        return AuthenticationException("error-auth-helper-1000 JWT missing subject")

    @staticmethod
    def jwt_session_group_missing() -> "AuthenticationException":
        """JWT is missing the required 'grp' claim."""
        return AuthenticationException(
            "error-auth-helper-1001 JWT missing session group"
        )

    @staticmethod
    def session_not_found() -> "AuthenticationException":
        """The session was signed out or has expired."""
        return AuthenticationException("error-auth-helper-1002 No valid session found")

    @staticmethod
    def user_not_found() -> "AuthenticationException":
        """No user record was found for the session."""
        return AuthenticationException("error-auth-helper-1004 User record not found")


class GateException(Exception):
    """
    A reporting precondition is not met.

    The reasons are kept distinct so that clients can route: an app session problem or a
    missing provider token sends the user back through Google sign-in, a missing target
    sends them to setup.
    """

    def __init__(self, status: int, error: str, reason: str) -> None:
        super().__init__(error)
        self.status = status
        self.error = error
        self.reason = reason

    @staticmethod
    def not_authenticated() -> "GateException":
        """No valid app session on the request."""
        return GateException(401, "Not authenticated", "no_session")

    @staticmethod
    def provider_token_missing() -> "GateException":
        """The user has no stored Google access token."""
        return GateException(401, "No access token available", "no_token")

    @staticmethod
    def target_missing() -> "GateException":
        """The user has not selected a GA4 property."""
        return GateException(400, "No property selected", "no_target")

    def to_response(self) -> web.Response:
        return web.json_response(status=self.status, data={"error": self.error})


def serialized_auth_token(request: web.Request, settings: Settings) -> Optional[str]:
    """Bearer token from the Authorization header, falling back to the session cookie."""
    authorizations: Optional[str] = request.headers.getone("Authorization", None)
    if authorizations is not None:
        if not authorizations.startswith("Bearer ") or len(authorizations) < 8:
            return None
        return authorizations[7:]

    return request.cookies.get(settings.session_cookie_name)


async def auth_token_helper(
    database_session: AsyncSession,
    metrics_client: MetricsClient,
    request: web.Request,
) -> Optional[AuthToken]:
    """
    Authenticate a request and return the app session it belongs to.

    The request must carry a signed app session JWT, either as an `Authorization: Bearer`
    header or in the session cookie. The JWT signature and expiry are checked, then the
    session row is looked up so that signed-out sessions are rejected.

    Returns:
        An AuthToken if authentication succeeds, None otherwise
    """
    settings = request.app[SettingsAppKey]

    serialized = serialized_auth_token(request, settings)
    if not serialized:
        return None

    try:
        validated_auth_token = jwt.JWT(
            jwt=serialized, key=settings.json_web_keys, algs=["ES256"]
        )
        auth_token_claims: Dict[str, str] = json.loads(validated_auth_token.claims)

        auth_token_subject: Optional[str] = auth_token_claims.get("sub", None)
        if auth_token_subject is None:
            raise AuthenticationException.jwt_subject_missing()

        auth_token_session_group: Optional[str] = auth_token_claims.get("grp", None)
        if auth_token_session_group is None:
            raise AuthenticationException.jwt_session_group_missing()

        now = datetime.now(timezone.utc)

        async with database_session.begin():
            app_session_stmt = select(AppSession).where(
                AppSession.session_group == auth_token_session_group,
                AppSession.user_id == auth_token_subject,
                AppSession.expires_at > now,
            )
            app_session: Optional[AppSession] = (
                await database_session.scalars(app_session_stmt)
            ).first()
            if app_session is None:
                raise AuthenticationException.session_not_found()

            user: Optional[User] = (
                await database_session.scalars(
                    select(User).where(User.guid == auth_token_subject)
                )
            ).first()
            if user is None:
                raise AuthenticationException.user_not_found()

        return AuthToken(
            user_id=user.guid,
            session_group=app_session.session_group,
            email=user.email,
        )
    except (AuthenticationException, JWException, ValueError) as e:
        logger.info("auth_token_helper: rejected token: %s", e)
        metrics_client.increment(
            "ga_dashboard.auth.rejected",
            1,
            tag_dict={"exception": type(e).__name__},
        )
        return None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        metrics_client.increment(
            "ga_dashboard.auth.exception",
            1,
            tag_dict={"exception": type(e).__name__},
        )
        logger.exception("auth_token_helper: Exception")
        return None


async def google_token_helper(
    database_session: AsyncSession, user_id: str
) -> GoogleToken:
    """
    Token consumer gate: return the stored Google token of a user.

    The expiry is not checked here. A stale token is sent as-is and the
    reporting client refreshes it when Google rejects it.

    Raises:
        GateException: If no token row exists or the access token is empty
    """
    google_token: Optional[GoogleToken] = (
        await database_session.scalars(
            select(GoogleToken).where(GoogleToken.user_id == user_id)
        )
    ).first()
    if google_token is None or not google_token.access_token:
        raise GateException.provider_token_missing()
    return google_token


async def reporting_target_helper(database_session: AsyncSession, user_id: str) -> str:
    """
    Return the GA4 property id the user selected.

    Raises:
        GateException: If the user has not selected a property
    """
    user_settings: Optional[UserSettings] = (
        await database_session.scalars(
            select(UserSettings).where(UserSettings.user_id == user_id)
        )
    ).first()
    if user_settings is None or not user_settings.ga_property_id:
        raise GateException.target_missing()
    return user_settings.ga_property_id


async def session_state(
    database_session: AsyncSession, auth_token: Optional[AuthToken]
) -> str:
    """Name of the state the user is in on the way to being able to report."""
    if auth_token is None:
        return "no_session"

    async with database_session.begin():
        try:
            await google_token_helper(database_session, auth_token.user_id)
        except GateException:
            return "has_session_no_token"

        try:
            await reporting_target_helper(database_session, auth_token.user_id)
        except GateException:
            return "has_token_no_target"

    return "ready"


def set_session_cookie(
    response: web.StreamResponse,
    settings: Settings,
    auth_token: str,
    expires_at: datetime,
) -> None:
    max_age = max(int((expires_at - datetime.now(timezone.utc)).total_seconds()), 0)
    response.set_cookie(
        settings.session_cookie_name,
        auth_token,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="Lax",
    )
