"""
Google Analytics Handlers

JSON endpoints behind the app session:
- GET /api/analytics/data - Session report for the selected GA4 property
- GET /api/analytics/properties - GA4 accounts, or the properties of one account
- POST /api/analytics/select-property - Select or clear the GA4 property

Every reporting call goes through the same gate: an app session (401 "Not authenticated"),
then a stored Google token (401 "No access token available"), then, for reports, a selected
property (400 "No property selected").
"""

from datetime import datetime, timezone
import logging
import re
from typing import Optional, Tuple
from aiohttp import web
from pydantic import BaseModel, ValidationError, field_validator
import sentry_sdk

from ga_dashboard.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from ga_dashboard.app.handlers.helpers import (
    AuthToken,
    GateException,
    auth_token_helper,
    google_token_helper,
    reporting_target_helper,
)
from ga_dashboard.google.analytics import (
    DEFAULT_REPORT_RANGE,
    REPORT_RANGES,
    AnalyticsApiError,
    AnalyticsClient,
)
from ga_dashboard.google.chain import TokenRefreshFunc
from ga_dashboard.google.oauth import OAuthException, oauth_refresh
from ga_dashboard.model.oauth import GoogleToken
from ga_dashboard.model.settings import (
    clear_user_settings_stmt,
    upsert_user_settings_stmt,
)

logger = logging.getLogger(__name__)

NUMERIC_ID = re.compile(r"[0-9]+")


class PropertySelection(BaseModel):
    """Body of a select-property request. `null` clears the selection."""

    propertyId: Optional[str]

    @field_validator("propertyId")
    def property_id_check(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None

        if NUMERIC_ID.fullmatch(v) is None:
            raise ValueError("invalid format")

        return v


async def gate(
    request: web.Request, require_target: bool
) -> Tuple[AuthToken, GoogleToken, Optional[str]]:
    """
    Resolve the caller, their Google token and, optionally, their GA4 property.

    Raises:
        GateException: For the first precondition that is not met
    """
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    async with database_session_maker() as database_session:
        auth_token = await auth_token_helper(database_session, metrics_client, request)
        if auth_token is None:
            raise GateException.not_authenticated()

        async with database_session.begin():
            google_token = await google_token_helper(
                database_session, auth_token.user_id
            )

            property_id: Optional[str] = None
            if require_target:
                property_id = await reporting_target_helper(
                    database_session, auth_token.user_id
                )

    return auth_token, google_token, property_id


def token_refresher(request: web.Request, google_token: GoogleToken) -> TokenRefreshFunc:
    """Refresh function for the analytics client. Yields None when refreshing fails."""

    async def refresh() -> Optional[str]:
        try:
            return await oauth_refresh(
                request.app[SettingsAppKey],
                request.app[SessionAppKey],
                request.app[MetricsClientAppKey],
                request.app[DatabaseSessionMakerAppKey],
                google_token,
            )
        except OAuthException as e:
            logger.warning("Unable to refresh access token: %s", e)
            request.app[MetricsClientAppKey].increment(
                "ga_dashboard.oauth.refresh.failed", 1
            )
            return None

    return refresh


def analytics_client(request: web.Request, google_token: GoogleToken) -> AnalyticsClient:
    settings = request.app[SettingsAppKey]
    return AnalyticsClient(
        http_session=request.app[SessionAppKey],
        metrics_client=request.app[MetricsClientAppKey],
        access_token=google_token.access_token,
        data_endpoint=settings.analytics_data_endpoint,
        admin_endpoint=settings.analytics_admin_endpoint,
        refresh=token_refresher(request, google_token),
    )


def gate_failed(request: web.Request, e: GateException) -> web.Response:
    request.app[MetricsClientAppKey].increment(
        "ga_dashboard.gate.rejected", 1, tag_dict={"reason": e.reason}
    )
    return e.to_response()


async def upstream_failed(
    request: web.Request, e: Exception, error: str
) -> web.Response:
    if isinstance(e, AnalyticsApiError) and e.is_unauthorized:
        return web.json_response(
            status=401,
            data={"error": "Google authorization expired", "details": e.message},
        )

    logger.exception(error)
    sentry_sdk.capture_exception(e)
    await request.app[HealthGaugeAppKey].womp()

    details = e.message if isinstance(e, AnalyticsApiError) else str(e)
    return web.json_response(status=500, data={"error": error, "details": details})


async def handle_analytics_data(request: web.Request) -> web.Response:
    range_name = request.query.get("range", DEFAULT_REPORT_RANGE)
    report_range = REPORT_RANGES.get(range_name)
    if report_range is None:
        return web.json_response(status=400, data={"error": "Invalid range"})

    try:
        (_, google_token, property_id) = await gate(request, require_target=True)
    except GateException as e:
        return gate_failed(request, e)

    try:
        report = await analytics_client(request, google_token).run_session_report(
            str(property_id), report_range
        )
    except Exception as e:
        return await upstream_failed(request, e, "Failed to fetch analytics data")

    return web.json_response({"report": report})


async def handle_analytics_properties(request: web.Request) -> web.Response:
    account_id: Optional[str] = request.query.get("accountId", None)
    if account_id is not None and NUMERIC_ID.fullmatch(account_id) is None:
        return web.json_response(
            status=400,
            data={"error": "Invalid account ID format. Expected numeric ID."},
        )

    try:
        (_, google_token, _) = await gate(request, require_target=False)
    except GateException as e:
        return gate_failed(request, e)

    client = analytics_client(request, google_token)
    try:
        if account_id is None:
            return web.json_response({"accounts": await client.list_accounts()})
        return web.json_response(
            {"properties": await client.list_properties(account_id)}
        )
    except Exception as e:
        error = (
            "Failed to fetch accounts"
            if account_id is None
            else "Failed to fetch properties"
        )
        return await upstream_failed(request, e, error)


async def handle_select_property(request: web.Request) -> web.Response:
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    dialect_name = request.app[DatabaseAppKey].dialect.name

    async with database_session_maker() as database_session:
        auth_token = await auth_token_helper(database_session, metrics_client, request)
        if auth_token is None:
            return gate_failed(request, GateException.not_authenticated())

        try:
            data = await request.read()
            selection = PropertySelection.model_validate_json(data)
        except ValidationError as e:
            if any(error["type"] == "json_invalid" for error in e.errors()):
                return web.json_response(status=400, data={"error": "Invalid JSON"})
            return web.json_response(
                status=400,
                data={"error": "Invalid property ID format. Expected numeric ID."},
            )
        except OSError:
            return web.json_response(status=400, data={"error": "Invalid JSON"})

        now = datetime.now(timezone.utc)

        if selection.propertyId is None:
            error = "Failed to clear property selection"
            stmt = clear_user_settings_stmt(auth_token.user_id, now)
        else:
            error = "Failed to save property selection"
            stmt = upsert_user_settings_stmt(
                dialect_name, auth_token.user_id, selection.propertyId, now
            )

        try:
            async with database_session.begin():
                await database_session.execute(stmt)
        except Exception as e:
            logger.exception(error)
            sentry_sdk.capture_exception(e)
            await request.app[HealthGaugeAppKey].womp()
            return web.json_response(status=500, data={"error": error, "details": str(e)})

    logger.info(
        "User %s %s GA4 property %s",
        auth_token.user_id,
        "cleared" if selection.propertyId is None else "selected",
        selection.propertyId,
    )
    return web.json_response({"success": True})
