import json
import logging
import traceback
from aiohttp import web
import sentry_sdk
from ga_dashboard.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    SettingsAppKey,
)
from ga_dashboard.app.handlers.helpers import auth_token_helper, session_state

logger = logging.getLogger(__name__)


async def handle_internal_me(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    try:
        async with database_session_maker() as database_session:
            auth_token = await auth_token_helper(
                database_session, metrics_client, request
            )
            if auth_token is None:
                raise web.HTTPUnauthorized(
                    body=json.dumps({"error": "Not authenticated", "state": "no_session"}),
                    content_type="application/json",
                )
            state = await session_state(database_session, auth_token)
            return web.json_response(
                {
                    "user_id": auth_token.user_id,
                    "email": auth_token.email,
                    "state": state,
                }
            )
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(
            f"Unexpected error in handle_internal_me: {type(e).__name__}: {str(e)}\n"
            f"Traceback:\n{traceback.format_exc()}"
        )

        sentry_sdk.capture_exception(e)

        settings = request.app.get(SettingsAppKey)
        if settings and settings.debug:
            response_body = json.dumps(
                {
                    "error": "Internal Server Error",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                    "traceback": traceback.format_exc(),
                }
            )
        else:
            response_body = json.dumps(
                {"error": "Internal Server Error", "error_type": type(e).__name__}
            )

        raise web.HTTPInternalServerError(
            body=response_body,
            content_type="application/json",
        )


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if await health_gauge.is_healthy():
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
