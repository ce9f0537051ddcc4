"""
Page Handlers

Minimal HTML pages and the route guards that move a user along
no session -> setup (no property selected) -> dashboard.
"""

from typing import Optional, Tuple
from aiohttp import web
import aiohttp_jinja2

from ga_dashboard.app.config import (
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
)
from ga_dashboard.app.handlers.helpers import (
    AuthToken,
    GateException,
    auth_token_helper,
    reporting_target_helper,
)
from ga_dashboard.google.analytics import DEFAULT_REPORT_RANGE, REPORT_RANGES


async def current_user(
    request: web.Request,
) -> Tuple[Optional[AuthToken], Optional[str]]:
    """The signed-in user, if any, and their selected GA4 property, if any."""
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    metrics_client = request.app[MetricsClientAppKey]

    async with database_session_maker() as database_session:
        auth_token = await auth_token_helper(database_session, metrics_client, request)
        if auth_token is None:
            return None, None

        async with database_session.begin():
            try:
                property_id = await reporting_target_helper(
                    database_session, auth_token.user_id
                )
            except GateException:
                property_id = None

    return auth_token, property_id


async def handle_index(request: web.Request):
    (auth_token, _) = await current_user(request)
    return await aiohttp_jinja2.render_template_async(
        "index.html", request, context={"signed_in": auth_token is not None}
    )


async def handle_login_page(request: web.Request):
    (auth_token, _) = await current_user(request)
    if auth_token is not None:
        raise web.HTTPFound("/dashboard")

    return await aiohttp_jinja2.render_template_async(
        "login.html", request, context={}
    )


async def handle_setup_page(request: web.Request):
    (auth_token, property_id) = await current_user(request)
    if auth_token is None:
        raise web.HTTPFound("/login")
    if property_id is not None:
        raise web.HTTPFound("/dashboard")

    return await aiohttp_jinja2.render_template_async(
        "setup.html", request, context={"email": auth_token.email}
    )


async def handle_dashboard_page(request: web.Request):
    (auth_token, property_id) = await current_user(request)
    if auth_token is None:
        raise web.HTTPFound("/login")
    if property_id is None:
        raise web.HTTPFound("/setup")

    return await aiohttp_jinja2.render_template_async(
        "dashboard.html",
        request,
        context={
            "email": auth_token.email,
            "property_id": property_id,
            "ranges": list(REPORT_RANGES.keys()),
            "default_range": DEFAULT_REPORT_RANGE,
        },
    )
