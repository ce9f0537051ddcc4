import asyncio
from datetime import datetime, timezone
import logging
from typing import NoReturn, Tuple
from aiohttp import web
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import sentry_sdk

from ga_dashboard.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
)
from ga_dashboard.model.oauth import OAuthRequest
from ga_dashboard.model.user import AppSession

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def remove_expired(
    database_session_maker: async_sessionmaker[AsyncSession], now: datetime
) -> Tuple[int, int]:
    """
    Delete login requests and app sessions that expired before `now`.

    Returns:
        The number of removed login requests and app sessions
    """
    async with database_session_maker() as database_session:
        async with database_session.begin():
            expired_requests_result = await database_session.execute(
                delete(OAuthRequest).where(OAuthRequest.expires_at < now)
            )
            expired_sessions_result = await database_session.execute(
                delete(AppSession).where(AppSession.expires_at < now)
            )

    return expired_requests_result.rowcount, expired_sessions_result.rowcount


async def cleanup_task(app: web.Application) -> NoReturn:
    """
    Remove expired login requests and app sessions once an hour.
    """
    logger.info("Starting cleanup task")

    database_session_maker = app[DatabaseSessionMakerAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        await asyncio.sleep(3600)

        try:
            (expired_requests_count, expired_sessions_count) = await remove_expired(
                database_session_maker, datetime.now(timezone.utc)
            )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Cleanup task failed")
            continue

        if expired_requests_count > 0 or expired_sessions_count > 0:
            logger.info(
                "Cleaned up %d expired login requests and %d expired app sessions",
                expired_requests_count,
                expired_sessions_count,
            )

        metrics_client.increment(
            "ga_dashboard.task.cleanup.expired_requests_removed", expired_requests_count
        )
        metrics_client.increment(
            "ga_dashboard.task.cleanup.expired_sessions_removed", expired_sessions_count
        )
