"""
Google Analytics 4 API Client

A per-request client for the GA4 Data API (reports) and the GA4 Admin API (account and
property listing). The client is built around the access token of the requesting user and
is never shared between requests.

When a refresh function is supplied, a 401 from Google triggers a single refresh-token
exchange followed by one retry of the same call.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession

from ga_dashboard.app.metrics import MetricsClient
from ga_dashboard.google.chain import (
    BearerTokenMiddleware,
    ChainMiddlewareClient,
    ChainResponse,
    MetricsMiddleware,
    TokenRefreshFunc,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportRange:
    start_date: str
    end_date: str
    dimension: str


REPORT_RANGES: Dict[str, ReportRange] = {
    "24h": ReportRange("yesterday", "today", "dateHour"),
    "7d": ReportRange("7daysAgo", "yesterday", "date"),
    "28d": ReportRange("28daysAgo", "yesterday", "date"),
}

DEFAULT_REPORT_RANGE = "7d"


class AnalyticsApiError(Exception):
    """A GA4 API call answered with a non-success status."""

    def __init__(self, status: int, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.details = details

    @staticmethod
    def from_chain_response(chain_response: ChainResponse) -> "AnalyticsApiError":
        details = None
        if isinstance(chain_response.body, dict):
            details = chain_response.body.get("error")
        return AnalyticsApiError(
            chain_response.status, chain_response.error_message(), details
        )

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


class AnalyticsClient:
    """
    GA4 Data and Admin API client for a single access token.

    Args:
        http_session: Shared aiohttp client session
        metrics_client: Metrics client for outgoing request metrics
        access_token: Google access token of the requesting user
        data_endpoint: Base URL of the GA4 Data API
        admin_endpoint: Base URL of the GA4 Admin API
        refresh: Optional coroutine function returning a new access token, or None when the
            token cannot be refreshed
    """

    def __init__(
        self,
        http_session: ClientSession,
        metrics_client: MetricsClient,
        access_token: str,
        data_endpoint: str,
        admin_endpoint: str,
        refresh: Optional[TokenRefreshFunc] = None,
    ) -> None:
        self._data_endpoint = data_endpoint.rstrip("/")
        self._admin_endpoint = admin_endpoint.rstrip("/")
        self._bearer = BearerTokenMiddleware(access_token, refresh)
        self._chain_client = ChainMiddlewareClient(
            client_session=http_session,
            middleware=[MetricsMiddleware(metrics_client), self._bearer],
        )

    @property
    def access_token(self) -> str:
        return self._bearer.access_token

    async def _json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        request = self._chain_client.get if method == "GET" else self._chain_client.post
        async with request(url, **kwargs) as (client_response, chain_response):
            if client_response.status != 200 or not isinstance(chain_response.body, dict):
                error = AnalyticsApiError.from_chain_response(chain_response)
                logger.warning(
                    "GA4 API %s %s failed with %s: %s",
                    method,
                    url,
                    error.status,
                    error.message,
                )
                raise error
            return chain_response.body

    async def run_session_report(
        self, property_id: str, report_range: ReportRange
    ) -> Dict[str, Any]:
        """Run a sessions-by-date report and return the raw runReport body."""
        return await self._json(
            "POST",
            f"{self._data_endpoint}/properties/{property_id}:runReport",
            json={
                "dimensions": [{"name": report_range.dimension}],
                "metrics": [{"name": "sessions"}],
                "dateRanges": [
                    {
                        "startDate": report_range.start_date,
                        "endDate": report_range.end_date,
                    }
                ],
                "orderBys": [
                    {"dimension": {"dimensionName": report_range.dimension}}
                ],
            },
        )

    async def list_accounts(self) -> List[Dict[str, str]]:
        body = await self._json("GET", f"{self._admin_endpoint}/accounts")
        return [
            {
                "id": _resource_id(account.get("name")),
                "name": account.get("displayName") or account.get("name") or "",
                "fullName": account.get("name") or "",
            }
            for account in body.get("accounts", [])
        ]

    async def list_properties(self, account_id: str) -> List[Dict[str, Optional[str]]]:
        body = await self._json(
            "GET",
            f"{self._admin_endpoint}/properties",
            params={"filter": f"parent:accounts/{account_id}", "pageSize": "100"},
        )
        return [
            {
                "id": _resource_id(prop.get("name")),
                "name": prop.get("displayName") or prop.get("name") or "",
                "fullName": prop.get("name") or "",
                "createTime": prop.get("createTime"),
                "updateTime": prop.get("updateTime"),
            }
            for prop in body.get("properties", [])
        ]


def _resource_id(name: Optional[str]) -> str:
    # "properties/12345" -> "12345"
    if not name or "/" not in name:
        return ""
    return name.split("/")[1]
