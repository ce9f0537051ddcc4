from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Sequence,
    Tuple,
)
import logging
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from yarl import URL

from ga_dashboard.app.metrics import MetricsClient

RequestFunc = Callable[..., Awaitable[ClientResponse]]

TokenRefreshFunc = Callable[[], Awaitable[Optional[str]]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            kwargs=request.kwargs,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def error_message(self) -> str:
        """Best-effort extraction of the error message from a Google error body.

        Google APIs answer with `{"error": {"code", "message", "status"}}` while the OAuth
        endpoints answer with `{"error": "...", "error_description": "..."}`.
        """
        if isinstance(self.body, dict):
            error = self.body.get("error")
            if isinstance(error, dict):
                return str(error.get("message", error))
            if error is not None:
                description = self.body.get("error_description")
                return f"{error}: {description}" if description else str(error)
            return json.dumps(self.body)
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return str(self.body or f"HTTP {self.status}")


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class MetricsMiddleware(RequestMiddlewareBase):
    """Records count, duration and exceptions of outgoing requests per upstream host."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        tags = {"method": request.method, "host": URL(str(request.url)).host or ""}
        start_time = time()
        try:
            response = await next(request)
        except Exception as e:
            self._metrics_client.increment(
                "ga_dashboard.client.request.exception",
                1,
                tag_dict={**tags, "exception": type(e).__name__},
            )
            raise
        finally:
            self._metrics_client.timer(
                "ga_dashboard.client.request.time", time() - start_time, tag_dict=tags
            )

        self._metrics_client.increment(
            "ga_dashboard.client.request.count",
            1,
            tag_dict={**tags, "status": response[1].status},
        )
        return response


class BearerTokenMiddleware(RequestMiddlewareBase):
    """
    Authorizes requests with a Google access token.

    When a refresh function is given and the upstream answers 401, the refresh function is
    awaited once. If it yields a new access token, the request is sent again with it. A second
    401 is returned to the caller as-is.
    """

    def __init__(
        self, access_token: str, refresh: Optional[TokenRefreshFunc] = None
    ) -> None:
        super().__init__()
        self._access_token = access_token
        self._refresh = refresh
        self._refreshed = False

    @property
    def access_token(self) -> str:
        return self._access_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers[hdrs.AUTHORIZATION] = f"Bearer {self._access_token}"

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]

        if chain_response.status != 401 or self._refresh is None or self._refreshed:
            return response

        self._refreshed = True
        logger.info("Access token rejected by %s, refreshing", request.url)

        access_token = await self._refresh()
        if access_token is None:
            return response

        self._access_token = access_token
        return client_response, chain_response, ChainRequest.from_chain_request(request)


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max

        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                raise Exception("Max attempts reached")

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            if self.client_response is not None and not self.client_response.closed:
                self.client_response.close()
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """
    Thin wrapper around a shared aiohttp ClientSession that runs every request through a
    chain of middleware. A middleware can ask for the request to be sent again by returning a
    new ChainRequest as the third element of its result.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._raise_for_status = raise_for_status

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_GET, url=url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            raise_for_status=self._raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
        )
