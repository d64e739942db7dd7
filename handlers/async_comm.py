"""Asynchronous HTTP plumbing for Twitch API calls.

Requests are described by an immutable ``ApiRequest`` so that they can be rebuilt with a
fresh access token and sent a second time. Responses are read completely and returned as
``ApiResponse`` snapshots; callers inspect the status themselves (a 401 is data for the
token refresher, not an exception).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Literal, Self

import aiohttp
from aiohttp.client import ClientSession

from utils.logger_utils import LoggerUtils

if TYPE_CHECKING:
    import logging
    from collections.abc import Mapping


__all__: list[str] = [
    "ApiRequest",
    "ApiResponse",
    "AsyncCommError",
    "AsyncCommTimeoutError",
    "AsyncHttp",
]

logger: logging.Logger = LoggerUtils.get_logger(__name__)

HTTPMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]

CONNECT_TIMEOUT: Final[float] = 3.0
DEFAULT_TOTAL_TIMEOUT: Final[float] = 10.0


@dataclass(frozen=True)
class ApiRequest:
    """Description of one outbound HTTP request.

    Attributes:
        method (HTTPMethod): HTTP verb.
        url (str): Absolute URL.
        headers (dict[str, str]): Request headers.
        params (dict[str, str] | None): Query string parameters.
        json (Any | None): JSON body, mutually exclusive with ``data``.
        data (dict[str, str] | None): Form-encoded body.
    """

    method: HTTPMethod
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] | None = None
    json: Any | None = None
    data: dict[str, str] | None = None


@dataclass(frozen=True)
class ApiResponse:
    """Fully-read HTTP response."""

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    reason: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON; an empty body decodes to None."""
        if not self.body:
            return None
        return json.loads(self.body.decode("utf-8"))


class AsyncHttp:
    """Thin wrapper around a shared aiohttp session.

    The session is created lazily and reused so that all calls made by one process share
    connections. Each call carries a bounded timeout.
    """

    def __init__(self, *, total_timeout: float = DEFAULT_TOTAL_TIMEOUT) -> None:
        logger.debug("%s initializing", self.__class__.__name__)
        self._total_timeout: float = total_timeout
        self.__session: ClientSession | None = None

    async def __aenter__(self) -> Self:
        self.initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        _ = exc_type, exc_val, exc_tb
        await self.close()

    def initialize_session(self) -> None:
        """Create the aiohttp session unless an open one already exists."""
        if self.__session is None or self.__session.closed:
            self.__session = ClientSession()
            logger.debug("%s session initialized", self.__class__.__name__)

    @property
    def session(self) -> ClientSession:
        """Get the current aiohttp session, opening one if needed."""
        if self.__session is None or self.__session.closed:
            self.__session = ClientSession()
            logger.debug("%s session initialized", self.__class__.__name__)
        return self.__session

    async def close(self) -> None:
        """Close the aiohttp session if it is open."""
        if self.__session and not self.__session.closed:
            await self.__session.close()
            logger.debug("%s session closed", self.__class__.__name__)
        self.__session = None

    def _timeout(self, total_timeout: float | None) -> aiohttp.ClientTimeout:
        total: float = self._total_timeout if total_timeout is None else total_timeout
        if total <= 0:
            return aiohttp.ClientTimeout(total=None)
        if total < CONNECT_TIMEOUT:
            return aiohttp.ClientTimeout(total=total)
        return aiohttp.ClientTimeout(connect=CONNECT_TIMEOUT, total=total)

    async def send(self, request: ApiRequest, *, total_timeout: float | None = None) -> ApiResponse:
        """Send a request and return the fully-read response.

        Non-2xx statuses are returned, not raised.

        Args:
            request (ApiRequest): The request to send.
            total_timeout (float | None): Override of the default total timeout in seconds.

        Returns:
            ApiResponse: Status, body and headers of the response.

        Raises:
            AsyncCommTimeoutError: If the server did not answer in time.
            AsyncCommError: If the connection failed.
        """
        logger.debug("[%s] url=%s params=%s", request.method, request.url, request.params)
        try:
            async with self.session.request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                params=request.params,
                json=request.json,
                data=request.data,
                timeout=self._timeout(total_timeout),
            ) as resp:
                body: bytes = await resp.read()
                return ApiResponse(
                    status=resp.status,
                    body=body,
                    headers=dict(resp.headers),
                    reason=resp.reason or "",
                )
        except TimeoutError as err:
            logger.debug(err)
            msg = f"Timeout while waiting for '{request.url}'"
            raise AsyncCommTimeoutError(msg) from err
        except ConnectionResetError as err:
            logger.debug(err)
            msg = "The connection to the server has been disconnected."
            raise AsyncCommError(msg) from err
        except aiohttp.ClientError as err:
            logger.debug(err)
            msg = f"Request to '{request.url}' failed: {err}"
            raise AsyncCommError(msg) from err


class AsyncCommError(Exception):
    """An outbound HTTP request could not be completed."""


class AsyncCommTimeoutError(AsyncCommError):
    """An outbound HTTP request exceeded its deadline."""
