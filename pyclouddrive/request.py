"""Request descriptors and the per-service HTTP transport.

A RequestData describes one HTTP exchange independently of the service it is
sent to. Its body is one of four variants; only bodies that can be rebuilt
from memory are replayable, which is what makes a request eligible for retry.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, Field

from .errors import InvalidStatusError

logger = logging.getLogger(__name__)


class ResponseEncoding(str, Enum):
    """How the transport treats a successful response body."""

    JSON = "json"
    RAW = "raw"
    STREAM = "stream"


class RequestBody(BaseModel):
    """Base class of request body variants."""

    replayable: ClassVar[bool] = True

    model_config = {"frozen": True}

    def httpx_kwargs(self) -> dict[str, Any]:
        """Keyword arguments passed to httpx when building the request."""
        return {}


class EmptyBody(RequestBody):
    """No request body."""


class JSONBody(RequestBody):
    """JSON encoded request body."""

    value: Any

    def httpx_kwargs(self) -> dict[str, Any]:
        return {"json": self.value}


class FormBody(RequestBody):
    """Form encoded request body."""

    values: dict[str, str]

    def httpx_kwargs(self) -> dict[str, Any]:
        return {"data": self.values}


class StreamBody(RequestBody):
    """Multipart file upload.

    The reader is consumed when the request is sent, so the request cannot be
    replayed.
    """

    replayable: ClassVar[bool] = False

    field: str = "file"
    filename: str = "file"
    reader: Any
    extra: dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    def httpx_kwargs(self) -> dict[str, Any]:
        return {
            "files": {self.field: (self.filename, self.reader)},
            "data": self.extra,
        }


class RequestData(BaseModel):
    """Description of a single HTTP exchange with a Cloud Drive service.

    Attributes:
        method: HTTP method.
        path: Path relative to the service base URL.
        full_url: Absolute URL, used instead of path (e.g. temp links).
        params: Query parameters.
        headers: Request headers.
        body: One of EmptyBody, JSONBody, FormBody or StreamBody.
        expected_status: Status codes treated as success.
        response_encoding: Whether the response is read or streamed.
        timeout: Per-request timeout overriding the client default.
    """

    method: str
    path: str = ""
    full_url: str | None = None
    params: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    body: RequestBody = Field(default_factory=EmptyBody)
    expected_status: tuple[int, ...] = (httpx.codes.OK,)
    response_encoding: ResponseEncoding = ResponseEncoding.JSON
    timeout: float | None = None

    @property
    def can_copy(self) -> bool:
        """Whether a fresh copy of this request can be built for a retry."""
        return self.body.replayable

    def copy_request(self) -> RequestData:
        """Return an unconsumed copy of this request."""
        if not self.can_copy:
            raise ValueError("Request with a streamed body cannot be copied")
        return self.model_copy(deep=True)


class ServiceClient:
    """Sends RequestData to one Cloud Drive service.

    Attributes:
        base_url: Base URL of the service.
        http_client: Client used by send().
        async_http_client: Client used by send_async(), if any.
    """

    def __init__(
        self,
        base_url: str,
        http_client: httpx.Client,
        async_http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url
        self.http_client = http_client
        self.async_http_client = async_http_client

    def build_url(self, request: RequestData) -> str:
        """Resolve the absolute URL of a request."""
        if request.full_url:
            return request.full_url
        return f"{self.base_url.rstrip('/')}/{request.path.lstrip('/')}"

    def _build_kwargs(self, request: RequestData) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "params": request.params or None,
            "headers": request.headers,
            **request.body.httpx_kwargs(),
        }
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        return kwargs

    def send(self, request: RequestData) -> httpx.Response:
        """Send a request and check its status.

        Args:
            request: The request to send.

        Returns:
            The response. Its body is already read unless the request asks
            for a streamed response.

        Raises:
            InvalidStatusError: If the status is not in request.expected_status.
            httpx.HTTPError: On transport failures.
        """
        http_request = self.http_client.build_request(
            request.method, self.build_url(request), **self._build_kwargs(request)
        )
        logger.debug(f"{http_request.method} {http_request.url}")

        response = self.http_client.send(http_request, stream=True)
        try:
            if response.status_code not in request.expected_status:
                response.read()
                raise InvalidStatusError.from_response(
                    response, request.expected_status
                )
            if request.response_encoding != ResponseEncoding.STREAM:
                response.read()
        except BaseException:
            response.close()
            raise

        return response

    async def send_async(self, request: RequestData) -> httpx.Response:
        """Send a request and check its status (async version).

        Args:
            request: The request to send.

        Returns:
            The response. Its body is already read unless the request asks
            for a streamed response.

        Raises:
            InvalidStatusError: If the status is not in request.expected_status.
            httpx.HTTPError: On transport failures.
        """
        if self.async_http_client is None:
            raise ValueError(f"No async HTTP client for {self.base_url}")

        http_request = self.async_http_client.build_request(
            request.method, self.build_url(request), **self._build_kwargs(request)
        )
        logger.debug(f"{http_request.method} {http_request.url}")

        response = await self.async_http_client.send(http_request, stream=True)
        try:
            if response.status_code not in request.expected_status:
                await response.aread()
                raise InvalidStatusError.from_response(
                    response, request.expected_status
                )
            if request.response_encoding != ResponseEncoding.STREAM:
                await response.aread()
        except BaseException:
            await response.aclose()
            raise

        return response
