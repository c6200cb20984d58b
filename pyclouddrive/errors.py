"""Error types and error normalization for the Cloud Drive API.

Every non-2xx response from the metadata, content or endpoint services is
turned into a CloudDriveError by handle_error(). Transport failures, decode
failures and cancellation are not touched and reach the caller as raised by
httpx, pydantic or asyncio.
"""

from __future__ import annotations

from enum import Enum

import httpx
from pydantic import ValidationError

from .models import ErrorBody

# Content types the services use for structured error documents
ERROR_CONTENT_TYPES = frozenset({"application/vnd.error+json", "application/json"})

# Message sent without a code for missing nodes
NODE_DOES_NOT_EXIST_MESSAGE = "Node does not exists"

RATE_EXCEEDED_MESSAGE = "Rate exceeded"


class ErrorCode(str, Enum):
    """Error codes reported by the Cloud Drive services."""

    NO_ACTIVE_SUBSCRIPTION_FOUND = "NO_ACTIVE_SUBSCRIPTION_FOUND"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"
    PARENT_NODE_ID_NOT_FOUND = "PARENT_NODE_ID_NOT_FOUND"
    NAME_ALREADY_EXISTS = "NAME_ALREADY_EXISTS"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    UNKNOWN = "unknown"


class InvalidStatusError(Exception):
    """Raised by the transport when a response has an unexpected status code."""

    def __init__(
        self,
        expected: tuple[int, ...],
        got: int,
        content: str,
        headers: httpx.Headers | None = None,
    ) -> None:
        super().__init__(f"Invalid response status: expected {expected}, got {got}")
        self.expected = expected
        self.got = got
        self.content = content
        self.headers = headers if headers is not None else httpx.Headers()

    @classmethod
    def from_response(
        cls, response: httpx.Response, expected: tuple[int, ...]
    ) -> InvalidStatusError:
        """Build the error from a response whose body has been read."""
        return cls(
            expected=expected,
            got=response.status_code,
            content=response.text,
            headers=response.headers,
        )


class CloudDriveError(Exception):
    """Structured error returned by every Cloud Drive API call.

    Attributes:
        code: Machine readable code, usually one of ErrorCode.
        message: Human readable message from the service.
        logref: Opaque service-side log reference.
        http_error: The raw status failure, if the error came from a response.
    """

    def __init__(
        self,
        code: str,
        message: str,
        logref: str = "",
        http_error: InvalidStatusError | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.logref = logref
        self.http_error = http_error

    @property
    def status_code(self) -> int | None:
        """HTTP status of the underlying response, if any."""
        return self.http_error.got if self.http_error is not None else None


class CustomerNotFoundError(CloudDriveError):
    """Raised when endpoint discovery reports no Cloud Drive customer."""

    def __init__(self) -> None:
        super().__init__(
            ErrorCode.CUSTOMER_NOT_FOUND.value, "Endpoint customer does not exist"
        )


class RootNotFoundError(CloudDriveError):
    """Raised when the root node lookup returns nothing."""

    def __init__(self) -> None:
        super().__init__(ErrorCode.NODE_NOT_FOUND.value, "Root node not found")


class EndpointError(Exception):
    """Raised when service endpoints are used before or re-initialized after discovery."""

    pass


class RequestCancelledError(Exception):
    """Raised when a synchronous request is cancelled through its cancel event."""

    pass


def _media_type(headers: httpx.Headers) -> str:
    return headers.get("Content-Type", "").split(";", 1)[0].strip().lower()


def handle_error(err: BaseException) -> BaseException:
    """Normalize a failed request into a CloudDriveError.

    Only InvalidStatusError is normalized; any other exception is returned
    unchanged.

    Args:
        err: The exception raised while sending a request.

    Returns:
        A CloudDriveError for status failures, otherwise err itself.
    """
    if not isinstance(err, InvalidStatusError):
        return err

    unknown = ErrorBody(code=ErrorCode.UNKNOWN.value, message=err.content)

    if _media_type(err.headers) in ERROR_CONTENT_TYPES:
        try:
            body = ErrorBody.model_validate_json(err.content)
        except ValidationError:
            body = unknown
    else:
        body = unknown

    code, message = body.code, body.message

    if (
        err.got == httpx.codes.NOT_FOUND
        and code == ""
        and message == NODE_DOES_NOT_EXIST_MESSAGE
    ):
        code = ErrorCode.NODE_NOT_FOUND.value

    if err.got == httpx.codes.TOO_MANY_REQUESTS:
        # {"logref":"LOGREF-UUID","message":"Rate exceeded","code":""}
        code = ErrorCode.TOO_MANY_REQUESTS.value
        if message == "":
            message = RATE_EXCEEDED_MESSAGE

    return CloudDriveError(code, message, body.logref, http_error=err)
