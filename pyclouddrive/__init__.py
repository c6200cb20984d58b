"""Python client for the Cloud Drive API."""

from .auth import AuthClient, AuthError, ConfigError
from .cloud import CloudDrive, NodeContent
from .errors import (
    CloudDriveError,
    CustomerNotFoundError,
    EndpointError,
    ErrorCode,
    InvalidStatusError,
    RequestCancelledError,
    RootNotFoundError,
    handle_error,
)
from .executor import RequestExecutor
from .models import (
    Changes,
    Credentials,
    Endpoint,
    FileSpan,
    Node,
    NodeKind,
    NodeStatus,
    Quota,
)
from .request import (
    EmptyBody,
    FormBody,
    JSONBody,
    RequestData,
    ResponseEncoding,
    ServiceClient,
    StreamBody,
)

__all__ = [
    # Auth
    "AuthClient",
    "AuthError",
    "ConfigError",
    "Credentials",
    # Errors
    "CloudDriveError",
    "CustomerNotFoundError",
    "EndpointError",
    "ErrorCode",
    "InvalidStatusError",
    "RequestCancelledError",
    "RootNotFoundError",
    "handle_error",
    # Requests
    "EmptyBody",
    "FormBody",
    "JSONBody",
    "RequestData",
    "RequestExecutor",
    "ResponseEncoding",
    "ServiceClient",
    "StreamBody",
    # Cloud
    "Changes",
    "CloudDrive",
    "Endpoint",
    "FileSpan",
    "Node",
    "NodeContent",
    "NodeKind",
    "NodeStatus",
    "Quota",
]
