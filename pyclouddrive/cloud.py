"""Cloud Drive client.

This module implements the node, content, change feed and quota operations
of the Cloud Drive API on top of RequestExecutor.

Storage Operations:
- Discover the content and metadata endpoints
- Look up the root node, nodes by name and nodes by id
- List children and poll the change feed
- Create folders, upload and overwrite files
- Download content (optionally a byte range or through a temp link)
- Rename, move and trash nodes
- Query the account quota
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import IO, TYPE_CHECKING, TypeVar

import httpx
from pydantic import BaseModel

from .auth import AuthClient
from .errors import (
    CloudDriveError,
    CustomerNotFoundError,
    EndpointError,
    ErrorCode,
    RootNotFoundError,
)
from .executor import DEFAULT_MAX_RETRIES, RequestExecutor
from .models import (
    Changes,
    Endpoint,
    FileSpan,
    Node,
    NodeCreate,
    NodeKind,
    NodeMove,
    NodeRename,
    Nodes,
    Quota,
)
from .request import (
    JSONBody,
    RequestData,
    ResponseEncoding,
    ServiceClient,
    StreamBody,
)

if TYPE_CHECKING:
    from typing import Self

logger = logging.getLogger(__name__)

# Account endpoint discovery service
ENDPOINT_URL = "https://drive.amazonaws.com/drive/v1"

# API endpoints (relative to the discovered service URLs)
ACCOUNT_ENDPOINT = "/account/endpoint"
QUOTA_ENDPOINT = "/account/quota"
NODES_ENDPOINT = "/nodes"
CHANGES_ENDPOINT = "/changes"
TRASH_ENDPOINT = "/trash"

# HTTP client settings
DEFAULT_TIMEOUT = 30.0
UPLOAD_TIMEOUT = 300.0  # 5 minutes for uploads

OK = httpx.codes.OK
CREATED = httpx.codes.CREATED
PARTIAL_CONTENT = httpx.codes.PARTIAL_CONTENT

Reader = bytes | IO[bytes]


def escape_filter_value(value: str) -> str:
    """Escape a value for use inside a quoted node filter."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


class NodeContent:
    """Streamed content of a downloaded node.

    Must be closed after use; supports both `with` and `async with`.

    Attributes:
        response: The underlying streamed response.
        size: Content length in bytes, -1 if the server did not send it.
    """

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        content_length = response.headers.get("Content-Length")
        self.size = int(content_length) if content_length is not None else -1

    def read(self) -> bytes:
        """Read the whole content."""
        return self.response.read()

    def iter_bytes(self, chunk_size: int | None = None) -> Iterator[bytes]:
        """Iterate over the content in chunks."""
        return self.response.iter_bytes(chunk_size)

    def close(self) -> None:
        self.response.close()

    async def aread(self) -> bytes:
        """Read the whole content (async version)."""
        return await self.response.aread()

    def aiter_bytes(self, chunk_size: int | None = None) -> AsyncIterator[bytes]:
        """Iterate over the content in chunks (async version)."""
        return self.response.aiter_bytes(chunk_size)

    async def aclose(self) -> None:
        await self.response.aclose()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()


M = TypeVar("M", bound=BaseModel)


def _decode(model: type[M], response: httpx.Response) -> M:
    return model.model_validate_json(response.content)


def _require_temp_link(node: Node) -> None:
    if not node.temp_link:
        raise CloudDriveError(
            ErrorCode.UNKNOWN.value, f"No temp link for node: {node.id}"
        )


def _decode_changes(response: httpx.Response) -> Changes:
    # The feed is a stream of JSON documents; the first one is the batch.
    text = response.text.lstrip()
    value, _ = json.JSONDecoder().raw_decode(text)
    return Changes.model_validate(value)


class CloudDrive:
    """Client for the Cloud Drive API.

    Every request goes through one RequestExecutor, so the metadata, content
    and endpoint services share the same credentials and retry policy.
    Sync operations take an optional `cancel` event; setting it aborts the
    operation before its next attempt or during a rate-limit backoff wait.

    Example:
        >>> auth = AuthClient.from_config()
        >>> with CloudDrive(auth) as drive:
        ...     drive.connect()
        ...     root = drive.lookup_root()
        ...     folder = drive.create_folder(root.id, "Photos")

    Attributes:
        auth_client: The credential manager.
        executor: Executes every request.
        endpoint_client: Client of the endpoint discovery service.
        content_client: Client of the content service (after init_endpoint).
        metadata_client: Client of the metadata service (after init_endpoint).
    """

    def __init__(
        self,
        auth_client: AuthClient,
        http_client: httpx.Client | None = None,
        async_http_client: httpx.AsyncClient | None = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        seed: int | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            auth_client: Credential manager.
            http_client: HTTP client for all services. Created if None.
            async_http_client: Async HTTP client for all services. Created on
                first async use if None.
            max_retries: Attempt budget for rate limited requests.
            seed: Seed for the backoff jitter.
        """
        self._owns_http_client = http_client is None
        self._owns_async_http_client = async_http_client is None

        self.http_client = http_client or httpx.Client(timeout=DEFAULT_TIMEOUT)
        self._async_http_client = async_http_client

        self.auth_client = auth_client

        self.executor = RequestExecutor(auth_client, max_retries=max_retries, seed=seed)

        self.endpoint_client = ServiceClient(
            ENDPOINT_URL, self.http_client, self._async_http_client
        )
        self.content_client: ServiceClient | None = None
        self.metadata_client: ServiceClient | None = None

    @property
    def async_http_client(self) -> httpx.AsyncClient:
        """Async HTTP client shared by all services, created on first use."""
        if self._async_http_client is None:
            self._async_http_client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._async_http_client

    def _bind_async(self, client: ServiceClient) -> ServiceClient:
        if client.async_http_client is None:
            client.async_http_client = self.async_http_client
        return client

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    def _endpoint_request(self) -> RequestData:
        return RequestData(method="GET", path=ACCOUNT_ENDPOINT)

    def _check_endpoint(self, endpoint: Endpoint) -> Endpoint:
        if not endpoint.customer_exists:
            raise CustomerNotFoundError()
        logger.debug(
            f"Discovered endpoints: content={endpoint.content_url} "
            f"metadata={endpoint.metadata_url}"
        )
        return endpoint

    def get_endpoint(self, cancel: threading.Event | None = None) -> Endpoint:
        """Discover the content and metadata service URLs.

        Returns:
            The discovered endpoint.

        Raises:
            CustomerNotFoundError: If the account has no Cloud Drive customer.
            CloudDriveError: If the discovery request fails.
        """
        response = self.executor.execute(
            self.endpoint_client, self._endpoint_request(), cancel
        )
        return self._check_endpoint(_decode(Endpoint, response))

    async def get_endpoint_async(self) -> Endpoint:
        """Discover the content and metadata service URLs (async version)."""
        response = await self.executor.execute_async(
            self._bind_async(self.endpoint_client), self._endpoint_request()
        )
        return self._check_endpoint(_decode(Endpoint, response))

    def init_endpoint(self, content_url: str, metadata_url: str) -> None:
        """Set up the content and metadata services.

        Raises:
            EndpointError: If the endpoints are already initialized.
        """
        if self.content_client is not None or self.metadata_client is not None:
            raise EndpointError("Endpoints already initialized")

        self.content_client = ServiceClient(
            content_url, self.http_client, self._async_http_client
        )
        self.metadata_client = ServiceClient(
            metadata_url, self.http_client, self._async_http_client
        )

    def connect(self, cancel: threading.Event | None = None) -> Endpoint:
        """Discover and initialize the service endpoints."""
        endpoint = self.get_endpoint(cancel)
        self.init_endpoint(endpoint.content_url, endpoint.metadata_url)
        return endpoint

    async def connect_async(self) -> Endpoint:
        """Discover and initialize the service endpoints (async version)."""
        endpoint = await self.get_endpoint_async()
        self.init_endpoint(endpoint.content_url, endpoint.metadata_url)
        return endpoint

    def _metadata(self) -> ServiceClient:
        if self.metadata_client is None:
            raise EndpointError("Metadata client not initialized")
        return self.metadata_client

    def _content(self) -> ServiceClient:
        if self.content_client is None:
            raise EndpointError("Content client not initialized")
        return self.content_client

    def metadata_request(
        self, request: RequestData, cancel: threading.Event | None = None
    ) -> httpx.Response:
        """Execute a request against the metadata service."""
        return self.executor.execute(self._metadata(), request, cancel)

    async def metadata_request_async(self, request: RequestData) -> httpx.Response:
        """Execute a request against the metadata service (async version)."""
        return await self.executor.execute_async(
            self._bind_async(self._metadata()), request
        )

    def content_request(
        self, request: RequestData, cancel: threading.Event | None = None
    ) -> httpx.Response:
        """Execute a request against the content service."""
        return self.executor.execute(self._content(), request, cancel)

    async def content_request_async(self, request: RequestData) -> httpx.Response:
        """Execute a request against the content service (async version)."""
        return await self.executor.execute_async(
            self._bind_async(self._content()), request
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _filter_request(self, filters: str) -> RequestData:
        return RequestData(method="GET", path=NODES_ENDPOINT, params={"filters": filters})

    def _root_request(self) -> RequestData:
        return self._filter_request("isRoot:true")

    def _lookup_request(self, parent_id: str, name: str) -> RequestData:
        return self._filter_request(
            f'parents:{parent_id} AND name:"{escape_filter_value(name)}"'
        )

    def _node_request(self, node_id: str) -> RequestData:
        return RequestData(
            method="GET",
            path=f"{NODES_ENDPOINT}/{node_id}",
            params={"tempLink": "true"},
        )

    def _first_root(self, response: httpx.Response) -> Node:
        nodes = _decode(Nodes, response)
        if not nodes.nodes:
            raise RootNotFoundError()
        return nodes.nodes[0]

    def _first_node(self, response: httpx.Response) -> Node | None:
        nodes = _decode(Nodes, response)
        return nodes.nodes[0] if nodes.nodes else None

    def lookup_root(self, cancel: threading.Event | None = None) -> Node:
        """Get the root node.

        Raises:
            RootNotFoundError: If the service returns no root node.
        """
        response = self.metadata_request(self._root_request(), cancel)
        return self._first_root(response)

    async def lookup_root_async(self) -> Node:
        """Get the root node (async version)."""
        return self._first_root(await self.metadata_request_async(self._root_request()))

    def lookup_node(
        self, parent_id: str, name: str, cancel: threading.Event | None = None
    ) -> Node | None:
        """Find a child node by name.

        Args:
            parent_id: Id of the parent node.
            name: Exact name of the child.

        Returns:
            The node, or None if the parent has no child with that name.
        """
        return self._first_node(
            self.metadata_request(self._lookup_request(parent_id, name), cancel)
        )

    async def lookup_node_async(self, parent_id: str, name: str) -> Node | None:
        """Find a child node by name (async version)."""
        return self._first_node(
            await self.metadata_request_async(self._lookup_request(parent_id, name))
        )

    def lookup_node_by_id(
        self, node_id: str, cancel: threading.Event | None = None
    ) -> Node:
        """Get a node by id, including a temp link to its content."""
        response = self.metadata_request(self._node_request(node_id), cancel)
        return _decode(Node, response)

    async def lookup_node_by_id_async(self, node_id: str) -> Node:
        """Get a node by id, including a temp link to its content (async version)."""
        response = await self.metadata_request_async(self._node_request(node_id))
        return _decode(Node, response)

    # -------------------------------------------------------------------------
    # Listing and changes
    # -------------------------------------------------------------------------

    def _children_request(self, parent_id: str, next_token: str) -> RequestData:
        params = {"startToken": next_token} if next_token else {}
        return RequestData(
            method="GET",
            path=f"{NODES_ENDPOINT}/{parent_id}/children",
            params=params,
        )

    def node_children(
        self, parent_id: str, cancel: threading.Event | None = None
    ) -> list[Node]:
        """List all children of a node, following pagination.

        Args:
            parent_id: Id of the parent node.

        Returns:
            All child nodes.
        """
        nodes: list[Node] = []
        next_token = ""

        while True:
            response = self.metadata_request(
                self._children_request(parent_id, next_token), cancel
            )
            page = _decode(Nodes, response)

            if not page.nodes:
                break

            nodes.extend(page.nodes)

            if not page.next_token:
                break

            next_token = page.next_token

        return nodes

    async def node_children_async(self, parent_id: str) -> list[Node]:
        """List all children of a node, following pagination (async version)."""
        nodes: list[Node] = []
        next_token = ""

        while True:
            response = await self.metadata_request_async(
                self._children_request(parent_id, next_token)
            )
            page = _decode(Nodes, response)

            if not page.nodes:
                break

            nodes.extend(page.nodes)

            if not page.next_token:
                break

            next_token = page.next_token

        return nodes

    def _changes_request(self, checkpoint: str) -> RequestData:
        request = RequestData(method="POST", path=CHANGES_ENDPOINT)
        if checkpoint:
            request.body = JSONBody(value={"checkpoint": checkpoint})
        return request

    def changes(
        self, checkpoint: str = "", cancel: threading.Event | None = None
    ) -> Changes:
        """Get the changes since a checkpoint.

        Args:
            checkpoint: Checkpoint of a previous call, empty for a full sync.

        Returns:
            The changed nodes and the checkpoint for the next call. `reset` is
            set when the caller must discard its state and start over.
        """
        request = self._changes_request(checkpoint)
        return _decode_changes(self.metadata_request(request, cancel))

    async def changes_async(self, checkpoint: str = "") -> Changes:
        """Get the changes since a checkpoint (async version)."""
        response = await self.metadata_request_async(self._changes_request(checkpoint))
        return _decode_changes(response)

    # -------------------------------------------------------------------------
    # Node management
    # -------------------------------------------------------------------------

    def _create_folder_request(self, parent_id: str, name: str) -> RequestData:
        create = NodeCreate(name=name, kind=NodeKind.FOLDER, parents=[parent_id])
        return RequestData(
            method="POST",
            path=NODES_ENDPOINT,
            body=JSONBody(value=create.model_dump(mode="json")),
            expected_status=(CREATED,),
        )

    def _delete_request(self, node_id: str) -> RequestData:
        return RequestData(method="PUT", path=f"{TRASH_ENDPOINT}/{node_id}")

    def _rename_request(self, node_id: str, new_name: str) -> RequestData:
        return RequestData(
            method="PATCH",
            path=f"{NODES_ENDPOINT}/{node_id}",
            body=JSONBody(value=NodeRename(name=new_name).model_dump()),
        )

    def _move_request(
        self, node_id: str, from_parent_id: str, to_parent_id: str
    ) -> RequestData:
        move = NodeMove(from_parent=from_parent_id, child_id=node_id)
        return RequestData(
            method="POST",
            path=f"{NODES_ENDPOINT}/{to_parent_id}/children",
            body=JSONBody(value=move.model_dump(by_alias=True)),
        )

    def create_folder(
        self, parent_id: str, name: str, cancel: threading.Event | None = None
    ) -> Node:
        """Create a folder.

        Raises:
            CloudDriveError: NAME_ALREADY_EXISTS if the parent already has a
                child with that name.
        """
        request = self._create_folder_request(parent_id, name)
        return _decode(Node, self.metadata_request(request, cancel))

    async def create_folder_async(self, parent_id: str, name: str) -> Node:
        """Create a folder (async version)."""
        request = self._create_folder_request(parent_id, name)
        return _decode(Node, await self.metadata_request_async(request))

    def delete_node(
        self, node_id: str, cancel: threading.Event | None = None
    ) -> Node:
        """Move a node to the trash."""
        response = self.metadata_request(self._delete_request(node_id), cancel)
        return _decode(Node, response)

    async def delete_node_async(self, node_id: str) -> Node:
        """Move a node to the trash (async version)."""
        response = await self.metadata_request_async(self._delete_request(node_id))
        return _decode(Node, response)

    def rename_node(
        self, node_id: str, new_name: str, cancel: threading.Event | None = None
    ) -> Node:
        """Rename a node."""
        request = self._rename_request(node_id, new_name)
        return _decode(Node, self.metadata_request(request, cancel))

    async def rename_node_async(self, node_id: str, new_name: str) -> Node:
        """Rename a node (async version)."""
        request = self._rename_request(node_id, new_name)
        return _decode(Node, await self.metadata_request_async(request))

    def move_node(
        self,
        node_id: str,
        from_parent_id: str,
        to_parent_id: str,
        cancel: threading.Event | None = None,
    ) -> Node:
        """Move a node from one parent to another."""
        request = self._move_request(node_id, from_parent_id, to_parent_id)
        return _decode(Node, self.metadata_request(request, cancel))

    async def move_node_async(
        self, node_id: str, from_parent_id: str, to_parent_id: str
    ) -> Node:
        """Move a node from one parent to another (async version)."""
        request = self._move_request(node_id, from_parent_id, to_parent_id)
        return _decode(Node, await self.metadata_request_async(request))

    # -------------------------------------------------------------------------
    # Content
    # -------------------------------------------------------------------------

    def _download_request(
        self,
        span: FileSpan | None,
        *,
        path: str = "",
        full_url: str | None = None,
    ) -> RequestData:
        request = RequestData(
            method="GET",
            path=path,
            full_url=full_url,
            expected_status=(OK, PARTIAL_CONTENT),
            response_encoding=ResponseEncoding.STREAM,
        )
        if span is not None:
            request.headers["Range"] = span.range_header()
        return request

    def _upload_request(self, parent_id: str, name: str, reader: Reader) -> RequestData:
        create = NodeCreate(name=name, kind=NodeKind.FILE, parents=[parent_id])
        return RequestData(
            method="POST",
            path=NODES_ENDPOINT,
            params={"suppress": "deduplication"},
            body=StreamBody(
                reader=reader,
                extra={"metadata": create.model_dump_json()},
            ),
            expected_status=(CREATED,),
            timeout=UPLOAD_TIMEOUT,
        )

    def _overwrite_request(self, node_id: str, reader: Reader) -> RequestData:
        return RequestData(
            method="PUT",
            path=f"{NODES_ENDPOINT}/{node_id}/content",
            body=StreamBody(reader=reader),
            timeout=UPLOAD_TIMEOUT,
        )

    def download_node(
        self,
        node_id: str,
        span: FileSpan | None = None,
        cancel: threading.Event | None = None,
    ) -> NodeContent:
        """Download a node's content.

        Args:
            node_id: Id of the file node.
            span: Inclusive byte range to download. Whole content if None.

        Returns:
            The streamed content; close it when done.
        """
        request = self._download_request(
            span, path=f"{NODES_ENDPOINT}/{node_id}/content"
        )
        return NodeContent(self.content_request(request, cancel))

    async def download_node_async(
        self, node_id: str, span: FileSpan | None = None
    ) -> NodeContent:
        """Download a node's content (async version)."""
        request = self._download_request(
            span, path=f"{NODES_ENDPOINT}/{node_id}/content"
        )
        return NodeContent(await self.content_request_async(request))

    def download_node_by_temp_link(
        self,
        node_id: str,
        span: FileSpan | None = None,
        cancel: threading.Event | None = None,
    ) -> NodeContent:
        """Download a node's content through its temp link.

        Args:
            node_id: Id of the file node.
            span: Inclusive byte range to download. Whole content if None.

        Returns:
            The streamed content; close it when done.
        """
        node = self.lookup_node_by_id(node_id, cancel)
        _require_temp_link(node)
        request = self._download_request(span, full_url=node.temp_link)
        return NodeContent(self.content_request(request, cancel))

    async def download_node_by_temp_link_async(
        self, node_id: str, span: FileSpan | None = None
    ) -> NodeContent:
        """Download a node's content through its temp link (async version)."""
        node = await self.lookup_node_by_id_async(node_id)
        _require_temp_link(node)
        request = self._download_request(span, full_url=node.temp_link)
        return NodeContent(await self.content_request_async(request))

    def upload_node(
        self,
        parent_id: str,
        name: str,
        reader: Reader,
        cancel: threading.Event | None = None,
    ) -> Node:
        """Upload a new file.

        The upload is attempted once; it is not retried on rate limiting.

        Args:
            parent_id: Id of the parent folder.
            name: Name of the new file.
            reader: File content as bytes or a binary file object.

        Returns:
            The created node.
        """
        request = self._upload_request(parent_id, name, reader)
        return _decode(Node, self.content_request(request, cancel))

    async def upload_node_async(self, parent_id: str, name: str, reader: Reader) -> Node:
        """Upload a new file (async version)."""
        request = self._upload_request(parent_id, name, reader)
        return _decode(Node, await self.content_request_async(request))

    def upload_file(
        self,
        file_path: str | Path,
        parent_id: str,
        name: str | None = None,
        cancel: threading.Event | None = None,
    ) -> Node:
        """Upload a local file.

        Args:
            file_path: Path to the local file.
            parent_id: Id of the parent folder.
            name: Remote name (defaults to the local file name).

        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        with file_path.open("rb") as f:
            return self.upload_node(parent_id, name or file_path.name, f, cancel)

    def overwrite_node(
        self, node_id: str, reader: Reader, cancel: threading.Event | None = None
    ) -> Node:
        """Replace the content of an existing file.

        The upload is attempted once; it is not retried on rate limiting.
        """
        request = self._overwrite_request(node_id, reader)
        return _decode(Node, self.content_request(request, cancel))

    async def overwrite_node_async(self, node_id: str, reader: Reader) -> Node:
        """Replace the content of an existing file (async version)."""
        request = self._overwrite_request(node_id, reader)
        return _decode(Node, await self.content_request_async(request))

    # -------------------------------------------------------------------------
    # Account
    # -------------------------------------------------------------------------

    def _quota_request(self) -> RequestData:
        return RequestData(method="GET", path=QUOTA_ENDPOINT)

    def quota(self, cancel: threading.Event | None = None) -> Quota:
        """Get the account storage quota."""
        response = self.metadata_request(self._quota_request(), cancel)
        return _decode(Quota, response)

    async def quota_async(self) -> Quota:
        """Get the account storage quota (async version)."""
        return _decode(Quota, await self.metadata_request_async(self._quota_request()))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(cls, config_path: str | Path | None = None) -> Self:
        """Create a CloudDrive using credentials from the config file.

        Args:
            config_path: Path to config file. If None, uses default location.

        Returns:
            CloudDrive with credentials loaded; call connect() before use.
        """
        auth_client = AuthClient.from_config(config_path)
        return cls(auth_client)

    def close(self) -> None:
        """Close the HTTP client if it was created by this instance."""
        if self._owns_http_client:
            self.http_client.close()

    async def aclose(self) -> None:
        """Close both HTTP clients if they were created by this instance."""
        if self._owns_async_http_client and self._async_http_client is not None:
            await self._async_http_client.aclose()
        self.close()

    def __enter__(self) -> Self:
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Context manager exit - close owned HTTP clients."""
        self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()
