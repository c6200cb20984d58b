"""Pydantic models for the Cloud Drive API."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Credentials(BaseModel):
    """OAuth2 credentials for the Cloud Drive API.

    Stored in the clouddrive config file in YAML format.
    """

    client_id: str = Field(..., description="OAuth client identifier")
    client_secret: str = Field(..., description="OAuth client secret")
    redirect_uri: str = Field(default="", description="Registered redirect URI")
    access_token: str = Field(default="", description="Short-lived access token")
    refresh_token: str = Field(..., description="Long-lived refresh token")
    expires_at: datetime = Field(
        default_factory=lambda: datetime.fromtimestamp(0, tz=UTC),
        description="Access token expiry (UTC)",
    )

    model_config = {"frozen": True}

    @field_validator("expires_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @classmethod
    def from_env(cls) -> Credentials:
        """Build credentials from CLOUDDRIVE_* environment variables.

        CLOUDDRIVE_EXPIRES_AT is a unix timestamp in milliseconds.
        """
        expires_ms = int(os.environ.get("CLOUDDRIVE_EXPIRES_AT") or 0)
        return cls(
            client_id=os.environ["CLOUDDRIVE_CLIENT_ID"],
            client_secret=os.environ["CLOUDDRIVE_CLIENT_SECRET"],
            redirect_uri=os.environ.get("CLOUDDRIVE_REDIRECT_URI", ""),
            access_token=os.environ.get("CLOUDDRIVE_ACCESS_TOKEN", ""),
            refresh_token=os.environ["CLOUDDRIVE_REFRESH_TOKEN"],
            expires_at=datetime.fromtimestamp(expires_ms / 1000, tz=UTC),
        )


class RefreshResponse(BaseModel):
    """Response body of the OAuth token endpoint."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None


class OAuthErrorBody(BaseModel):
    """OAuth error object returned by the token endpoint on failure."""

    error: str
    error_description: str = ""


class ErrorBody(BaseModel):
    """Error document returned by the metadata and content services."""

    code: str = ""
    message: str = ""
    logref: str = ""

    @field_validator("code", "message", "logref", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


# =============================================================================
# Cloud Drive API Models
# =============================================================================


class NodeKind(str, Enum):
    """Kind of node in the Cloud Drive storage graph."""

    ASSET = "ASSET"
    FILE = "FILE"
    FOLDER = "FOLDER"
    GROUP = "GROUP"


class NodeStatus(str, Enum):
    """Lifecycle status of a node."""

    AVAILABLE = "AVAILABLE"
    PENDING = "PENDING"
    TRASH = "TRASH"
    PURGED = "PURGED"


class Endpoint(BaseModel):
    """Response from the account endpoint discovery call."""

    customer_exists: bool = Field(default=False, alias="customerExists")
    content_url: str = Field(default="", alias="contentUrl")
    metadata_url: str = Field(default="", alias="metadataUrl")

    model_config = {"populate_by_name": True, "frozen": True}


class NodeContentProperties(BaseModel):
    """Content properties of a file node."""

    size: int = 0
    content_type: str = Field(default="", alias="contentType")
    md5: str = ""

    model_config = {"populate_by_name": True}


class Node(BaseModel):
    """A file, folder, asset or group in the Cloud Drive storage graph."""

    id: str = Field(..., description="Node identifier")
    name: str = Field(default="", description="Node name (empty for root)")
    kind: str = Field(default="", description="Node kind, see NodeKind")
    parents: list[str] = Field(default_factory=list)
    status: str = Field(default="", description="Node status, see NodeStatus")
    modified_date: datetime | None = Field(default=None, alias="modifiedDate")
    content_properties: NodeContentProperties = Field(
        default_factory=NodeContentProperties,
        alias="contentProperties",
    )
    temp_link: str = Field(
        default="",
        alias="tempLink",
        description="Short-lived pre-authorized download URL",
    )

    model_config = {"populate_by_name": True}

    @field_validator("name", "kind", "status", "temp_link", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("parents", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def is_folder(self) -> bool:
        """Check if this node is a folder."""
        return self.kind == NodeKind.FOLDER

    @property
    def is_file(self) -> bool:
        """Check if this node is a file."""
        return self.kind == NodeKind.FILE


class Nodes(BaseModel):
    """One page of a node listing."""

    nodes: list[Node] = Field(default_factory=list, alias="data")
    count: int = 0
    next_token: str = Field(default="", alias="nextToken")

    model_config = {"populate_by_name": True}

    @field_validator("nodes", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("next_token", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class NodeCreate(BaseModel):
    """Request body for creating a folder or file node."""

    name: str
    kind: NodeKind
    parents: list[str]


class NodeRename(BaseModel):
    """Request body for renaming a node."""

    name: str


class NodeMove(BaseModel):
    """Request body for moving a node between parents."""

    from_parent: str = Field(..., alias="fromParent")
    child_id: str = Field(..., alias="childId")

    model_config = {"populate_by_name": True}


class Quota(BaseModel):
    """Account storage quota."""

    quota: int = 0
    last_calculated: datetime | None = Field(default=None, alias="lastCalculated")
    available: int = 0

    model_config = {"populate_by_name": True}


class Changes(BaseModel):
    """One batch of the change feed."""

    checkpoint: str = ""
    nodes: list[Node] = Field(default_factory=list)
    reset: bool = False

    @field_validator("nodes", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class FileSpan(BaseModel):
    """Inclusive byte range of a node's content."""

    start: int = Field(..., ge=0)
    end: int = Field(..., ge=0)

    def range_header(self) -> str:
        """Value of the HTTP Range header for this span."""
        return f"bytes={self.start}-{self.end}"
