"""Shared fixtures for the pyclouddrive tests."""

from __future__ import annotations

import re
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from pyclouddrive import AuthClient, CloudDrive, Credentials

CONTENT_URL = "https://content-na.drive.amazonaws.com/cdproxy/"
METADATA_URL = "https://cdws.us-east-1.amazonaws.com/drive/v1/"


def make_credentials(expires_in: timedelta = timedelta(hours=1)) -> Credentials:
    """Credentials whose access token expires `expires_in` from now."""
    return Credentials(
        client_id="client123",
        client_secret="secret456",
        redirect_uri="https://localhost/callback",
        access_token="access_token_abc",
        refresh_token="refresh_token_xyz",
        expires_at=datetime.now(tz=UTC) + expires_in,
    )


def multipart_fields(request: httpx.Request) -> dict[str, bytes]:
    """Split a multipart/form-data request body into its named fields."""
    boundary = request.headers["Content-Type"].split("boundary=", 1)[1].encode()
    fields: dict[str, bytes] = {}
    for part in request.read().split(b"--" + boundary):
        head, sep, value = part.partition(b"\r\n\r\n")
        if not sep:
            continue
        match = re.search(rb'name="([^"]+)"', head)
        if match:
            fields[match.group(1).decode()] = value[:-2]
    return fields


@pytest.fixture
def credentials() -> Credentials:
    """Credentials with an access token valid for an hour."""
    return make_credentials()


@pytest.fixture
def auth_client(tmp_path: Path, credentials: Credentials) -> AuthClient:
    """AuthClient with valid credentials and a throwaway config path."""
    return AuthClient(credentials, config_path=tmp_path / ".clouddrive")


@pytest.fixture
def drive(auth_client: AuthClient) -> Iterator[CloudDrive]:
    """CloudDrive with initialized endpoints and a fixed jitter seed."""
    client = CloudDrive(auth_client, seed=42)
    client.init_endpoint(CONTENT_URL, METADATA_URL)
    yield client
    client.close()
