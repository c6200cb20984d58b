"""Authentication client for the Cloud Drive API.

This module owns the OAuth2 credentials used by every Cloud Drive request.

Token Lifecycle:
1. Credentials (client id/secret, refresh token, access token and its expiry)
   are loaded from a config file, the environment, or passed in directly
2. Before each request the access token is checked against its expiry; within
   five minutes of expiring it is refreshed with the refresh token
3. Refreshed credentials replace the old ones and are handed to an optional
   hook, which by default persists them back to the config file
"""

from __future__ import annotations

import asyncio
import logging
import os
import stat
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import yaml
from pydantic import ValidationError

from .errors import CloudDriveError, InvalidStatusError, handle_error
from .models import Credentials, OAuthErrorBody, RefreshResponse

if TYPE_CHECKING:
    from typing import Self

logger = logging.getLogger(__name__)

# OAuth token endpoint
TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh access tokens this long before they expire
EXPIRY_MARGIN = timedelta(minutes=5)

# Default config locations
DEFAULT_CONFIG_NAME = ".clouddrive"
XDG_CONFIG_NAME = "clouddrive/clouddrive.conf"

# File permissions (owner read/write only)
CONFIG_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600

# HTTP client settings
DEFAULT_TIMEOUT = 10.0

# How often async callers retry taking the refresh lock
LOCK_POLL_INTERVAL = 0.01

RefreshHook = Callable[[Credentials], None]


class AuthError(Exception):
    """Raised when no usable credentials are available."""

    pass


class ConfigError(AuthError):
    """Raised when configuration loading/saving fails."""

    pass


def _get_default_config_path() -> Path:
    """Determine the default configuration file path.

    Checks in order:
    1. CLOUDDRIVE_CONFIG environment variable
    2. ~/.clouddrive (home directory)
    3. ~/.config/clouddrive/clouddrive.conf (XDG config)

    Returns:
        Path to the configuration file.
    """
    env_config = os.environ.get("CLOUDDRIVE_CONFIG")
    if env_config:
        return Path(env_config).expanduser()

    home_config = Path.home() / DEFAULT_CONFIG_NAME
    if home_config.exists():
        return home_config

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        xdg_config = Path(xdg_config_home) / XDG_CONFIG_NAME
    else:
        xdg_config = Path.home() / ".config" / XDG_CONFIG_NAME

    if xdg_config.exists():
        return xdg_config

    return home_config


def _now() -> datetime:
    return datetime.now(tz=UTC)


class AuthClient:
    """Credential manager for the Cloud Drive API.

    Hands out valid access tokens, refreshing them when they are about to
    expire. Concurrent callers share a single refresh: the refresh runs under
    a lock and the expiry is checked again once the lock is held.

    Example:
        >>> auth = AuthClient.from_config()
        >>> token = auth.valid_token()

    Attributes:
        config_path: Path to the configuration file.
        credentials: Current credentials (if loaded).
        on_refresh: Called with the new credentials after every refresh.
    """

    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        config_path: str | Path | None = None,
        http_client: httpx.Client | None = None,
        async_http_client: httpx.AsyncClient | None = None,
        on_refresh: RefreshHook | None = None,
    ) -> None:
        """Initialize the authentication client.

        Args:
            credentials: Initial credentials.
            config_path: Path to config file. If None, uses default location.
            http_client: Client used for token refresh. If None, a short-lived
                client is created per refresh.
            async_http_client: Client used for async token refresh.
            on_refresh: Hook called with refreshed credentials.
        """
        if config_path is None:
            self.config_path = _get_default_config_path()
        else:
            self.config_path = Path(config_path).expanduser()

        self.credentials = credentials
        self.http_client = http_client
        self.async_http_client = async_http_client
        self.on_refresh = on_refresh

        # Shared by sync and async callers, so one refresh runs at a time
        self._lock = threading.Lock()

    def load_credentials(self) -> Credentials | None:
        """Load credentials from the configuration file.

        Returns:
            Credentials if config exists and is valid, None otherwise.

        Raises:
            ConfigError: If config file exists but cannot be parsed.
        """
        if not self.config_path.exists():
            return None

        try:
            content = self.config_path.read_text()
            data = yaml.safe_load(content)

            if not data:
                return None

            self.credentials = Credentials.model_validate(data)
            return self.credentials

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file: {e}") from e
        except (OSError, ValidationError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    def save_credentials(self, credentials: Credentials | None = None) -> None:
        """Save credentials to the configuration file.

        Args:
            credentials: Credentials to save. If None, saves current credentials.

        Raises:
            ConfigError: If credentials cannot be saved.
        """
        credentials = credentials or self.credentials
        if credentials is None:
            raise ConfigError("No credentials to save")

        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            data = credentials.model_dump(mode="json")

            content = yaml.safe_dump(data, default_flow_style=False)
            self.config_path.write_text(content)

            self.config_path.chmod(CONFIG_FILE_MODE)

        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to save config: {e}") from e

    def _require_credentials(self) -> Credentials:
        if self.credentials is None:
            raise AuthError(
                "Not authenticated. Provide credentials or a config file with "
                "client_id, client_secret and refresh_token"
            )
        return self.credentials

    def needs_refresh(self) -> bool:
        """Check whether the access token expires within the safety margin."""
        credentials = self._require_credentials()
        return _now() > credentials.expires_at - EXPIRY_MARGIN

    def _refresh_form(self, credentials: Credentials) -> dict[str, str]:
        return {
            "grant_type": "refresh_token",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "redirect_uri": credentials.redirect_uri,
            "refresh_token": credentials.refresh_token,
        }

    def _apply_refresh(
        self, credentials: Credentials, response: httpx.Response
    ) -> Credentials:
        if response.status_code != httpx.codes.OK:
            raise _refresh_error(response)

        refreshed = RefreshResponse.model_validate_json(response.content)

        update: dict[str, object] = {
            "access_token": refreshed.access_token,
            "expires_at": _now() + timedelta(seconds=refreshed.expires_in),
        }
        if refreshed.refresh_token:
            update["refresh_token"] = refreshed.refresh_token

        self.credentials = credentials.model_copy(update=update)
        logger.info(f"Refreshed access token, expires at {self.credentials.expires_at}")

        if self.on_refresh is not None:
            self.on_refresh(self.credentials)

        return self.credentials

    def refresh(self) -> Credentials:
        """Refresh the access token using the refresh token.

        Returns:
            The new credentials.

        Raises:
            CloudDriveError: If the token endpoint rejects the refresh.
            AuthError: If no credentials are available.
            httpx.HTTPError: On transport failures.
        """
        credentials = self._require_credentials()
        data = self._refresh_form(credentials)

        if self.http_client is not None:
            response = self.http_client.post(TOKEN_URL, data=data)
        else:
            with httpx.Client(timeout=DEFAULT_TIMEOUT) as client:
                response = client.post(TOKEN_URL, data=data)

        return self._apply_refresh(credentials, response)

    async def refresh_async(self) -> Credentials:
        """Refresh the access token using the refresh token (async version).

        Returns:
            The new credentials.

        Raises:
            CloudDriveError: If the token endpoint rejects the refresh.
            AuthError: If no credentials are available.
            httpx.HTTPError: On transport failures.
        """
        credentials = self._require_credentials()
        data = self._refresh_form(credentials)

        if self.async_http_client is not None:
            response = await self.async_http_client.post(TOKEN_URL, data=data)
        else:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                response = await client.post(TOKEN_URL, data=data)

        return self._apply_refresh(credentials, response)

    async def _acquire_lock_async(self) -> None:
        # Polled so the event loop is never blocked by a sync refresh
        while not self._lock.acquire(blocking=False):
            await asyncio.sleep(LOCK_POLL_INTERVAL)

    def valid_token(self) -> str:
        """Return an access token that is valid for at least five minutes.

        Returns:
            The access token.

        Raises:
            CloudDriveError: If a needed refresh is rejected.
            AuthError: If no credentials are available.
        """
        if self.needs_refresh():
            with self._lock:
                if self.needs_refresh():
                    self.refresh()

        return self._require_credentials().access_token

    async def valid_token_async(self) -> str:
        """Return an access token that is valid for at least five minutes (async version).

        Returns:
            The access token.

        Raises:
            CloudDriveError: If a needed refresh is rejected.
            AuthError: If no credentials are available.
        """
        if self.needs_refresh():
            await self._acquire_lock_async()
            try:
                if self.needs_refresh():
                    await self.refresh_async()
            finally:
                self._lock.release()

        return self._require_credentials().access_token

    @classmethod
    def from_config(
        cls,
        config_path: str | Path | None = None,
        *,
        persist: bool = True,
    ) -> Self:
        """Create an AuthClient and load existing credentials.

        Args:
            config_path: Path to config file. If None, uses default location.
            persist: Save refreshed credentials back to the config file.

        Returns:
            AuthClient with credentials loaded (if available).
        """
        client = cls(config_path=config_path)
        client.load_credentials()
        if persist:
            client.on_refresh = client.save_credentials
        return client

    @classmethod
    def from_env(cls, on_refresh: RefreshHook | None = None) -> Self:
        """Create an AuthClient from CLOUDDRIVE_* environment variables.

        Raises:
            AuthError: If a required variable is missing.
        """
        try:
            credentials = Credentials.from_env()
        except KeyError as e:
            raise AuthError(f"Missing environment variable: {e.args[0]}") from e
        return cls(credentials, on_refresh=on_refresh)


def _refresh_error(response: httpx.Response) -> BaseException:
    """Normalize a rejected refresh, preferring the OAuth error fields."""
    status_error = InvalidStatusError.from_response(response, (httpx.codes.OK,))
    err = handle_error(status_error)

    try:
        oauth_error = OAuthErrorBody.model_validate_json(status_error.content)
    except ValidationError:
        return err

    logref = err.logref if isinstance(err, CloudDriveError) else ""
    return CloudDriveError(
        oauth_error.error,
        oauth_error.error_description,
        logref,
        http_error=status_error,
    )
