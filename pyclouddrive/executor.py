"""Authenticated request execution with rate-limit retries."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time

import httpx

from .auth import AuthClient
from .errors import InvalidStatusError, RequestCancelledError, handle_error
from .request import RequestData, ServiceClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5


class RequestExecutor:
    """Sends requests with a bearer token, retrying on HTTP 429.

    Requests with a replayable body are attempted up to max_retries times;
    requests with a streamed body are attempted exactly once. Between
    attempts the executor waits a random duration in [0, 2**attempt) seconds.
    Failures other than 429 are never retried.

    Attributes:
        auth_client: Source of access tokens.
        max_retries: Attempt budget for replayable requests.
    """

    def __init__(
        self,
        auth_client: AuthClient,
        max_retries: int = DEFAULT_MAX_RETRIES,
        seed: int | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            auth_client: Credential manager used for every attempt.
            max_retries: Attempt budget for replayable requests.
            seed: Seed for the backoff jitter. If None, seeded from OS entropy.
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.auth_client = auth_client
        self.max_retries = max_retries
        self._rng = random.Random(seed)

    def _attempts(self, request: RequestData) -> int:
        return self.max_retries if request.can_copy else 1

    def _prepare(self, request: RequestData, token: str) -> RequestData:
        current = request.copy_request() if request.can_copy else request
        current.headers["Authorization"] = f"Bearer {token}"
        return current

    def _should_retry(self, err: Exception, retry: int, attempts: int) -> bool:
        return (
            isinstance(err, InvalidStatusError)
            and err.got == httpx.codes.TOO_MANY_REQUESTS
            and retry + 1 < attempts
        )

    def backoff(self, retry: int) -> float:
        """Random wait in seconds before the retry following attempt `retry`."""
        return self._rng.random() * 2**retry

    def execute(
        self,
        client: ServiceClient,
        request: RequestData,
        cancel: threading.Event | None = None,
    ) -> httpx.Response:
        """Execute a request against a service.

        Args:
            client: The service to send the request to.
            request: The request to send.
            cancel: When set, aborts before the next attempt or during a
                backoff wait.

        Returns:
            The successful response.

        Raises:
            CloudDriveError: If the service responds with an unexpected status.
            RequestCancelledError: If cancel is set.
            httpx.HTTPError: On transport failures.
        """
        attempts = self._attempts(request)
        retry = 0

        while True:
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError("Request cancelled")

            current = self._prepare(request, self.auth_client.valid_token())

            try:
                return client.send(current)
            except InvalidStatusError as e:
                if not self._should_retry(e, retry, attempts):
                    raise handle_error(e) from e

            delay = self.backoff(retry)
            logger.warning(
                f"Rate limited on {request.method} {client.build_url(request)}, "
                f"retrying in {delay:.2f}s ({retry + 1}/{attempts})"
            )
            if cancel is None:
                time.sleep(delay)
            elif cancel.wait(delay):
                raise RequestCancelledError("Request cancelled")
            retry += 1

    async def execute_async(
        self, client: ServiceClient, request: RequestData
    ) -> httpx.Response:
        """Execute a request against a service (async version).

        Cancelling the calling task aborts the in-flight attempt or the
        backoff wait; a cancelled request is never retried.

        Args:
            client: The service to send the request to.
            request: The request to send.

        Returns:
            The successful response.

        Raises:
            CloudDriveError: If the service responds with an unexpected status.
            httpx.HTTPError: On transport failures.
        """
        attempts = self._attempts(request)
        retry = 0

        while True:
            current = self._prepare(request, await self.auth_client.valid_token_async())

            try:
                return await client.send_async(current)
            except InvalidStatusError as e:
                if not self._should_retry(e, retry, attempts):
                    raise handle_error(e) from e

            delay = self.backoff(retry)
            logger.warning(
                f"Rate limited on {request.method} {client.build_url(request)}, "
                f"retrying in {delay:.2f}s ({retry + 1}/{attempts})"
            )
            await asyncio.sleep(delay)
            retry += 1
