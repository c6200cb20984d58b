"""Tests for request execution and rate-limit retries."""

from __future__ import annotations

import asyncio
import io
import json
import threading
from unittest.mock import patch

import httpx
import pytest
from pytest_httpx import HTTPXMock

from pyclouddrive import (
    AuthClient,
    CloudDriveError,
    ErrorCode,
    FormBody,
    JSONBody,
    RequestCancelledError,
    RequestData,
    RequestExecutor,
    ServiceClient,
    StreamBody,
)

BASE_URL = "https://metadata.example.com/drive/v1/"
NODES_URL = "https://metadata.example.com/drive/v1/nodes"

RATE_LIMITED = {
    "status_code": 429,
    "json": {"logref": "X", "message": "Rate exceeded", "code": ""},
}


@pytest.fixture
def service() -> ServiceClient:
    """ServiceClient for a fake metadata service."""
    return ServiceClient(BASE_URL, httpx.Client(), httpx.AsyncClient())


@pytest.fixture
def executor(auth_client: AuthClient) -> RequestExecutor:
    """Executor with the default retry budget and a fixed seed."""
    return RequestExecutor(auth_client, seed=7)


class TestRequestData:
    """Tests for request descriptors."""

    def test_replayable_bodies_can_copy(self) -> None:
        """Test that in-memory bodies are retry eligible."""
        assert RequestData(method="GET", path="/nodes").can_copy is True
        assert RequestData(method="POST", body=JSONBody(value={"a": 1})).can_copy
        assert RequestData(method="POST", body=FormBody(values={"a": "1"})).can_copy

    def test_stream_body_cannot_copy(self) -> None:
        """Test that streamed bodies are not retry eligible."""
        request = RequestData(method="PUT", body=StreamBody(reader=io.BytesIO(b"x")))
        assert request.can_copy is False
        with pytest.raises(ValueError):
            request.copy_request()

    def test_copy_is_independent(self) -> None:
        """Test that a copy does not share mutable state."""
        request = RequestData(
            method="POST",
            path="/nodes",
            headers={"X-Test": "1"},
            body=JSONBody(value={"parents": ["a"]}),
        )
        copy = request.copy_request()
        copy.headers["Authorization"] = "Bearer t"
        copy.body.value["parents"].append("b")

        assert "Authorization" not in request.headers
        assert request.body.value == {"parents": ["a"]}

    def test_build_url(self, service: ServiceClient) -> None:
        """Test URL resolution against the base URL."""
        assert service.build_url(RequestData(method="GET", path="/nodes")) == NODES_URL
        full = RequestData(method="GET", full_url="https://temp.example.com/x")
        assert service.build_url(full) == "https://temp.example.com/x"


class TestExecute:
    """Tests for RequestExecutor.execute."""

    def test_success_sets_bearer_token(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test a successful request carries the access token."""
        httpx_mock.add_response(url=NODES_URL, method="GET", json={"data": []})

        response = executor.execute(service, RequestData(method="GET", path="/nodes"))

        assert response.json() == {"data": []}
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer access_token_abc"

    def test_persistent_rate_limit_exhausts_retries(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that max_retries attempts are made before giving up."""
        for _ in range(executor.max_retries):
            httpx_mock.add_response(url=NODES_URL, method="GET", **RATE_LIMITED)

        with patch("pyclouddrive.executor.time.sleep") as sleep:
            with pytest.raises(CloudDriveError) as exc_info:
                executor.execute(service, RequestData(method="GET", path="/nodes"))

        assert exc_info.value.code == ErrorCode.TOO_MANY_REQUESTS
        assert exc_info.value.message == "Rate exceeded"
        assert len(httpx_mock.get_requests()) == 5
        assert sleep.call_count == 4
        for retry, call in enumerate(sleep.call_args_list):
            assert 0 <= call.args[0] < 2**retry

    @pytest.mark.parametrize("k", [1, 2, 3, 5])
    def test_succeeds_after_rate_limits(
        self,
        k: int,
        executor: RequestExecutor,
        service: ServiceClient,
        httpx_mock: HTTPXMock,
    ) -> None:
        """Test success on attempt k after k-1 rate limited attempts."""
        for _ in range(k - 1):
            httpx_mock.add_response(url=NODES_URL, method="POST", **RATE_LIMITED)
        httpx_mock.add_response(url=NODES_URL, method="POST", json={"ok": True})

        request = RequestData(
            method="POST", path="/nodes", body=JSONBody(value={"name": "a"})
        )
        with patch("pyclouddrive.executor.time.sleep"):
            response = executor.execute(service, request)

        assert response.json() == {"ok": True}
        sent = httpx_mock.get_requests()
        assert len(sent) == k
        assert all(json.loads(r.content) == {"name": "a"} for r in sent)

    def test_stream_body_single_attempt(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that a streamed upload is never retried."""
        httpx_mock.add_response(url=NODES_URL, method="POST", **RATE_LIMITED)

        request = RequestData(
            method="POST",
            path="/nodes",
            body=StreamBody(reader=io.BytesIO(b"12345")),
            expected_status=(201,),
        )
        with patch("pyclouddrive.executor.time.sleep") as sleep:
            with pytest.raises(CloudDriveError) as exc_info:
                executor.execute(service, request)

        assert exc_info.value.code == ErrorCode.TOO_MANY_REQUESTS
        assert len(httpx_mock.get_requests()) == 1
        sleep.assert_not_called()

    def test_other_errors_not_retried(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that non-429 failures are normalized without retrying."""
        httpx_mock.add_response(
            url=NODES_URL,
            method="GET",
            status_code=404,
            json={"message": "Node does not exists"},
        )

        with pytest.raises(CloudDriveError) as exc_info:
            executor.execute(service, RequestData(method="GET", path="/nodes"))

        assert exc_info.value.code == ErrorCode.NODE_NOT_FOUND
        assert len(httpx_mock.get_requests()) == 1

    def test_transport_error_passes_through(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that network errors are raised unchanged."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url=NODES_URL)

        with pytest.raises(httpx.ReadTimeout):
            executor.execute(service, RequestData(method="GET", path="/nodes"))

    def test_custom_max_retries(
        self, auth_client: AuthClient, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test a configured retry budget."""
        executor = RequestExecutor(auth_client, max_retries=2, seed=1)
        for _ in range(2):
            httpx_mock.add_response(url=NODES_URL, method="GET", **RATE_LIMITED)

        with patch("pyclouddrive.executor.time.sleep"):
            with pytest.raises(CloudDriveError):
                executor.execute(service, RequestData(method="GET", path="/nodes"))

        assert len(httpx_mock.get_requests()) == 2

    def test_invalid_max_retries(self, auth_client: AuthClient) -> None:
        """Test that a retry budget below one is rejected."""
        with pytest.raises(ValueError):
            RequestExecutor(auth_client, max_retries=0)

    def test_cancelled_before_attempt(
        self, executor: RequestExecutor, service: ServiceClient
    ) -> None:
        """Test that a set cancel event aborts before sending."""
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RequestCancelledError):
            executor.execute(service, RequestData(method="GET", path="/nodes"), cancel)

    def test_cancelled_during_backoff(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that cancelling during a backoff wait stops retrying."""
        cancel = threading.Event()

        def rate_limited(request: httpx.Request) -> httpx.Response:
            cancel.set()
            return httpx.Response(429, text="")

        httpx_mock.add_callback(rate_limited, url=NODES_URL, method="GET")

        with pytest.raises(RequestCancelledError):
            executor.execute(service, RequestData(method="GET", path="/nodes"), cancel)

        assert len(httpx_mock.get_requests()) == 1


class TestBackoff:
    """Tests for the backoff jitter."""

    def test_backoff_within_bounds(self, executor: RequestExecutor) -> None:
        """Test that waits stay below 2**retry seconds."""
        for retry in range(6):
            for _ in range(50):
                assert 0 <= executor.backoff(retry) < 2**retry

    def test_fixed_seed_is_deterministic(self, auth_client: AuthClient) -> None:
        """Test that the same seed yields the same waits."""
        first = RequestExecutor(auth_client, seed=123)
        second = RequestExecutor(auth_client, seed=123)

        assert [first.backoff(r) for r in range(5)] == [
            second.backoff(r) for r in range(5)
        ]


class TestExecuteAsync:
    """Tests for RequestExecutor.execute_async."""

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_exhausts_retries(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that max_retries attempts are made before giving up."""
        for _ in range(executor.max_retries):
            httpx_mock.add_response(url=NODES_URL, method="GET", **RATE_LIMITED)

        with patch("pyclouddrive.executor.asyncio.sleep") as sleep:
            with pytest.raises(CloudDriveError) as exc_info:
                await executor.execute_async(
                    service, RequestData(method="GET", path="/nodes")
                )

        assert exc_info.value.code == ErrorCode.TOO_MANY_REQUESTS
        assert len(httpx_mock.get_requests()) == 5
        assert sleep.await_count == 4

    @pytest.mark.asyncio
    async def test_succeeds_after_rate_limit(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test success after one rate limited attempt."""
        httpx_mock.add_response(url=NODES_URL, method="GET", **RATE_LIMITED)
        httpx_mock.add_response(url=NODES_URL, method="GET", json={"data": []})

        with patch("pyclouddrive.executor.asyncio.sleep"):
            response = await executor.execute_async(
                service, RequestData(method="GET", path="/nodes")
            )

        assert response.json() == {"data": []}
        assert len(httpx_mock.get_requests()) == 2

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff_not_retried(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that cancellation during the backoff wait propagates."""
        httpx_mock.add_response(url=NODES_URL, method="GET", **RATE_LIMITED)

        with patch(
            "pyclouddrive.executor.asyncio.sleep", side_effect=asyncio.CancelledError
        ):
            with pytest.raises(asyncio.CancelledError):
                await executor.execute_async(
                    service, RequestData(method="GET", path="/nodes")
                )

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_cancelled_in_flight(
        self, executor: RequestExecutor, service: ServiceClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test that cancelling the task aborts an in-flight request."""
        started = asyncio.Event()

        async def hang(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(30)
            return httpx.Response(200, json={})

        httpx_mock.add_callback(hang, url=NODES_URL, method="GET")

        task = asyncio.create_task(
            executor.execute_async(service, RequestData(method="GET", path="/nodes"))
        )
        await asyncio.wait_for(started.wait(), timeout=5)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(httpx_mock.get_requests()) == 1
