"""Tests for request timeout middleware."""

import asyncio
import json

import pytest
from unittest.mock import MagicMock, patch
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.timeout import TimeoutMiddleware


def make_request(path):
    request = MagicMock(spec=Request)
    request.url.path = path
    request.method = "POST"
    return request


async def slow_call_next(req):
    await asyncio.sleep(0.3)
    return Response(content="late")


class TestTimeoutFor:

    @pytest.fixture
    def middleware(self):
        return TimeoutMiddleware(MagicMock(), timeout_seconds=30, path_timeouts={"/face-swap": 90})

    @pytest.mark.parametrize("path,expected", [
        ("/credits/balance", 30),
        ("/face-swap", 90),
        ("/v1/face-swap/", 90),
        ("/healthcheck/live", None),
        ("/docs", None),
    ])
    def test_budget_per_path(self, middleware, path, expected):
        assert middleware.timeout_for(path) == expected

    def test_custom_exclusions(self):
        middleware = TimeoutMiddleware(MagicMock(), exclude_paths=["/webhooks"])

        assert middleware.timeout_for("/webhooks/payments") is None
        assert middleware.timeout_for("/healthcheck/live") == 30.0


class TestTimeoutMiddleware:
    """Tests for TimeoutMiddleware dispatch."""

    @pytest.fixture
    def middleware(self):
        return TimeoutMiddleware(MagicMock(), timeout_seconds=0.05, path_timeouts={"/face-swap": 1.0})

    async def test_passes_request_within_timeout(self, middleware):
        async def call_next(req):
            return Response(content="success")

        result = await middleware.dispatch(make_request("/credits/balance"), call_next)

        assert result.status_code == 200
        assert result.body == b"success"

    async def test_returns_504_on_timeout(self, middleware):
        """Should answer 504 with the request id when the budget is exceeded."""
        with patch('app.middleware.timeout.get_request_id', return_value="req-123"):
            with patch('app.middleware.timeout.logger') as mock_logger:
                result = await middleware.dispatch(make_request("/credits/consume"), slow_call_next)

        assert result.status_code == 504
        body = json.loads(result.body)
        assert body["error"] == "GatewayTimeout"
        assert body["request_id"] == "req-123"
        mock_logger.warning.assert_called_once()

    async def test_longer_budget_for_face_swap(self, middleware):
        result = await middleware.dispatch(make_request("/face-swap"), slow_call_next)

        assert result.status_code == 200

    async def test_excluded_paths_never_time_out(self, middleware):
        result = await middleware.dispatch(make_request("/healthcheck/ready"), slow_call_next)

        assert result.status_code == 200
