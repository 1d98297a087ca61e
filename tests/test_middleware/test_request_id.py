"""Tests for request ID middleware."""

import pytest
from unittest.mock import MagicMock
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.request_id import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    get_request_id,
    request_id_var
)


class TestGetRequestId:
    """Tests for getting request ID from context."""

    def test_returns_none_outside_context(self):
        token = request_id_var.set(None)
        try:
            assert get_request_id() is None
        finally:
            request_id_var.reset(token)

    def test_returns_id_in_context(self):
        token = request_id_var.set("test-request-id-123")
        try:
            assert get_request_id() == "test-request-id-123"
        finally:
            request_id_var.reset(token)


class TestRequestIDMiddleware:
    """Tests for RequestIDMiddleware."""

    @pytest.fixture
    def middleware(self):
        return RequestIDMiddleware(MagicMock())

    def make_request(self, headers):
        request = MagicMock(spec=Request)
        request.headers = headers
        return request

    async def test_generates_new_request_id(self, middleware):
        """Should generate a UUID when the caller sends none."""
        seen = []

        async def call_next(req):
            seen.append(get_request_id())
            return Response(content="test")

        result = await middleware.dispatch(self.make_request({}), call_next)

        assert len(result.headers[REQUEST_ID_HEADER]) == 36
        assert seen == [result.headers[REQUEST_ID_HEADER]]

    async def test_uses_provided_request_id(self, middleware):
        """Should reuse the X-Request-ID set by a proxy or calling service."""
        async def call_next(req):
            assert get_request_id() == "upstream-id-456"
            return Response(content="test")

        result = await middleware.dispatch(self.make_request({REQUEST_ID_HEADER: "upstream-id-456"}), call_next)

        assert result.headers[REQUEST_ID_HEADER] == "upstream-id-456"

    async def test_context_reset_after_request(self, middleware):
        async def call_next(req):
            return Response(content="test")

        await middleware.dispatch(self.make_request({}), call_next)

        assert get_request_id() is None

    async def test_context_reset_when_handler_raises(self, middleware):
        async def call_next(req):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await middleware.dispatch(self.make_request({}), call_next)

        assert get_request_id() is None
