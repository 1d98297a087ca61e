"""Tests for security headers middleware."""

import pytest
from unittest.mock import MagicMock
from starlette.requests import Request
from starlette.responses import Response

from app.middleware.security_headers import SECURITY_HEADERS, SecurityHeadersMiddleware


class TestSecurityHeadersMiddleware:
    """Tests for SecurityHeadersMiddleware."""

    @pytest.fixture
    def middleware(self):
        return SecurityHeadersMiddleware(MagicMock())

    @pytest.mark.parametrize("header,value", [
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "strict-origin-when-cross-origin"),
        ("Cache-Control", "no-store, no-cache, must-revalidate, private"),
        ("Pragma", "no-cache"),
    ])
    async def test_adds_header(self, middleware, header, value):
        async def call_next(req):
            return Response(content="test")

        result = await middleware.dispatch(MagicMock(spec=Request), call_next)

        assert result.headers[header] == value

    async def test_permissions_policy_blocks_camera(self, middleware):
        async def call_next(req):
            return Response(content="test")

        result = await middleware.dispatch(MagicMock(spec=Request), call_next)

        assert "camera=()" in result.headers["Permissions-Policy"]

    async def test_removes_server_header(self, middleware):
        """Should not advertise the server implementation."""
        async def call_next(req):
            return Response(content="test", headers={"Server": "uvicorn"})

        result = await middleware.dispatch(MagicMock(spec=Request), call_next)

        assert "server" not in result.headers

    async def test_applies_to_error_responses(self, middleware):
        async def call_next(req):
            return Response(content="missing", status_code=404)

        result = await middleware.dispatch(MagicMock(spec=Request), call_next)

        assert result.status_code == 404
        for header in SECURITY_HEADERS:
            assert header in result.headers
