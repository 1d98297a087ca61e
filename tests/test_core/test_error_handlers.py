"""Tests for error handlers."""

import json

import pytest
from unittest.mock import MagicMock, patch
from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.db_exceptions import LockTimeoutError
from app.core.error_handlers import (
    _build_error_response,
    auth_exception_handler,
    database_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    sqlalchemy_exception_handler,
    generic_exception_handler
)
from app.core.exceptions import AuthException


@pytest.fixture
def mock_request():
    """Create mock request."""
    request = MagicMock()
    request.url.path = "/credits/consume"
    request.method = "POST"
    return request


class TestBuildErrorResponse:
    """Tests for _build_error_response helper function."""

    def test_basic_error_response(self):
        """Should build response with error and message."""
        with patch('app.core.error_handlers.get_request_id', return_value=None):
            response = _build_error_response(error="TestError", message="Test message")

        assert response == {"error": "TestError", "message": "Test message"}

    def test_includes_request_id_when_available(self):
        """Should include request_id when available."""
        with patch('app.core.error_handlers.get_request_id', return_value="test-request-id-123"):
            response = _build_error_response(error="TestError", message="Test message")

        assert response["request_id"] == "test-request-id-123"

    def test_includes_details_when_provided(self):
        """Should include details when provided."""
        with patch('app.core.error_handlers.get_request_id', return_value=None):
            details = [{"loc": ["body", "amount"], "msg": "invalid"}]
            response = _build_error_response(error="ValidationError", message="Invalid data", details=details)

        assert response["details"] == details


class TestValidationExceptionHandler:
    """Tests for validation_exception_handler."""

    async def test_includes_validation_errors(self, mock_request):
        """Should answer 422 with the validation errors as details."""
        errors = [{"loc": ["body", "amount"], "msg": "required", "type": "missing"}]
        exc = MagicMock(spec=RequestValidationError)
        exc.errors.return_value = errors

        with patch('app.core.error_handlers.get_request_id', return_value="req-123"):
            with patch('app.core.error_handlers.logger'):
                response = await validation_exception_handler(mock_request, exc)

        assert response.status_code == 422
        body = json.loads(response.body)
        assert body["error"] == "ValidationError"
        assert body["details"] == errors


class TestHttpExceptionHandler:
    """Tests for http_exception_handler."""

    @pytest.mark.parametrize("status_code,expected_error", [
        (400, "BadRequest"),
        (401, "Unauthorized"),
        (402, "PaymentRequired"),
        (403, "Forbidden"),
        (404, "NotFound"),
        (413, "PayloadTooLarge"),
        (415, "UnsupportedMediaType"),
        (429, "RateLimitExceeded"),
        (502, "BadGateway"),
    ])
    async def test_maps_status_to_error_type(self, mock_request, status_code, expected_error):
        """Should map status codes to appropriate error types."""
        exc = HTTPException(status_code=status_code, detail="Test")

        with patch('app.core.error_handlers.get_request_id', return_value="req-123"):
            with patch('app.core.error_handlers.logger'):
                response = await http_exception_handler(mock_request, exc)

        assert response.status_code == status_code
        body = json.loads(response.body)
        assert body["error"] == expected_error
        assert body["message"] == "Test"

    async def test_preserves_shaped_detail(self, mock_request):
        """A dict detail carrying an error is kept intact, with the request id added."""
        detail = {"error": "Insufficient credits", "message": "Not enough", "current_balance": 0, "required": 1}
        exc = HTTPException(status_code=402, detail=detail)

        with patch('app.core.error_handlers.get_request_id', return_value="req-123"):
            with patch('app.core.error_handlers.logger'):
                response = await http_exception_handler(mock_request, exc)

        body = json.loads(response.body)
        assert body["current_balance"] == 0
        assert body["required"] == 1
        assert body["request_id"] == "req-123"

    async def test_keeps_headers(self, mock_request):
        exc = HTTPException(status_code=503, detail="Busy", headers={"Retry-After": "5"})

        with patch('app.core.error_handlers.logger'):
            response = await http_exception_handler(mock_request, exc)

        assert response.headers["Retry-After"] == "5"


class TestAuthExceptionHandler:

    async def test_uses_context_error_type(self, mock_request):
        exc = AuthException(
            status_code=401,
            detail="Session expired. Please log in again.",
            headers={"WWW-Authenticate": "Bearer"},
            context={"error_type": "TokenExpired"}
        )

        with patch('app.core.error_handlers.logger'):
            response = await auth_exception_handler(mock_request, exc)

        assert response.status_code == 401
        body = json.loads(response.body)
        assert body["error"] == "TokenExpired"
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestDatabaseExceptionHandler:

    async def test_lock_timeout_is_retryable(self, mock_request):
        exc = LockTimeoutError()

        with patch('app.core.error_handlers.get_request_id', return_value="req-9"):
            with patch('app.core.error_handlers.logger'):
                response = await database_exception_handler(mock_request, exc)

        assert response.status_code == 503
        assert "Retry-After" in response.headers
        body = json.loads(response.body)
        assert body["request_id"] == "req-9"


class TestSqlalchemyExceptionHandler:
    """Tests for sqlalchemy_exception_handler."""

    async def test_returns_generic_database_error_message(self, mock_request):
        """Should not expose internal database error details."""
        exc = SQLAlchemyError("Sensitive database error information")

        with patch('app.core.error_handlers.get_request_id', return_value="req-123"):
            with patch('app.core.error_handlers.logger'):
                response = await sqlalchemy_exception_handler(mock_request, exc)

        assert response.status_code == 500
        body = json.loads(response.body)
        assert body["error"] == "DatabaseError"
        assert "Sensitive" not in body["message"]
        assert "Please try again later" in body["message"]


class TestGenericExceptionHandler:
    """Tests for generic_exception_handler."""

    async def test_returns_generic_error_message(self, mock_request):
        """Should not expose internal error details."""
        exc = Exception("Internal sensitive information")

        with patch('app.core.error_handlers.get_request_id', return_value="req-123"):
            with patch('app.core.error_handlers.logger'):
                response = await generic_exception_handler(mock_request, exc)

        assert response.status_code == 500
        body = json.loads(response.body)
        assert body["error"] == "InternalServerError"
        assert "sensitive" not in body["message"].lower()
        assert body["request_id"] == "req-123"
