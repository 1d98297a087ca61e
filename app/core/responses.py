"""Custom response classes for the application."""

from typing import Any

from fastapi.responses import JSONResponse

from app.core.json_utils import api_json_dumps


class APIJSONResponse(JSONResponse):
    """JSONResponse tolerant of Decimal, datetime and Enum values."""

    def render(self, content: Any) -> bytes:
        return api_json_dumps(content).encode("utf-8")
