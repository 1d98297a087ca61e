"""Face swap response schemas."""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class FaceSwapResponse(BaseModel):
    success: bool = True
    result: str = Field(..., description="Base64 encoded result image")
    processing_time_ms: int = Field(..., description="Time spent in the face swap provider")
    balance_after: int = Field(..., description="Balance after the charge")
    history_id: int
    transaction_id: int
    image_path: Optional[str] = Field(None, description="Storage path of the persisted result")

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "result": "/9j/4AAQSkZJRgABAQ...",
                "processing_time_ms": 2140,
                "balance_after": 4,
                "history_id": 17,
                "transaction_id": 42,
                "image_path": "face-swap/0b1c7a3e/1760781234567-5f2a9c1e.jpg"
            }
        }
    }


class FaceSwapHistoryItem(BaseModel):
    id: int
    result_image_path: str
    origin_image_url: Optional[str] = None
    description: Optional[str] = None
    credit_transaction_id: Optional[int] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FaceSwapHistoryResponse(BaseModel):
    items: List[FaceSwapHistoryItem]
    total_count: int
