"""Router for the face swap proxy."""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import AuthenticatedUser, get_current_user
from app.core.config import settings
from app.core.database import get_db
from app.core.validation import validate_image_upload
from app.log.logging import logger
from app.middleware.rate_limit import limiter
from app.schemas.credit_schemas import InsufficientCreditsResponse
from app.schemas.error_schemas import AuthErrorResponse, ErrorResponse
from app.schemas.face_swap_schemas import FaceSwapHistoryResponse, FaceSwapResponse
from app.services.face_swap_service import (
    FaceSwapClient,
    FaceSwapService,
    ResultStorage,
    get_face_swap_client,
    get_result_storage,
)

router = APIRouter(tags=["Face Swap"])


def get_face_swap_service(
    db: AsyncSession = Depends(get_db),
    client: FaceSwapClient = Depends(get_face_swap_client),
    storage: ResultStorage = Depends(get_result_storage)
) -> FaceSwapService:
    return FaceSwapService(db, client, storage)


async def read_image(upload: UploadFile) -> bytes:
    """Read and validate one uploaded image, closing it either way."""
    try:
        content = await upload.read()
    finally:
        await upload.close()

    is_valid, status_code, message = validate_image_upload(upload, content)
    if not is_valid:
        logger.info(f"Rejected face swap upload: {message}",
                    event_type="face_swap_upload_rejected",
                    status_code=status_code,
                    content_type=upload.content_type)
        raise HTTPException(status_code=status_code, detail=message)
    return content


@router.post(
    "/face-swap",
    response_model=FaceSwapResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or empty image"},
        401: {"model": AuthErrorResponse},
        402: {"model": InsufficientCreditsResponse, "description": "Not enough credits"},
        413: {"model": ErrorResponse, "description": "Image too large"},
        415: {"model": ErrorResponse, "description": "Unsupported image type"},
        422: {"model": ErrorResponse, "description": "No usable face found"},
        500: {"model": ErrorResponse, "description": "Result could not be saved; the charge was refunded"},
        502: {"model": ErrorResponse, "description": "Face swap provider error"},
        503: {"model": ErrorResponse, "description": "Face swap provider unreachable"},
    }
)
@limiter.limit(settings.RATE_LIMIT_FACE_SWAP)
async def face_swap(
    request: Request,
    origin: UploadFile = File(..., description="Template image the face is placed onto"),
    face: UploadFile = File(..., description="Image providing the face"),
    description: Optional[str] = Form(None, max_length=500),
    origin_image_url: Optional[str] = Form(None, max_length=1024, description="Source URL of the template image"),
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: FaceSwapService = Depends(get_face_swap_service)
):
    """
    Swap the face from ``face`` onto ``origin``.

    One credit is charged, and only once the provider has produced a result.
    If the result cannot be stored the charge is refunded.
    """
    origin_bytes = await read_image(origin)
    face_bytes = await read_image(face)
    return await service.swap(
        current_user.user_id, origin_bytes, face_bytes, description=description, origin_image_url=origin_image_url
    )


@router.get(
    "/face-swap/history",
    response_model=FaceSwapHistoryResponse,
    responses={401: {"model": AuthErrorResponse}}
)
async def list_face_swap_history(
    limit: int = Query(20, ge=1, le=100, description="Page size"),
    offset: int = Query(0, ge=0, description="Number of entries to skip"),
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: FaceSwapService = Depends(get_face_swap_service)
):
    """The current user's face swap results, newest first."""
    return await service.list_history(current_user.user_id, limit=limit, offset=offset)


@router.delete(
    "/face-swap/history/{history_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        401: {"model": AuthErrorResponse},
        404: {"model": ErrorResponse, "description": "No such entry for the current user"},
    }
)
async def delete_face_swap_history(
    history_id: int,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: FaceSwapService = Depends(get_face_swap_service)
):
    """Delete one of the current user's results. The credit it cost is not refunded."""
    if not await service.delete_history(current_user.user_id, history_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Face swap history entry not found")
