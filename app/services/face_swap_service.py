"""Face swap proxy: provider client, result storage and the charge coupling."""

import asyncio
import base64
import binascii
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import status
from sqlalchemy import select, func, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ServiceException
from app.log.logging import logger
from app.models.face_swap import FaceSwapHistory
from app.schemas.credit_schemas import CreditFailureReason, InsufficientCreditsResponse
from app.schemas.face_swap_schemas import FaceSwapHistoryItem, FaceSwapHistoryResponse, FaceSwapResponse
from app.services.credit import CreditService


class FaceSwapError(ServiceException):
    """A face swap request that cannot produce a result."""

    def __init__(self, status_code: int, message: str, details: Optional[str] = None, body: Dict[str, Any] = None):
        detail = body or {"error": message}
        if details:
            detail["details"] = details
        super().__init__(status_code=status_code, detail=detail)


class FaceSwapClient:
    """
    Async client for the mergeface endpoint.

    Connection failures are retried; any HTTP answer ends the attempt loop.
    """

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        url: str = None,
        timeout: float = None,
        max_attempts: int = None,
        retry_delay: float = None,
        merge_rate: int = None
    ):
        self.api_key = api_key if api_key is not None else settings.FACEPP_API_KEY
        self.api_secret = api_secret if api_secret is not None else settings.FACEPP_API_SECRET
        self.url = url or settings.FACEPP_MERGEFACE_URL
        self.timeout = timeout or settings.FACE_SWAP_TIMEOUT_SECONDS
        self.max_attempts = max(1, max_attempts or settings.FACE_SWAP_MAX_ATTEMPTS)
        self.retry_delay = settings.FACE_SWAP_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.merge_rate = merge_rate or settings.FACE_SWAP_MERGE_RATE
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 10.0))
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    async def merge(self, template: bytes, merge: bytes) -> str:
        """
        Merge the face in ``merge`` onto ``template``.

        Args:
            template: Image the face is placed onto
            merge: Image providing the face

        Returns:
            str: The base64 encoded result image

        Raises:
            FaceSwapError: 500 when unconfigured, 503 when the provider cannot
                be reached, 502 for an error status or a non-JSON body, 422 when
                the provider found no usable face
        """
        if not self.configured:
            raise FaceSwapError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Face swap API not configured")

        data = {
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "template_base64": base64.b64encode(template).decode("ascii"),
            "merge_base64": base64.b64encode(merge).decode("ascii"),
            "merge_rate": str(self.merge_rate),
        }

        response = None
        last_error: Optional[Exception] = None
        client = self._get_http_client()
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.post(self.url, data=data)
                break
            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"Face swap API attempt {attempt}/{self.max_attempts} failed: {e}",
                               event_type="face_swap_attempt_failed",
                               attempt=attempt,
                               will_retry=attempt < self.max_attempts,
                               error_type=type(e).__name__)
                if attempt < self.max_attempts and self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay)

        if response is None:
            logger.error("Face swap API unreachable after all attempts",
                         event_type="face_swap_unreachable",
                         attempts=self.max_attempts)
            raise FaceSwapError(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "Face swap service unreachable, please retry later",
                details=str(last_error) if last_error else None
            )

        if response.status_code >= 400:
            body = self._json_or_none(response) or {}
            logger.error(f"Face swap API HTTP error: {response.status_code}",
                         event_type="face_swap_http_error",
                         status_code=response.status_code,
                         provider_error=body.get("error_message"))
            raise FaceSwapError(
                status.HTTP_502_BAD_GATEWAY,
                self._provider_error_message(response.status_code),
                details=body.get("error_message") or f"HTTP {response.status_code}"
            )

        body = self._json_or_none(response)
        if body is None:
            logger.error("Face swap API returned a non-JSON body",
                         event_type="face_swap_invalid_response",
                         content_type=response.headers.get("content-type"))
            raise FaceSwapError(
                status.HTTP_502_BAD_GATEWAY,
                "Face swap service returned invalid response",
                details=response.text[:100]
            )

        result = body.get("result")
        if not result:
            provider_error = body.get("error_message") or body.get("error") or "Face swap processing failed"
            logger.info("Face swap API produced no result",
                        event_type="face_swap_no_result",
                        provider_error=provider_error)
            raise FaceSwapError(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "Face swap failed. Please ensure both images contain clear faces.",
                details=provider_error
            )
        return result

    @staticmethod
    def _json_or_none(response: httpx.Response) -> Optional[Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @staticmethod
    def _provider_error_message(status_code: int) -> str:
        if status_code == 400:
            return "Face swap request rejected, check image format and size"
        if status_code in (401, 403):
            return "Face swap provider refused the credentials"
        if status_code == 429:
            return "Face swap provider is rate limiting, please retry later"
        return "Face swap service temporarily unavailable"


class ResultStorage:
    """Writes result images below a base directory."""

    def __init__(self, base_dir: str = None):
        """
        Args:
            base_dir: Root of the stored results, FACE_SWAP_STORAGE_DIR by default
        """
        self.base_dir = Path(base_dir or settings.FACE_SWAP_STORAGE_DIR)

    async def save(self, user_id: str, image: bytes) -> str:
        """
        Store a JPEG result under the user's directory.

        Args:
            user_id: Owner of the result
            image: Decoded image bytes

        Returns:
            str: Path of the file relative to the base directory

        Raises:
            OSError: The file could not be written
        """
        relative = f"face-swap/{user_id}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.jpg"
        await asyncio.to_thread(self._write, self.base_dir / relative, image)
        return relative

    async def delete(self, relative_path: str) -> bool:
        """
        Remove a stored result.

        Returns:
            bool: Whether a file was removed

        Raises:
            ValueError: The path points outside the base directory
            OSError: The file exists but could not be removed
        """
        path = (self.base_dir / relative_path).resolve()
        if not path.is_relative_to(self.base_dir.resolve()):
            raise ValueError(f"Path escapes the storage directory: {relative_path}")
        return await asyncio.to_thread(self._remove, path)

    @staticmethod
    def _write(path: Path, image: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image)

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


_client: Optional[FaceSwapClient] = None


def get_face_swap_client() -> FaceSwapClient:
    global _client
    if _client is None:
        _client = FaceSwapClient()
    return _client


async def close_face_swap_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None


def get_result_storage() -> ResultStorage:
    return ResultStorage()


class FaceSwapService:
    """
    Charges for a face swap only once the provider has produced a result.

    The credit is consumed after the provider call succeeds and refunded if
    the result cannot be stored, so a user is never charged without a result
    and never receives one without paying.
    """

    def __init__(self, db: AsyncSession, client: FaceSwapClient, storage: ResultStorage):
        """
        Args:
            db: Session shared with the credit ledger
            client: Face swap provider client
            storage: Where result images are written
        """
        self.db = db
        self.client = client
        self.storage = storage
        self.credit_service = CreditService(db)

    @staticmethod
    def _insufficient(balance: int, required: int, message: str) -> FaceSwapError:
        body = InsufficientCreditsResponse(message=message, current_balance=balance, required=required)
        return FaceSwapError(status.HTTP_402_PAYMENT_REQUIRED, body.error, body=body.model_dump())

    async def swap(
        self,
        user_id: str,
        origin: bytes,
        face: bytes,
        description: Optional[str] = None,
        origin_image_url: Optional[str] = None
    ) -> FaceSwapResponse:
        """
        Swap the face in ``face`` onto ``origin`` and charge for the result.

        The balance is checked before the provider is called, the credit is
        consumed once a result exists, and the charge is refunded when the
        result cannot be decoded or stored.

        Args:
            user_id: The paying user
            origin: Template image bytes
            face: Image bytes providing the face
            description: Ledger and history description
            origin_image_url: Where the client got the template from, kept
                with the history entry

        Returns:
            FaceSwapResponse: The result image, the charge and the history entry

        Raises:
            FaceSwapError: 402 without enough credits, the provider's failure
                status (422, 502, 503 or 500 when unconfigured), or 500 when
                the result could not be saved and the charge was refunded
            DatabaseException: The charge itself could not be stored
        """
        cost = settings.FACE_SWAP_CREDIT_COST
        balance = await self.credit_service.get_balance(user_id)
        if balance.balance < cost:
            logger.info("Face swap refused before provider call: insufficient credits",
                        event_type="face_swap_insufficient_credits",
                        user_id=user_id,
                        balance=balance.balance,
                        required=cost)
            raise self._insufficient(balance.balance, cost, "Not enough credits for a face swap")

        started = time.monotonic()
        result = await self.client.merge(origin, face)
        processing_time_ms = int((time.monotonic() - started) * 1000)

        charge = await self.credit_service.consume(
            user_id,
            cost,
            description=description or "Face swap",
            metadata={"action": "face_swap", "processing_time_ms": processing_time_ms}
        )
        if not charge.success:
            logger.warning("Face swap result withheld: charge refused after provider success",
                           event_type="face_swap_charge_refused",
                           user_id=user_id,
                           reason=charge.reason)
            if charge.reason == CreditFailureReason.INSUFFICIENT_FUNDS:
                raise self._insufficient(charge.balance or 0, cost, charge.message)
            raise FaceSwapError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to consume credits",
                                details=charge.message)

        try:
            image = base64.b64decode(result, validate=True)
            image_path = await self.storage.save(user_id, image)
            history = FaceSwapHistory(
                user_id=user_id,
                result_image_path=image_path,
                origin_image_url=origin_image_url,
                description=description or "Face swap result",
                credit_transaction_id=charge.transaction_id,
                processing_time_ms=processing_time_ms
            )
            self.db.add(history)
            await self.db.commit()
        except (binascii.Error, OSError, SQLAlchemyError) as e:
            await self.db.rollback()
            logger.error(f"Failed to persist face swap result: {e}",
                         event_type="face_swap_persist_failed",
                         user_id=user_id,
                         transaction_id=charge.transaction_id,
                         error_type=type(e).__name__)
            refund = await self.credit_service.refund(
                user_id, charge.transaction_id, reason="Face swap result could not be saved"
            )
            logger.info("Refunded face swap charge",
                        event_type="face_swap_refunded",
                        user_id=user_id,
                        transaction_id=charge.transaction_id,
                        refunded=refund.success)
            raise FaceSwapError(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Face swap succeeded, but failed to save result image. Your credit was refunded.",
                details=str(e)
            ) from e

        logger.info("Face swap delivered",
                    event_type="face_swap_completed",
                    user_id=user_id,
                    history_id=history.id,
                    transaction_id=charge.transaction_id,
                    processing_time_ms=processing_time_ms)
        return FaceSwapResponse(
            result=result,
            processing_time_ms=processing_time_ms,
            balance_after=charge.balance_after,
            history_id=history.id,
            transaction_id=charge.transaction_id,
            image_path=image_path
        )

    async def list_history(self, user_id: str, limit: int = 20, offset: int = 0) -> FaceSwapHistoryResponse:
        """The user's delivered results, newest first."""
        total = (await self.db.execute(
            select(func.count(FaceSwapHistory.id)).where(FaceSwapHistory.user_id == user_id)
        )).scalar_one()
        result = await self.db.execute(
            select(FaceSwapHistory)
            .where(FaceSwapHistory.user_id == user_id)
            .order_by(desc(FaceSwapHistory.created_at), desc(FaceSwapHistory.id))
            .offset(offset)
            .limit(limit)
        )
        return FaceSwapHistoryResponse(
            items=[FaceSwapHistoryItem.model_validate(row) for row in result.scalars().all()],
            total_count=total
        )

    async def delete_history(self, user_id: str, history_id: int) -> bool:
        """
        Delete one of the user's history entries and its stored image.

        The charge that paid for it stays in the ledger.

        Returns:
            bool: False when the user has no entry with this id
        """
        result = await self.db.execute(
            select(FaceSwapHistory).where(
                FaceSwapHistory.id == history_id,
                FaceSwapHistory.user_id == user_id
            )
        )
        history = result.scalar_one_or_none()
        if history is None:
            return False

        image_path = history.result_image_path
        await self.db.delete(history)
        await self.db.commit()

        try:
            removed = await self.storage.delete(image_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Stored result of history entry {history_id} could not be removed: {e}",
                           event_type="face_swap_result_cleanup_failed",
                           user_id=user_id,
                           history_id=history_id,
                           image_path=image_path)
            removed = False

        logger.info("Face swap history entry deleted",
                    event_type="face_swap_history_deleted",
                    user_id=user_id,
                    history_id=history_id,
                    image_removed=removed)
        return True
