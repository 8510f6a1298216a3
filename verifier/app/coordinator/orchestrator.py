"""
IC verification orchestrator.

IMPORTANT:
The orchestrator owns one verification request end to end and persists
nothing. It MUST NOT interpret OCR text (the analyzer does) and MUST NOT
speak HTTP (the route does).

State machine:

    RECEIVED -> UPLOADING -> UPLOADED -> EXTRACTING -> EXTRACTED
             -> ANALYZED -> CLEANING -> DONE

HARD GUARANTEES:
- Invalid input is rejected before any network call, credentials included.
- Every path that reaches UPLOADING reaches CLEANING: cleanup runs in a
  finally block under asyncio.shield, so unexpected errors and task
  cancellation still delete every object that may exist.
- A cleanup failure is logged and reported on the outcome but never
  changes the response.
- Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Generic, List, Optional, Sequence, Tuple, TypeVar
from uuid import uuid4

import httpx

from verifier.app.analysis.ic_analyzer import ICFieldAnalyzer
from verifier.app.core.config import Settings
from verifier.app.events import (
    NullEventEmitter,
    VerificationEvent,
    VerificationEventEmitter,
)
from verifier.app.schemas.aws import StorageObject
from verifier.app.schemas.identity import TextLine
from verifier.app.schemas.verification import (
    CleanupReport,
    IdentityImage,
    InputViolation,
    VerificationErrorKind,
    VerificationOutcome,
    VerificationState,
)
from verifier.app.services.credentials import (
    CredentialProvider,
    CredentialUnavailable,
    build_credential_provider,
)
from verifier.app.services.object_storage import ObjectStorageClient, UploadFailed
from verifier.app.services.text_extraction import (
    DocumentExtractionClient,
    TextExtractor,
)

logger = logging.getLogger("verifier.orchestrator")

T = TypeVar("T")


# ----------------------------------------------------------------------
# Input gate
# ----------------------------------------------------------------------

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/png": "png",
}

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

FILE_EXTENSIONS = {"jpeg": "jpg", "png": "png"}

MESSAGE_MISSING = "Both IC front and back images are required"
MESSAGE_UNSUPPORTED_TYPE = "Only JPEG and PNG images are allowed"
MESSAGE_CREDENTIALS = "Storage credentials are unavailable"
MESSAGE_STORAGE = "Failed to upload images to storage"
MESSAGE_EXTRACTION = "Failed to extract text from IC images"
MESSAGE_SUCCESS = "IC verification completed. Images deleted for privacy."


def detect_image_format(data: bytes) -> Optional[str]:
    if data.startswith(JPEG_MAGIC):
        return "jpeg"
    if data.startswith(PNG_MAGIC):
        return "png"
    return None


# ----------------------------------------------------------------------
# Stage results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StageResult(Generic[T]):
    """
    Tagged result of one pipeline stage.

    ``cleanup_keys`` lists the objects the caller must still delete,
    whether or not the stage succeeded.
    """

    value: Optional[T] = None
    error: Optional[str] = None
    cleanup_keys: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------

class VerificationOrchestrator:
    """
    Drives validate -> upload both -> extract both -> analyze -> delete
    both -> return.
    """

    def __init__(
        self,
        *,
        credential_provider: CredentialProvider,
        storage: ObjectStorageClient,
        extractor: TextExtractor,
        analyzer: Optional[ICFieldAnalyzer] = None,
        max_image_bytes: int = 5 * 1024 * 1024,
        key_prefix: str = "ic-verification",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._credentials = credential_provider
        self._storage = storage
        self._extractor = extractor
        self._analyzer = analyzer or ICFieldAnalyzer()
        self.max_image_bytes = max_image_bytes
        self.key_prefix = key_prefix.strip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Integration constructor (composition root)
    # ------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient,
    ) -> "VerificationOrchestrator":
        credential_provider = build_credential_provider(settings, http_client)

        storage = ObjectStorageClient(
            http_client=http_client,
            credential_provider=credential_provider,
            bucket=settings.storage_bucket,
            region=settings.aws_region,
            host=settings.resolved_storage_host,
            timeout_seconds=settings.request_timeout_seconds,
        )

        extractor = DocumentExtractionClient(
            http_client=http_client,
            credential_provider=credential_provider,
            region=settings.aws_region,
            host=settings.resolved_extraction_host,
            timeout_seconds=settings.request_timeout_seconds,
        )

        analyzer = ICFieldAnalyzer(
            century_pivot=settings.dob_century_pivot,
            review_threshold=settings.manual_review_confidence_threshold,
        )

        return cls(
            credential_provider=credential_provider,
            storage=storage,
            extractor=extractor,
            analyzer=analyzer,
            max_image_bytes=settings.max_image_bytes,
            key_prefix=settings.storage_key_prefix,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def verify(
        self,
        *,
        front: Optional[IdentityImage],
        back: Optional[IdentityImage],
        verification_id: str,
        emitter: Optional[VerificationEventEmitter] = None,
    ) -> VerificationOutcome:
        """
        Run the full pipeline for one pair of IC images.

        Expected failures are returned as outcomes, never raised. The
        emitter is strictly observational.
        """
        emitter = emitter or NullEventEmitter()

        await self._emit(emitter, verification_id, VerificationState.RECEIVED)

        # --------------------------------------------------------------
        # 1. Input gate (no network)
        # --------------------------------------------------------------
        violation = self.validate(front, back)
        if violation is not None:
            violation_kind, message = violation
            logger.info(
                "verification_rejected",
                extra={
                    "trace_id": verification_id,
                    "violation": violation_kind.value,
                },
            )
            return await self._finish(
                emitter,
                VerificationOutcome(
                    verification_id=verification_id,
                    success=False,
                    message=message,
                    error_kind=VerificationErrorKind.INVALID_INPUT,
                    input_violation=violation_kind,
                ),
            )

        # --------------------------------------------------------------
        # 2. Credential pre-flight (nothing uploaded yet)
        # --------------------------------------------------------------
        try:
            await self._credentials.get()
        except CredentialUnavailable:
            logger.error(
                "verification_failed",
                extra={
                    "trace_id": verification_id,
                    "error_kind": VerificationErrorKind.CREDENTIAL_UNAVAILABLE.value,
                },
            )
            return await self._finish(
                emitter,
                VerificationOutcome(
                    verification_id=verification_id,
                    success=False,
                    message=MESSAGE_CREDENTIALS,
                    error_kind=VerificationErrorKind.CREDENTIAL_UNAVAILABLE,
                ),
            )

        objects = [self._storage_object(front), self._storage_object(back)]

        # Until uploads settle, every generated key may exist remotely
        pending_keys: Tuple[str, ...] = tuple(obj.key for obj in objects)

        error_kind: Optional[VerificationErrorKind] = None
        message = MESSAGE_SUCCESS
        record = None

        try:
            # ----------------------------------------------------------
            # 3. Upload both sides
            # ----------------------------------------------------------
            await self._emit(
                emitter,
                verification_id,
                VerificationState.UPLOADING,
                {"keys": list(pending_keys)},
            )

            upload = await self._upload_all(objects)
            pending_keys = upload.cleanup_keys

            if not upload.ok:
                error_kind = VerificationErrorKind.STORAGE_FAILURE
                message = MESSAGE_STORAGE
            else:
                await self._emit(emitter, verification_id, VerificationState.UPLOADED)

                # ------------------------------------------------------
                # 4. Extract text from both sides
                # ------------------------------------------------------
                await self._emit(
                    emitter, verification_id, VerificationState.EXTRACTING
                )

                extraction = await self._extract_all(objects)

                if not extraction.ok:
                    error_kind = VerificationErrorKind.EXTRACTION_FAILURE
                    message = MESSAGE_EXTRACTION
                else:
                    front_lines, back_lines = extraction.value
                    await self._emit(
                        emitter,
                        verification_id,
                        VerificationState.EXTRACTED,
                        {
                            "front_line_count": len(front_lines),
                            "back_line_count": len(back_lines),
                        },
                    )

                    # --------------------------------------------------
                    # 5. Analyze (pure, cannot fail the pipeline)
                    # --------------------------------------------------
                    record = self._analyzer.analyze(front_lines, back_lines)
                    await self._emit(
                        emitter,
                        verification_id,
                        VerificationState.ANALYZED,
                        {
                            "fields_extracted_count": record.fields_extracted_count,
                            "requires_manual_review": record.requires_manual_review,
                        },
                    )

            if error_kind is not None:
                logger.error(
                    "verification_failed",
                    extra={
                        "trace_id": verification_id,
                        "error_kind": error_kind.value,
                        "stage_error": (
                            upload.error if not upload.ok else extraction.error
                        ),
                    },
                )

        finally:
            # ----------------------------------------------------------
            # 6. Cleanup (always, shielded from cancellation)
            # ----------------------------------------------------------
            cleanup_task = asyncio.ensure_future(
                self._cleanup(pending_keys, verification_id)
            )
            await self._emit(
                emitter,
                verification_id,
                VerificationState.CLEANING,
                {"keys": list(pending_keys)},
            )
            cleanup = await asyncio.shield(cleanup_task)

        if error_kind is None:
            logger.info(
                "verification_completed",
                extra={
                    "trace_id": verification_id,
                    "fields_extracted_count": record.fields_extracted_count,
                    "cleanup_confirmed": cleanup.confirmed,
                },
            )

        return await self._finish(
            emitter,
            VerificationOutcome(
                verification_id=verification_id,
                success=error_kind is None,
                message=message,
                error_kind=error_kind,
                extracted_data=record,
                cleanup=cleanup,
            ),
        )

    def validate(
        self,
        front: Optional[IdentityImage],
        back: Optional[IdentityImage],
    ) -> Optional[Tuple[InputViolation, str]]:
        """
        Input gate. Returns the first violation, or None.

        Checks in order: presence, declared type and magic bytes, size.
        """
        images = [front, back]

        if any(image is None or image.size == 0 for image in images):
            return InputViolation.MISSING, MESSAGE_MISSING

        for image in images:
            declared = ALLOWED_CONTENT_TYPES.get(
                (image.content_type or "").lower()
            )
            if declared is None or detect_image_format(image.data) != declared:
                return InputViolation.UNSUPPORTED_TYPE, MESSAGE_UNSUPPORTED_TYPE

        for image in images:
            if image.size > self.max_image_bytes:
                return InputViolation.TOO_LARGE, (
                    "Image size must not exceed "
                    f"{self.max_image_bytes // (1024 * 1024)}MB"
                )

        return None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _upload_all(
        self,
        objects: Sequence[StorageObject],
    ) -> StageResult[List[str]]:
        results = await asyncio.gather(
            *(
                self._storage.upload(obj.data, obj.key, obj.content_type)
                for obj in objects
            ),
            return_exceptions=True,
        )

        cleanup_keys: List[str] = []
        errors: List[str] = []
        urls: List[str] = []

        for obj, result in zip(objects, results):
            if isinstance(result, UploadFailed):
                errors.append(f"{obj.side}: {result}")
            elif isinstance(result, BaseException):
                # Outcome unknown: the object may have been written
                cleanup_keys.append(obj.key)
                errors.append(f"{obj.side}: {type(result).__name__}")
            else:
                cleanup_keys.append(obj.key)
                urls.append(result)

        if errors:
            return StageResult(
                error="; ".join(errors),
                cleanup_keys=tuple(cleanup_keys),
            )

        return StageResult(value=urls, cleanup_keys=tuple(cleanup_keys))

    async def _extract_all(
        self,
        objects: Sequence[StorageObject],
    ) -> StageResult[Tuple[List[TextLine], List[TextLine]]]:
        results = await asyncio.gather(
            *(self._extractor.extract(obj.data) for obj in objects),
            return_exceptions=True,
        )

        keys = tuple(obj.key for obj in objects)
        errors: List[str] = []

        for obj, result in zip(objects, results):
            if isinstance(result, BaseException):
                errors.append(f"{obj.side}: {type(result).__name__}")
            elif not result.success:
                errors.append(f"{obj.side}: {result.failure_type}")

        if errors:
            return StageResult(error="; ".join(errors), cleanup_keys=keys)

        front_result, back_result = results
        return StageResult(
            value=(list(front_result.text_lines), list(back_result.text_lines)),
            cleanup_keys=keys,
        )

    async def _cleanup(
        self,
        keys: Sequence[str],
        verification_id: str,
    ) -> CleanupReport:
        if not keys:
            return CleanupReport()

        results = await asyncio.gather(
            *(self._storage.delete(key) for key in keys),
            return_exceptions=True,
        )

        failed = [key for key, result in zip(keys, results) if result is not True]

        if failed:
            logger.warning(
                "cleanup_incomplete",
                extra={"trace_id": verification_id, "failed_keys": failed},
            )

        return CleanupReport(attempted_keys=list(keys), failed_keys=failed)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _storage_object(self, image: IdentityImage) -> StorageObject:
        image_format = detect_image_format(image.data)
        timestamp = int(self._clock().timestamp())

        key = (
            f"{self.key_prefix}/{uuid4().hex}_{timestamp}_{image.side}."
            f"{FILE_EXTENSIONS[image_format]}"
        )

        return StorageObject(
            bucket=self._storage.bucket,
            key=key,
            side=image.side,
            content_type=f"image/{image_format}",
            data=image.data,
        )

    async def _finish(
        self,
        emitter: VerificationEventEmitter,
        outcome: VerificationOutcome,
    ) -> VerificationOutcome:
        await self._emit(
            emitter,
            outcome.verification_id,
            VerificationState.DONE,
            {
                "success": outcome.success,
                "error_kind": (
                    outcome.error_kind.value if outcome.error_kind else None
                ),
                "cleanup_confirmed": outcome.cleanup.confirmed,
            },
        )
        return outcome

    @staticmethod
    async def _emit(
        emitter: VerificationEventEmitter,
        verification_id: str,
        state: VerificationState,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await emitter.emit(
                VerificationEvent(
                    verification_id=verification_id,
                    state=state,
                    details=details,
                )
            )
        except Exception:
            # Fail-safe: events never influence control flow
            logger.debug("event_emission_failed", extra={"state": state.value})
