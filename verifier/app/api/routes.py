import asyncio
import logging
import uuid
from typing import Annotated, Optional, Set

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import ORJSONResponse

from verifier.app.core.config import Settings, get_settings
from verifier.app.coordinator.orchestrator import VerificationOrchestrator
from verifier.app.events import LoggingEventEmitter
from verifier.app.schemas.verification import (
    IdentityImage,
    InputViolation,
    VerificationErrorKind,
    VerificationOutcome,
    VerificationResponse,
)

logger = logging.getLogger("verifier.api")

router = APIRouter(tags=["Tenant IC Verification"])

GENERIC_FAILURE_MESSAGE = "IC verification failed. Please try again later."

_VIOLATION_STATUS = {
    InputViolation.MISSING: status.HTTP_400_BAD_REQUEST,
    InputViolation.UNSUPPORTED_TYPE: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    InputViolation.TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
}

_ERROR_STATUS = {
    VerificationErrorKind.CREDENTIAL_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    VerificationErrorKind.STORAGE_FAILURE: status.HTTP_502_BAD_GATEWAY,
    VerificationErrorKind.EXTRACTION_FAILURE: status.HTTP_502_BAD_GATEWAY,
}

# Strong references to in-flight pipelines (see verify_ic)
_inflight: Set[asyncio.Task] = set()

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Request trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    if x_correlation_id and len(x_correlation_id) > 128:
        return str(uuid.uuid4())
    return x_correlation_id or str(uuid.uuid4())


async def get_orchestrator(request: Request) -> VerificationOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("orchestrator not initialized")
    return orchestrator


# =============================================================================
# Response mapping
# =============================================================================

def status_for(outcome: VerificationOutcome) -> int:
    if outcome.success:
        return status.HTTP_200_OK
    if outcome.error_kind is VerificationErrorKind.INVALID_INPUT:
        return _VIOLATION_STATUS[outcome.input_violation]
    return _ERROR_STATUS[outcome.error_kind]


def render(outcome: VerificationOutcome, correlation_id: str) -> ORJSONResponse:
    body = VerificationResponse.from_outcome(outcome).model_dump(mode="json")
    if body["extracted_data"] is None:
        del body["extracted_data"]

    return ORJSONResponse(
        status_code=status_for(outcome),
        content=body,
        headers={"X-Correlation-ID": correlation_id},
    )


async def _read_image(
    upload: Optional[UploadFile],
    side: str,
    max_bytes: int,
) -> Optional[IdentityImage]:
    if upload is None:
        return None

    # Bounded read: one byte past the ceiling is enough to reject
    data = await upload.read(max_bytes + 1)

    return IdentityImage(
        side=side,
        content_type=upload.content_type,
        filename=upload.filename,
        data=data,
    )


# =============================================================================
# POST /tenant/verify-ic
# =============================================================================

@router.post(
    "/tenant/verify-ic",
    summary="Verify a tenant identity card (front and back)",
    responses={
        200: {"description": "Identity fields extracted; images deleted"},
        400: {"description": "Missing or empty image"},
        413: {"description": "Image too large"},
        415: {"description": "Unsupported image type"},
        502: {"description": "Storage or text-extraction failure"},
        503: {"description": "Storage credentials unavailable"},
        500: {"description": "Unexpected failure"},
    },
)
async def verify_ic(
    orchestrator: Annotated[
        VerificationOrchestrator,
        Depends(get_orchestrator),
    ],
    settings: Annotated[
        Settings,
        Depends(get_settings),
    ],
    correlation_id: Annotated[
        str,
        Depends(get_correlation_id),
    ],
    ic_front: Annotated[
        Optional[UploadFile],
        File(description="Front of the identity card (JPEG or PNG)"),
    ] = None,
    ic_back: Annotated[
        Optional[UploadFile],
        File(description="Back of the identity card (JPEG or PNG)"),
    ] = None,
    description: Annotated[
        Optional[str],
        Form(description="Free-text note; ignored"),
    ] = None,
) -> ORJSONResponse:
    """
    Upload both sides, extract text, parse identity fields, delete the
    uploaded objects, and return the parsed record.

    The pipeline runs as its own task awaited through asyncio.shield: a
    client disconnect never interrupts it before cleanup.
    """
    try:
        front = await _read_image(ic_front, "front", settings.max_image_bytes)
        back = await _read_image(ic_back, "back", settings.max_image_bytes)

        logger.info(
            "ic_verification_requested",
            extra={
                "trace_id": correlation_id,
                "front_size": front.size if front else None,
                "back_size": back.size if back else None,
            },
        )

        task = asyncio.create_task(
            orchestrator.verify(
                front=front,
                back=back,
                verification_id=correlation_id,
                emitter=LoggingEventEmitter(),
            )
        )
        _inflight.add(task)
        task.add_done_callback(_inflight.discard)

        outcome = await asyncio.shield(task)

    except Exception as exc:
        logger.exception(
            "ic_verification_pipeline_failure",
            extra={
                "trace_id": correlation_id,
                "error_type": type(exc).__name__,
            },
        )
        return ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": GENERIC_FAILURE_MESSAGE},
            headers={"X-Correlation-ID": correlation_id},
        )

    finally:
        for upload in (ic_front, ic_back):
            if upload is not None:
                try:
                    await upload.close()
                except Exception:
                    logger.debug("upload_close_failed")

    return render(outcome, correlation_id)
