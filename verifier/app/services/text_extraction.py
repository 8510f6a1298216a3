"""
Text extraction client for IC images.

Submits image bytes to Rekognition DetectText (JSON 1.1 protocol),
signed with the same SigV4 signer as object storage.

HARD GUARANTEES:
- extract NEVER raises; every outcome is an ExtractionResult
- only LINE detections are returned, in service order
- confidence is clamped to 0..100
- one network call per image, no retries
"""

from __future__ import annotations

import base64
import logging
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field

from verifier.app.schemas.aws import AMZ_DATE_FORMAT, SignableRequest
from verifier.app.schemas.identity import TextLine
from verifier.app.services.credentials import (
    CredentialProvider,
    CredentialUnavailable,
)
from verifier.app.services.request_signing import (
    CredentialExpired,
    RequestSigner,
    authorized_headers,
)

logger = logging.getLogger("verifier.extraction")


# ----------------------------------------------------------------------
# Extraction Result
# ----------------------------------------------------------------------

class ExtractionResult(BaseModel):
    """
    Canonical result of a single text-extraction call.

    Normalizes every outcome; the client never raises.
    """

    success: bool
    text_lines: List[TextLine] = Field(default_factory=list)

    failure_type: Optional[
        Literal[
            "timeout",
            "transport_error",
            "service_error",
            "malformed_response",
            "credential_unavailable",
        ]
    ] = None
    raw_error: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


# ----------------------------------------------------------------------
# Extractor Interface
# ----------------------------------------------------------------------

class TextExtractor(Protocol):
    async def extract(self, data: bytes) -> ExtractionResult:
        ...


# ----------------------------------------------------------------------
# Rekognition DetectText (JSON 1.1 protocol, SigV4)
# ----------------------------------------------------------------------

class _TextDetection(BaseModel):
    detected_text: str = Field(..., alias="DetectedText")
    type: str = Field(..., alias="Type")
    confidence: float = Field(0.0, alias="Confidence")

    model_config = ConfigDict(extra="ignore")


class _DetectTextResponse(BaseModel):
    text_detections: List[_TextDetection] = Field(
        default_factory=list,
        alias="TextDetections",
    )

    model_config = ConfigDict(extra="ignore")


class DocumentExtractionClient:
    """
    Submits raw image bytes to the DetectText API.

    Only LINE detections are returned, in service order. A single
    attempt is made per image.
    """

    SERVICE = "rekognition"
    TARGET = "RekognitionService.DetectText"
    CONTENT_TYPE = "application/x-amz-json-1.1"

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        credential_provider: CredentialProvider,
        region: str,
        host: Optional[str] = None,
        signer: Optional[RequestSigner] = None,
        timeout_seconds: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._client = http_client
        self._credentials = credential_provider
        self.region = region
        self.host = host or f"rekognition.{region}.amazonaws.com"
        self._signer = signer or RequestSigner()
        self._timeout = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def extract(self, data: bytes) -> ExtractionResult:
        try:
            response = await self._send(data)

        except (CredentialUnavailable, CredentialExpired) as exc:
            return self._failure("credential_unavailable", exc)

        except httpx.TimeoutException as exc:
            return self._failure("timeout", exc)

        except httpx.HTTPError as exc:
            return self._failure("transport_error", exc)

        if response.status_code != 200:
            logger.error(
                "text_extraction_rejected",
                extra={"status_code": response.status_code},
            )
            return ExtractionResult(
                success=False,
                failure_type="service_error",
                raw_error=f"status {response.status_code}",
            )

        try:
            parsed = _DetectTextResponse.model_validate(response.json())
        except ValueError as exc:
            return self._failure("malformed_response", exc)

        lines = [
            TextLine(
                text=detection.detected_text,
                confidence=min(max(detection.confidence, 0.0), 100.0),
            )
            for detection in parsed.text_detections
            if detection.type == "LINE"
        ]

        logger.info(
            "text_extraction_succeeded",
            extra={"line_count": len(lines)},
        )
        return ExtractionResult(success=True, text_lines=lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(self, data: bytes) -> httpx.Response:
        credential = await self._credentials.get()
        timestamp = self._clock().astimezone(timezone.utc)

        payload = (
            '{"Image":{"Bytes":"'
            + base64.b64encode(data).decode("ascii")
            + '"}}'
        ).encode("ascii")

        headers = {
            "Host": self.host,
            "Content-Type": self.CONTENT_TYPE,
            "X-Amz-Date": timestamp.strftime(AMZ_DATE_FORMAT),
            "X-Amz-Target": self.TARGET,
        }
        if credential.session_token is not None:
            headers["X-Amz-Security-Token"] = (
                credential.session_token.get_secret_value()
            )

        request = SignableRequest(
            method="POST",
            host=self.host,
            path="/",
            headers=tuple(headers.items()),
            payload=payload,
            timestamp=timestamp,
        )

        signature = self._signer.sign(
            request,
            credential,
            region=self.region,
            service=self.SERVICE,
        )

        return await self._client.post(
            f"https://{self.host}/",
            headers=authorized_headers(request, signature),
            content=payload,
            timeout=self._timeout,
        )

    @staticmethod
    def _failure(failure_type: str, exc: Exception) -> ExtractionResult:
        logger.error(
            "text_extraction_failed",
            extra={
                "failure_type": failure_type,
                "error_type": type(exc).__name__,
            },
        )
        return ExtractionResult(
            success=False,
            failure_type=failure_type,
            raw_error=type(exc).__name__,
        )
