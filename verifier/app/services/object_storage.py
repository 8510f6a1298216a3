"""
Object storage client for transient IC images.

Issues SigV4-signed PUT, DELETE and ListObjectsV2 requests against the S3
REST endpoint (virtual-hosted style). No vendor SDK is used.

HARD GUARANTEES:
- upload succeeds on HTTP 200 only; anything else raises UploadFailed
- delete succeeds on HTTP 204 only; it NEVER raises
- list_objects follows continuation tokens; failure raises ListingFailed
- one network call per operation (per page for listings), no retries
- a fresh credential is requested for every operation
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from verifier.app.schemas.aws import AMZ_DATE_FORMAT, ListedObject, SignableRequest
from verifier.app.services.credentials import (
    CredentialProvider,
    CredentialUnavailable,
)
from verifier.app.services.request_signing import (
    CredentialExpired,
    RequestSigner,
    authorized_headers,
    canonical_query,
    canonical_uri,
)
from verifier.app.utils.hashing import EMPTY_PAYLOAD_SHA256, sha256_hex

logger = logging.getLogger("verifier.storage")


class UploadFailed(RuntimeError):
    """Raised when an object could not be stored."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ListingFailed(RuntimeError):
    """Raised when a bucket listing could not be read."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ObjectStorageClient:
    """
    Minimal S3 client: PUT and DELETE of single objects, plus prefix
    listing for the orphan sweep.
    """

    SERVICE = "s3"

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        credential_provider: CredentialProvider,
        bucket: str,
        region: str,
        host: Optional[str] = None,
        signer: Optional[RequestSigner] = None,
        timeout_seconds: float = 5.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._client = http_client
        self._credentials = credential_provider
        self.bucket = bucket
        self.region = region
        self.host = host or f"{bucket}.s3.{region}.amazonaws.com"
        self._signer = signer or RequestSigner()
        self._timeout = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def object_url(self, key: str) -> str:
        return f"https://{self.host}{canonical_uri(key)}"

    async def upload(self, data: bytes, key: str, content_type: str) -> str:
        """
        Store ``data`` under ``key``.

        Returns the object URL. Raises UploadFailed on any non-200
        status, transport failure, timeout, or credential failure.
        """
        try:
            response = await self._send(
                "PUT",
                key,
                payload=data,
                extra_headers={
                    "Content-Type": content_type,
                    "X-Amz-Content-Sha256": sha256_hex(data),
                },
            )
        except (CredentialUnavailable, CredentialExpired) as exc:
            logger.error(
                "storage_upload_failed",
                extra={
                    "key": key,
                    "reason": "credential",
                    "error_type": type(exc).__name__,
                },
            )
            raise UploadFailed("Storage credentials unavailable") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "storage_upload_failed",
                extra={
                    "key": key,
                    "reason": "transport",
                    "error_type": type(exc).__name__,
                },
            )
            raise UploadFailed("Storage endpoint unreachable") from exc

        if response.status_code != 200:
            # Error bodies may echo the canonical request, including the session token
            logger.error(
                "storage_upload_failed",
                extra={
                    "key": key,
                    "reason": "http_status",
                    "status_code": response.status_code,
                },
            )
            raise UploadFailed(
                f"Storage upload rejected with status {response.status_code}",
                status_code=response.status_code,
            )

        logger.info(
            "storage_upload_succeeded",
            extra={"key": key, "size": len(data)},
        )
        return self.object_url(key)

    async def delete(self, key: str) -> bool:
        """
        Remove ``key``. True only on HTTP 204.

        Deletion failure is logged, never raised, so that cleanup cannot
        block the response.
        """
        try:
            response = await self._send(
                "DELETE",
                key,
                payload=b"",
                extra_headers={"X-Amz-Content-Sha256": EMPTY_PAYLOAD_SHA256},
            )
        except Exception as exc:
            logger.error(
                "storage_delete_failed",
                extra={
                    "key": key,
                    "reason": "exception",
                    "error_type": type(exc).__name__,
                },
            )
            return False

        if response.status_code != 204:
            logger.warning(
                "storage_delete_failed",
                extra={
                    "key": key,
                    "reason": "http_status",
                    "status_code": response.status_code,
                },
            )
            return False

        logger.info("storage_delete_succeeded", extra={"key": key})
        return True

    async def list_objects(self, prefix: str) -> List[ListedObject]:
        """
        List every object whose key starts with ``prefix``.

        Pages are followed until the listing is no longer truncated.
        Raises ListingFailed on any non-200 status, transport failure,
        credential failure, or unreadable response body.
        """
        listed: List[ListedObject] = []
        continuation: Optional[str] = None

        while True:
            query: Tuple[Tuple[str, str], ...] = (
                ("list-type", "2"),
                ("prefix", prefix),
            )
            if continuation is not None:
                query += (("continuation-token", continuation),)

            try:
                response = await self._send(
                    "GET",
                    "/",
                    payload=b"",
                    extra_headers={"X-Amz-Content-Sha256": EMPTY_PAYLOAD_SHA256},
                    query=query,
                )
            except (CredentialUnavailable, CredentialExpired) as exc:
                logger.error(
                    "storage_listing_failed",
                    extra={"prefix": prefix, "reason": "credential"},
                )
                raise ListingFailed("Storage credentials unavailable") from exc
            except httpx.HTTPError as exc:
                logger.error(
                    "storage_listing_failed",
                    extra={
                        "prefix": prefix,
                        "reason": "transport",
                        "error_type": type(exc).__name__,
                    },
                )
                raise ListingFailed("Storage endpoint unreachable") from exc

            if response.status_code != 200:
                logger.error(
                    "storage_listing_failed",
                    extra={
                        "prefix": prefix,
                        "reason": "http_status",
                        "status_code": response.status_code,
                    },
                )
                raise ListingFailed(
                    f"Storage listing rejected with status {response.status_code}",
                    status_code=response.status_code,
                )

            try:
                page, continuation = _parse_listing(response.content)
            except (ET.ParseError, ValueError) as exc:
                logger.error(
                    "storage_listing_failed",
                    extra={"prefix": prefix, "reason": "malformed_response"},
                )
                raise ListingFailed("Storage listing could not be parsed") from exc

            listed.extend(page)
            if continuation is None:
                break

        logger.info(
            "storage_listing_succeeded",
            extra={"prefix": prefix, "count": len(listed)},
        )
        return listed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        key: str,
        *,
        payload: bytes,
        extra_headers: Dict[str, str],
        query: Tuple[Tuple[str, str], ...] = (),
    ) -> httpx.Response:
        credential = await self._credentials.get()
        timestamp = self._clock().astimezone(timezone.utc)

        headers: Dict[str, str] = {
            "Host": self.host,
            "X-Amz-Date": timestamp.strftime(AMZ_DATE_FORMAT),
            **extra_headers,
        }
        if credential.session_token is not None:
            headers["X-Amz-Security-Token"] = (
                credential.session_token.get_secret_value()
            )

        request = SignableRequest(
            method=method,
            host=self.host,
            path=key,
            query=query,
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

        url = self.object_url(key)
        if query:
            url = f"{url}?{canonical_query(query)}"

        return await self._client.request(
            method,
            url,
            headers=authorized_headers(request, signature),
            content=payload or None,
            timeout=self._timeout,
        )


# ----------------------------------------------------------------------
# ListObjectsV2 response parsing
# ----------------------------------------------------------------------

_S3_NAMESPACE = "{http://s3.amazonaws.com/doc/2006-03-01/}"


def _find_text(element: ET.Element, tag: str) -> Optional[str]:
    found = element.find(f"{_S3_NAMESPACE}{tag}")
    if found is None:
        found = element.find(tag)
    return found.text if found is not None else None


def _parse_timestamp(value: str) -> datetime:
    # S3 emits e.g. 2025-03-01T08:00:00.000Z
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _parse_listing(body: bytes) -> Tuple[List[ListedObject], Optional[str]]:
    """
    Parse one ListObjectsV2 page.

    Returns the listed objects and the continuation token, which is None
    when the listing is complete.
    """
    root = ET.fromstring(body)

    contents = root.findall(f"{_S3_NAMESPACE}Contents") or root.findall("Contents")

    objects: List[ListedObject] = []
    for entry in contents:
        key = _find_text(entry, "Key")
        last_modified = _find_text(entry, "LastModified")
        if not key or not last_modified:
            raise ValueError("Listing entry without Key or LastModified")

        objects.append(
            ListedObject(
                key=key,
                last_modified=_parse_timestamp(last_modified),
                size=int(_find_text(entry, "Size") or 0),
            )
        )

    truncated = (_find_text(root, "IsTruncated") or "false").strip().lower() == "true"
    token = _find_text(root, "NextContinuationToken") if truncated else None
    if truncated and not token:
        raise ValueError("Truncated listing without a continuation token")

    return objects, token
