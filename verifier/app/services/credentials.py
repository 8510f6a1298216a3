"""
Storage credential providers.

Credentials are obtained from the hosting environment (instance metadata
role-vending endpoint) or, for local development, from configuration.

HARD GUARANTEES:
- One attempt per call. No retries.
- Every failure surfaces as CredentialUnavailable.
- Secrets are never logged.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from verifier.app.core.config import Settings
from verifier.app.schemas.aws import Credential

logger = logging.getLogger("verifier.credentials")


class CredentialUnavailable(RuntimeError):
    """
    Raised when no usable credential can be obtained.

    Fatal for the current verification request.
    """


class CredentialProvider(Protocol):
    async def get(self) -> Credential:
        ...


# ---------------------------------------------------------------------------
# Instance metadata (role-vended credentials)
# ---------------------------------------------------------------------------

class _RoleCredentialDocument(BaseModel):
    """Credential document served by the metadata endpoint."""

    code: str = Field("Success", alias="Code")
    access_key_id: str = Field(..., alias="AccessKeyId", min_length=1)
    secret_access_key: str = Field(..., alias="SecretAccessKey", min_length=1)
    token: Optional[str] = Field(None, alias="Token")
    expiration: Optional[datetime] = Field(None, alias="Expiration")

    model_config = ConfigDict(extra="ignore")


class InstanceMetadataCredentialProvider:
    """
    Fetches temporary role credentials from the instance metadata service.

    Flow:
        (IMDSv2) PUT  /latest/api/token
                 GET  /latest/meta-data/iam/security-credentials/        -> role
                 GET  /latest/meta-data/iam/security-credentials/{role}  -> JSON
    """

    TOKEN_PATH = "/latest/api/token"
    ROLE_PATH = "/latest/meta-data/iam/security-credentials/"

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        base_url: str = "http://169.254.169.254",
        use_imds_v2: bool = True,
        token_ttl_seconds: int = 21600,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._client = http_client
        self._base_url = base_url.rstrip("/")
        self._use_imds_v2 = use_imds_v2
        self._token_ttl_seconds = token_ttl_seconds
        self._timeout = timeout_seconds

    async def get(self) -> Credential:
        try:
            headers = await self._session_headers()

            role_response = await self._client.get(
                f"{self._base_url}{self.ROLE_PATH}",
                headers=headers,
                timeout=self._timeout,
            )
            role_response.raise_for_status()

            roles = role_response.text.split()
            if not roles:
                logger.error(
                    "credential_fetch_failed",
                    extra={"reason": "no_role"},
                )
                raise CredentialUnavailable("Metadata endpoint returned no role")

            # First listed role wins; instances carry a single profile
            role_name = roles[0]

            document_response = await self._client.get(
                f"{self._base_url}{self.ROLE_PATH}{role_name}",
                headers=headers,
                timeout=self._timeout,
            )
            document_response.raise_for_status()

            document = _RoleCredentialDocument.model_validate(
                document_response.json()
            )

        except httpx.HTTPStatusError as exc:
            logger.error(
                "credential_fetch_failed",
                extra={
                    "reason": "http_status",
                    "status_code": exc.response.status_code,
                },
            )
            raise CredentialUnavailable(
                "Metadata endpoint returned an error status"
            ) from exc

        except httpx.HTTPError as exc:
            logger.error(
                "credential_fetch_failed",
                extra={
                    "reason": "transport",
                    "error_type": type(exc).__name__,
                },
            )
            raise CredentialUnavailable(
                "Metadata endpoint is unreachable"
            ) from exc

        except (ValueError, ValidationError) as exc:
            logger.error(
                "credential_fetch_failed",
                extra={"reason": "malformed_body"},
            )
            raise CredentialUnavailable(
                "Metadata endpoint returned a malformed credential document"
            ) from exc

        if document.code != "Success":
            logger.error(
                "credential_fetch_failed",
                extra={"reason": "role_error", "code": document.code},
            )
            raise CredentialUnavailable(
                f"Metadata endpoint reported credential status {document.code}"
            )

        return Credential(
            access_key_id=document.access_key_id,
            secret_access_key=document.secret_access_key,
            session_token=document.token,
            expires_at=document.expiration,
        )

    async def _session_headers(self) -> dict[str, str]:
        if not self._use_imds_v2:
            return {}

        response = await self._client.put(
            f"{self._base_url}{self.TOKEN_PATH}",
            headers={
                "X-aws-ec2-metadata-token-ttl-seconds": str(self._token_ttl_seconds),
            },
            timeout=self._timeout,
        )
        response.raise_for_status()

        return {"X-aws-ec2-metadata-token": response.text.strip()}


# ---------------------------------------------------------------------------
# Static credentials (local development)
# ---------------------------------------------------------------------------

class StaticCredentialProvider:
    """
    Serves a fixed credential.

    DEVELOPMENT ONLY. Long-lived keys do not expire and carry no
    session token unless one is configured.
    """

    def __init__(self, credential: Credential) -> None:
        self._credential = credential

    async def get(self) -> Credential:
        if self._credential.is_expired():
            raise CredentialUnavailable("Configured credential has expired")
        return self._credential


# ---------------------------------------------------------------------------
# Optional caching
# ---------------------------------------------------------------------------

class CachingCredentialProvider:
    """
    Reuses a credential until shortly before it expires.

    Internal optimization behind the same interface: callers still
    receive a credential that is valid at call time. Credentials without
    an expiry are cached indefinitely.
    """

    def __init__(
        self,
        inner: CredentialProvider,
        *,
        refresh_margin_seconds: int = 300,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._inner = inner
        self._margin = timedelta(seconds=refresh_margin_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cached: Optional[Credential] = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, credential: Optional[Credential]) -> bool:
        if credential is None:
            return False
        return not credential.is_expired(at=self._clock() + self._margin)

    async def get(self) -> Credential:
        if self._is_fresh(self._cached):
            return self._cached

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh(self._cached):
                return self._cached

            credential = await self._inner.get()
            self._cached = credential
            logger.info(
                "credential_refreshed",
                extra={
                    "expires_at": (
                        credential.expires_at.isoformat()
                        if credential.expires_at
                        else None
                    ),
                },
            )
            return credential


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_credential_provider(
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> CredentialProvider:
    provider: CredentialProvider

    if settings.credential_source == "static":
        provider = StaticCredentialProvider(
            Credential(
                access_key_id=settings.static_access_key_id,
                secret_access_key=settings.static_secret_access_key,
                session_token=settings.static_session_token,
            )
        )
    else:
        provider = InstanceMetadataCredentialProvider(
            http_client=http_client,
            base_url=str(settings.instance_metadata_url),
            use_imds_v2=settings.imds_v2_enabled,
            token_ttl_seconds=settings.imds_token_ttl_seconds,
            timeout_seconds=settings.request_timeout_seconds,
        )

    if settings.credential_cache_enabled:
        provider = CachingCredentialProvider(
            provider,
            refresh_margin_seconds=settings.credential_refresh_margin_seconds,
        )

    return provider
