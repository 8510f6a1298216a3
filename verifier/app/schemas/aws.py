"""
Value objects for the signed AWS REST boundary.

Defines the credential, the immutable request that is signed, the
resulting signature, and the transient storage object created for each
uploaded IC image.

All models are frozen. A SignableRequest cannot be mutated after signing;
any change produces a new request that must be signed again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


# ISO8601 basic format used by X-Amz-Date and the string-to-sign
AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
DATE_STAMP_FORMAT = "%Y%m%d"

HeaderPair = Tuple[str, str]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------

class Credential(BaseModel):
    """
    Short-lived storage credential.

    Sourced from the hosting environment, never persisted and never
    logged. Valid only until ``expires_at`` (when set).
    """

    access_key_id: str = Field(..., min_length=1)

    secret_access_key: SecretStr = Field(
        ...,
        description="Sensitive credential, redacted from logs",
    )

    session_token: Optional[SecretStr] = Field(
        None,
        description="Present for temporary (role-vended) credentials",
    )

    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    def is_expired(self, at: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = _as_utc(at) if at is not None else datetime.now(timezone.utc)
        return self.expires_at <= now

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


# ---------------------------------------------------------------------------
# Signing input / output
# ---------------------------------------------------------------------------

class SignableRequest(BaseModel):
    """
    Immutable description of an HTTP request to be signed.

    Header names are case-insensitive and must be unique. Header order is
    irrelevant to the signature: the signer sorts explicitly.
    """

    method: str = Field(..., min_length=1)
    host: str = Field(..., min_length=1)
    path: str = "/"

    query: Tuple[HeaderPair, ...] = ()
    headers: Tuple[HeaderPair, ...] = ()

    payload: bytes = Field(b"", repr=False)

    timestamp: datetime

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("timestamp")
    @classmethod
    def utc_timestamp(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("headers")
    @classmethod
    def unique_header_names(
        cls, v: Tuple[HeaderPair, ...]
    ) -> Tuple[HeaderPair, ...]:
        seen: set[str] = set()
        for name, _ in v:
            lowered = name.lower()
            if lowered in seen:
                raise ValueError(
                    f"Duplicate header name is not supported: {lowered}"
                )
            seen.add(lowered)
        return v

    @model_validator(mode="after")
    def amz_date_matches_timestamp(self):
        declared = self.header("x-amz-date")
        if declared is not None and declared.strip() != self.amz_date:
            raise ValueError(
                "X-Amz-Date header does not match the request timestamp"
            )
        return self

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def amz_date(self) -> str:
        return self.timestamp.strftime(AMZ_DATE_FORMAT)

    @property
    def date_stamp(self) -> str:
        return self.timestamp.strftime(DATE_STAMP_FORMAT)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


class Signature(BaseModel):
    """
    SigV4 signature bound to exactly one SignableRequest.
    """

    authorization: str = Field(
        ...,
        description="Value of the Authorization header",
    )
    credential_scope: str
    signed_headers: str
    signature: str

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageObject(BaseModel):
    """
    Transient object holding one IC image side.

    Must not outlive the verification request that created it.
    """

    bucket: str
    key: str
    side: Literal["front", "back"]
    content_type: str
    data: bytes = Field(..., repr=False)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )


class ListedObject(BaseModel):
    """
    One entry of a bucket listing.

    Carries no object data; used to find transient objects that outlived
    their request.
    """

    key: str = Field(..., min_length=1)
    last_modified: datetime
    size: int = Field(0, ge=0)

    @field_validator("last_modified")
    @classmethod
    def utc_last_modified(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def age_seconds(self, at: datetime) -> float:
        return (_as_utc(at) - self.last_modified).total_seconds()

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
