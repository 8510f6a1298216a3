"""
Verification pipeline contracts.

Defines the inbound image model, the pipeline state machine, the error
taxonomy, the internal outcome produced by the orchestrator, and the
public JSON response returned at the HTTP boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from verifier.app.schemas.identity import IdentityRecord


# ---------------------------------------------------------------------------
# Enumerations (FROZEN CONTRACTS)
# ---------------------------------------------------------------------------

class VerificationState(str, Enum):
    """
    States of a single verification request.

    Every path that reaches UPLOADING must pass through CLEANING
    before DONE.
    """

    RECEIVED = "received"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    ANALYZED = "analyzed"
    CLEANING = "cleaning"
    DONE = "done"


class VerificationErrorKind(str, Enum):
    """
    Terminal failure taxonomy.

    A partial extraction is NOT an error: it is a successful outcome
    whose record requires manual review.
    """

    INVALID_INPUT = "invalid_input"
    CREDENTIAL_UNAVAILABLE = "credential_unavailable"
    STORAGE_FAILURE = "storage_failure"
    EXTRACTION_FAILURE = "extraction_failure"


class InputViolation(str, Enum):
    """Why an INVALID_INPUT request was rejected."""

    MISSING = "missing"
    UNSUPPORTED_TYPE = "unsupported_type"
    TOO_LARGE = "too_large"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

class IdentityImage(BaseModel):
    """One side of an IC, as received from the client."""

    side: Literal["front", "back"]
    content_type: Optional[str] = None
    filename: Optional[str] = None
    data: bytes = Field(b"", repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Internal results
# ---------------------------------------------------------------------------

class CleanupReport(BaseModel):
    """Result of the CLEANING state."""

    attempted_keys: List[str] = Field(default_factory=list)
    failed_keys: List[str] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return not self.failed_keys

    model_config = ConfigDict(frozen=True)


class SweepReport(BaseModel):
    """Result of one orphan sweep over the transient key prefix."""

    prefix: str
    listed_count: int = Field(0, ge=0)
    expired_keys: List[str] = Field(default_factory=list)
    failed_keys: List[str] = Field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.expired_keys) - len(self.failed_keys)

    @property
    def confirmed(self) -> bool:
        return not self.failed_keys

    model_config = ConfigDict(frozen=True)


class VerificationOutcome(BaseModel):
    """
    Terminal result of the verification state machine.

    Internal contract: carries cleanup diagnostics that are logged but
    not exposed at the HTTP boundary.
    """

    verification_id: str
    success: bool
    message: str
    final_state: VerificationState = VerificationState.DONE

    error_kind: Optional[VerificationErrorKind] = None
    input_violation: Optional[InputViolation] = None
    extracted_data: Optional[IdentityRecord] = None

    cleanup: CleanupReport = Field(default_factory=CleanupReport)

    @model_validator(mode="after")
    def enforce_outcome_invariants(self):
        if self.success:
            if self.error_kind is not None:
                raise ValueError("Successful outcome must not carry an error")
            if self.extracted_data is None:
                raise ValueError("Successful outcome must carry a record")
        elif self.error_kind is None:
            raise ValueError("Failed outcome must carry an error kind")

        if (self.input_violation is not None) != (
            self.error_kind is VerificationErrorKind.INVALID_INPUT
        ):
            raise ValueError(
                "input_violation is set exactly when error_kind is INVALID_INPUT"
            )
        return self

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Public response (HTTP boundary)
# ---------------------------------------------------------------------------

class VerificationResponse(BaseModel):
    """
    JSON body returned by the verify-ic endpoint.

    Never contains storage URLs, credentials, or signatures.
    """

    success: bool
    message: str
    extracted_data: Optional[IdentityRecord] = None

    @classmethod
    def from_outcome(cls, outcome: VerificationOutcome) -> "VerificationResponse":
        return cls(
            success=outcome.success,
            message=outcome.message,
            extracted_data=outcome.extracted_data,
        )

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
