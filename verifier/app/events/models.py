from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from verifier.app.schemas.verification import VerificationState


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class VerificationEvent(BaseModel):
    """
    An immutable observation of a state transition within one
    verification request.

    Events are:
    - strictly observational
    - transport-agnostic
    - free of image bytes, credentials and extracted identity data
    """

    event_id: UUID = Field(default_factory=uuid4)
    verification_id: str = Field(..., description="Correlation identifier")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    state: VerificationState

    # Optional contextual metadata (keys, counts, error kind)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
