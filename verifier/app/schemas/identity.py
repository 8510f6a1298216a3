"""
Identity extraction schemas.

TextLine is the unit produced by the text-extraction service.
IdentityRecord is the structured result of IC field analysis.

The IdentityRecord is returned to the caller and NEVER stored server-side.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TextLine(BaseModel):
    """
    A single recognised line of text.

    Ordering of lines reflects the extraction service's output order,
    not necessarily the physical layout of the card.
    """

    text: str
    confidence: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="OCR confidence (0-100)",
    )

    model_config = ConfigDict(frozen=True)


class IdentityRecord(BaseModel):
    """
    Structured identity fields parsed from an IC front and back.

    Missing optional fields are null. Missing mandatory fields (name,
    id number) do not fail analysis; the record is flagged for manual
    review instead.
    """

    full_name: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = Field(
        None,
        description="ISO 8601 calendar date (YYYY-MM-DD)",
    )
    gender: Optional[str] = Field(
        None,
        description="Derived from the parity of the final id number digit",
    )
    address: Optional[str] = None

    raw_front_lines: List[TextLine] = Field(default_factory=list)
    raw_back_lines: List[TextLine] = Field(default_factory=list)

    per_field_confidence: Dict[str, Optional[float]] = Field(
        default_factory=dict,
        description="Confidence of the line(s) each field was taken from",
    )

    confidence: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="Mean confidence of the matched fields",
    )

    completeness: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="Percentage of expected fields that were extracted",
    )

    fields_extracted_count: int = Field(..., ge=0)
    total_fields_expected: int = Field(..., ge=1)

    mandatory_fields_found: bool
    requires_manual_review: bool

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
