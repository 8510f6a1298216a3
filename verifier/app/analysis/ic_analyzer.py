"""
IC Field Analyzer

Parses the recognised text lines of an identity card (front and back)
into a structured IdentityRecord.

IMPORTANT:
- Pure and deterministic: no I/O, no clock, no randomness.
- Missing fields never raise. Missing mandatory fields (name, id number)
  flag the record for manual review instead.
- Lines are consumed in the order the extraction service produced them.
"""

from __future__ import annotations

import re
from datetime import date
from statistics import mean
from typing import Dict, List, Optional, Sequence, Tuple

from verifier.app.schemas.identity import IdentityRecord, TextLine


EXPECTED_FIELDS: Tuple[str, ...] = (
    "full_name",
    "id_number",
    "date_of_birth",
    "gender",
    "address",
)

MANDATORY_FIELDS: Tuple[str, ...] = ("full_name", "id_number")

# YYMMDD-PB-#### with optional dashes, never part of a longer digit run
ID_NUMBER_PATTERN = re.compile(r"(?<!\d)(\d{6})-?(\d{2})-?(\d{4})(?!\d)")

NAME_LABEL_PATTERN = re.compile(r"^(?:NAME|NAMA)\b\s*:?\s*(.*)$")
NAME_PATTERN = re.compile(r"^[A-Z][A-Z\s@'./-]*$")
MIN_NAME_LENGTH = 6

# Words that appear on the card itself and are never part of a name
CARD_KEYWORDS = frozenset(
    {
        "MALAYSIA",
        "MYKAD",
        "WARGANEGARA",
        "IDENTITY",
        "CARD",
        "ALAMAT",
        "ADDRESS",
        "KAD",
        "PENGENALAN",
        "ISLAM",
        "LELAKI",
        "PEREMPUAN",
    }
)

ADDRESS_LABELS = ("ALAMAT", "ADDRESS")
ADDRESS_STOP_PATTERN = re.compile(r"TARIKH|DATE|JANTINA|SEX|WARGANEGARA")
MAX_ADDRESS_LINES = 4
MIN_ADDRESS_LINE_LENGTH = 3

DAY_FIRST_DATE_PATTERN = re.compile(
    r"(?<!\d)(\d{2})([/.-])(\d{2})\2(\d{4})(?!\d)"
)
ISO_DATE_PATTERN = re.compile(r"(?<!\d)(\d{4})-(\d{2})-(\d{2})(?!\d)")


# A field value paired with the confidence of the line(s) it came from
_Match = Tuple[Optional[str], Optional[float]]


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


class ICFieldAnalyzer:
    """
    Rule-based IC field parser.

    Field rules:
      - id_number      first 12-digit token, front then back, dashed form
      - full_name      NAME/NAMA label, else first upper-case front line
      - date_of_birth  id number YYMMDD, else first explicit date token
      - gender         parity of the id number's last digit
      - address        lines after ALAMAT/ADDRESS (back, else front)
    """

    def __init__(
        self,
        *,
        century_pivot: int = 25,
        review_threshold: float = 80.0,
    ) -> None:
        if not 0 <= century_pivot <= 99:
            raise ValueError("century_pivot must be within 0..99")
        self.century_pivot = century_pivot
        self.review_threshold = review_threshold

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(
        self,
        front_lines: Sequence[TextLine],
        back_lines: Sequence[TextLine] = (),
    ) -> IdentityRecord:
        front = list(front_lines)
        back = list(back_lines)

        id_number, id_confidence = self.parse_id_number(front + back)
        full_name, name_confidence = self.parse_name(front)
        date_of_birth, dob_confidence = self.parse_date_of_birth(
            id_number, id_confidence, front + back
        )
        gender, gender_confidence = self.parse_gender(id_number, id_confidence)
        address, address_confidence = self.parse_address(back or front)

        values: Dict[str, Optional[str]] = {
            "full_name": full_name,
            "id_number": id_number,
            "date_of_birth": date_of_birth,
            "gender": gender,
            "address": address,
        }
        per_field_confidence: Dict[str, Optional[float]] = {
            "full_name": name_confidence,
            "id_number": id_confidence,
            "date_of_birth": dob_confidence,
            "gender": gender_confidence,
            "address": address_confidence,
        }

        found = [name for name in EXPECTED_FIELDS if values[name] is not None]
        matched_confidences = [
            per_field_confidence[name]
            for name in found
            if per_field_confidence[name] is not None
        ]

        confidence = (
            round(mean(matched_confidences), 2) if matched_confidences else 0.0
        )
        completeness = round(len(found) / len(EXPECTED_FIELDS) * 100, 2)
        mandatory_found = all(values[name] is not None for name in MANDATORY_FIELDS)

        return IdentityRecord(
            **values,
            raw_front_lines=front,
            raw_back_lines=back,
            per_field_confidence=per_field_confidence,
            confidence=confidence,
            completeness=completeness,
            fields_extracted_count=len(found),
            total_fields_expected=len(EXPECTED_FIELDS),
            mandatory_fields_found=mandatory_found,
            requires_manual_review=(
                not mandatory_found or confidence < self.review_threshold
            ),
        )

    # ------------------------------------------------------------------
    # Field rules
    # ------------------------------------------------------------------

    def parse_id_number(self, lines: Sequence[TextLine]) -> _Match:
        for line in lines:
            match = ID_NUMBER_PATTERN.search(line.text)
            if match:
                return "-".join(match.groups()), line.confidence
        return None, None

    def parse_name(self, lines: Sequence[TextLine]) -> _Match:
        labelled = self._labelled_name(lines)
        if labelled[0] is not None:
            return labelled

        for line in lines:
            candidate = line.text.strip()
            if (
                len(candidate) >= MIN_NAME_LENGTH
                and NAME_PATTERN.match(candidate)
                and not self._is_card_keyword_line(candidate)
            ):
                return candidate, line.confidence

        return None, None

    def parse_date_of_birth(
        self,
        id_number: Optional[str],
        id_confidence: Optional[float],
        lines: Sequence[TextLine],
    ) -> _Match:
        derived = self._date_from_id_number(id_number)
        explicit, explicit_confidence = self._first_date_token(lines)

        if derived is not None:
            confidence = id_confidence
            if explicit == derived and explicit_confidence is not None:
                confidence = max(confidence or 0.0, explicit_confidence)
            return derived.isoformat(), confidence

        if explicit is not None:
            return explicit.isoformat(), explicit_confidence

        return None, None

    def parse_gender(
        self,
        id_number: Optional[str],
        id_confidence: Optional[float],
    ) -> _Match:
        if id_number is None:
            return None, None
        gender = "Male" if int(id_number[-1]) % 2 == 1 else "Female"
        return gender, id_confidence

    def parse_address(self, lines: Sequence[TextLine]) -> _Match:
        started = False
        collected: List[TextLine] = []

        for line in lines:
            upper = line.text.strip().upper()

            if not started:
                if any(label in upper for label in ADDRESS_LABELS):
                    started = True
                continue

            if ADDRESS_STOP_PATTERN.search(upper):
                break

            if len(line.text.strip()) >= MIN_ADDRESS_LINE_LENGTH:
                collected.append(line)

            if len(collected) >= MAX_ADDRESS_LINES:
                break

        if not collected:
            return None, None

        return (
            ", ".join(line.text.strip() for line in collected),
            round(mean(line.confidence for line in collected), 2),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _labelled_name(self, lines: Sequence[TextLine]) -> _Match:
        for index, line in enumerate(lines):
            match = NAME_LABEL_PATTERN.match(line.text.strip().upper())
            if not match:
                continue

            inline = match.group(1).strip()
            if inline:
                if NAME_PATTERN.match(inline):
                    return inline, line.confidence
                continue

            if index + 1 < len(lines):
                following = lines[index + 1]
                candidate = following.text.strip()
                if candidate and NAME_PATTERN.match(candidate.upper()):
                    return candidate.upper(), following.confidence

        return None, None

    @staticmethod
    def _is_card_keyword_line(text: str) -> bool:
        words = text.split()
        return bool(words) and all(word in CARD_KEYWORDS for word in words)

    def _date_from_id_number(self, id_number: Optional[str]) -> Optional[date]:
        if id_number is None:
            return None

        yy = int(id_number[0:2])
        mm = int(id_number[2:4])
        dd = int(id_number[4:6])

        century = 2000 if yy <= self.century_pivot else 1900
        return _safe_date(century + yy, mm, dd)

    @staticmethod
    def _first_date_token(
        lines: Sequence[TextLine],
    ) -> Tuple[Optional[date], Optional[float]]:
        for line in lines:
            for match in DAY_FIRST_DATE_PATTERN.finditer(line.text):
                day, _, month, year = match.groups()
                parsed = _safe_date(int(year), int(month), int(day))
                if parsed is not None:
                    return parsed, line.confidence

            for match in ISO_DATE_PATTERN.finditer(line.text):
                year, month, day = match.groups()
                parsed = _safe_date(int(year), int(month), int(day))
                if parsed is not None:
                    return parsed, line.confidence

        return None, None
