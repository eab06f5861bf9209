"""Redact likely-identifying details before a pack is shown to an AI model.

redact() is pure: the input pack is never mutated and the same pack always gives
the same result. Placeholders never match any pattern, so redacting an already
redacted pack finds nothing new.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import date
from typing import Callable, List, Literal, Optional, Tuple

from pydantic import Field

from ..schemas.evidence import ContractModel, EvidencePack

RedactionKind = Literal["email", "phone", "ssn", "address", "living"]

PLACEHOLDERS = {
    "email": "[EMAIL REDACTED]",
    "phone": "[PHONE REDACTED]",
    "ssn": "[SSN REDACTED]",
    "address": "[ADDRESS REDACTED]",
    "living": "[LIVING REDACTED]",
}

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERN = re.compile(r"(?<![\w-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")
SSN_PATTERN = re.compile(r"\b\d{3}[-.\s]?\d{2}[-.\s]?\d{4}\b")
ADDRESS_PATTERN = re.compile(
    r"\b\d{1,6}\s+(?:[A-Z][A-Za-z0-9'-]*\.?\s+){1,4}"
    r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|Court|Ct|Place|Pl|Way|"
    r"Terrace|Ter|Circle|Cir|Parkway|Pkwy|Highway|Hwy)\b\.?"
)
LIVING_MARKER_PATTERN = re.compile(r"\(\s*living\s*\)|\b(?:living\s+)?status\s*:\s*living\b", re.IGNORECASE)

# Order matters: phone before SSN so a ten digit number is not split.
PATTERNS: List[Tuple[RedactionKind, re.Pattern]] = [
    ("email", EMAIL_PATTERN),
    ("address", ADDRESS_PATTERN),
    ("phone", PHONE_PATTERN),
    ("ssn", SSN_PATTERN),
    ("living", LIVING_MARKER_PATTERN),
]

LIVING_KEYWORDS = [
    "living",
    "private",
    "current address",
    "contact info",
    "phone number",
    "email address",
]

YEAR_RE = re.compile(r"\b(1[5-9]\d{2}|20\d{2})\b")

# A person born within this many years may still be alive.
LIVING_WINDOW_YEARS = 110


class RedactionRecord(ContractModel):
    kind: RedactionKind
    field: str
    source_id: Optional[str] = None
    placeholder: str


class RedactionResult(ContractModel):
    redacted_pack: EvidencePack
    redactions: List[RedactionRecord] = Field(default_factory=list)
    has_living_indicators: bool = True


def _is_likely_date(text: str) -> bool:
    digits = re.sub(r"[-.\s]", "", text)
    year = int(digits[-4:])
    return 1800 <= year <= 2100


def redact_text(text: str, field: str, source_id: Optional[str], records: List[RedactionRecord]) -> str:
    if not text:
        return text
    for kind, pattern in PATTERNS:
        def replace(match: re.Match, kind=kind) -> str:
            if kind == "ssn" and _is_likely_date(match.group(0)):
                return match.group(0)
            records.append(RedactionRecord(kind=kind, field=field, source_id=source_id, placeholder=PLACEHOLDERS[kind]))
            return PLACEHOLDERS[kind]
        text = pattern.sub(replace, text)
    return text


def _birth_year(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = YEAR_RE.search(value)
    return int(match.group(1)) if match else None


def assess_living(pack: EvidencePack, reference_year: int) -> bool:
    """
    Coarse "might be living" signal. Cautious by default: only a recorded death date
    or a birth year older than the window clears it.
    """
    text_parts = [pack.person.name]
    for source in pack.sources:
        text_parts.extend([source.title, source.citation or "", source.reason_attached or "", source.raw_text])
        text_parts.extend(f"{f.label} {f.value}" for f in source.indexed.fields)
        text_parts.extend(source.indexed.text_blocks)
    full_text = " ".join(text_parts).lower()
    if any(keyword in full_text for keyword in LIVING_KEYWORDS):
        return True

    if pack.person.death_date and pack.person.death_date.strip():
        return False
    born = _birth_year(pack.person.birth_date)
    if born is None:
        return True
    return born > reference_year - LIVING_WINDOW_YEARS


def redact(pack: EvidencePack, today: Callable[[], date] = date.today) -> RedactionResult:
    redacted = pack.model_copy(deep=True)
    records: List[RedactionRecord] = []

    redacted.person.name = redact_text(redacted.person.name, "person.name", None, records)

    for i, source in enumerate(redacted.sources):
        prefix = f"sources[{i}]"
        sid = source.id
        source.title = redact_text(source.title, f"{prefix}.title", sid, records)
        if source.citation:
            source.citation = redact_text(source.citation, f"{prefix}.citation", sid, records)
        if source.reason_attached:
            source.reason_attached = redact_text(source.reason_attached, f"{prefix}.reasonAttached", sid, records)
        if source.attached_by:
            source.attached_by = redact_text(source.attached_by, f"{prefix}.attachedBy", sid, records)
        source.raw_text = redact_text(source.raw_text, f"{prefix}.rawText", sid, records)

        for j, indexed_field in enumerate(source.indexed.fields):
            path = f"{prefix}.indexed.fields[{j}].value"
            if indexed_field.value.strip().lower() == "living":
                records.append(RedactionRecord(kind="living", field=path, source_id=sid, placeholder=PLACEHOLDERS["living"]))
                indexed_field.value = PLACEHOLDERS["living"]
            else:
                indexed_field.value = redact_text(indexed_field.value, path, sid, records)
        source.indexed.text_blocks = [
            redact_text(block, f"{prefix}.indexed.textBlocks[{j}]", sid, records)
            for j, block in enumerate(source.indexed.text_blocks)
        ]

    has_living = bool(records) or assess_living(pack, today().year)
    return RedactionResult(redacted_pack=redacted, redactions=records, has_living_indicators=has_living)


def redaction_summary(records: List[RedactionRecord]) -> str:
    counts = Counter(r.kind for r in records)
    labels = [
        ("email", "email(s)"),
        ("phone", "phone number(s)"),
        ("ssn", "SSN(s)"),
        ("address", "address(es)"),
        ("living", "living marker(s)"),
    ]
    parts = [f"{counts[kind]} {label}" for kind, label in labels if counts[kind]]
    return f"Redacted: {', '.join(parts)}" if parts else "No sensitive information found"
