"""Pydantic schemas for the Evidence Pack data contract.

An Evidence Pack is the immutable snapshot of one capture. Field names on disk are
camelCase; Python code uses the snake_case attribute names.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = "1.0"
EXTRACTOR_VERSION = "1.0.0"

SourceType = Literal["record", "memory", "story", "photo", "other"]
WarningCode = Literal["VIRTUALIZED_LIST", "EXPAND_TIMEOUT", "MISSING_FIELD", "RATE_LIMITED", "EXPANSION_LIMIT"]


class ContractModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class IndexedField(ContractModel):
    label: str
    label_raw: Optional[str] = None
    value: str


class IndexedInfo(ContractModel):
    fields: List[IndexedField] = Field(default_factory=list)
    text_blocks: List[str] = Field(default_factory=list)


class Source(ContractModel):
    id: str
    order_index: int
    source_key: str
    source_type: SourceType

    title: str
    date: Optional[str] = None
    citation: Optional[str] = None
    web_page_url: Optional[str] = None
    attached_by: Optional[str] = None
    attached_at: Optional[str] = None
    reason_attached: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    indexed: IndexedInfo = Field(default_factory=IndexedInfo)
    raw_text: str = ""

    expanded: bool = False
    expansion_attempts: int = 0
    expansion_succeeded: bool = False


class PersonSnapshot(ContractModel):
    family_search_id: str
    name: str
    birth_date: Optional[str] = None
    death_date: Optional[str] = None


class CaptureWarning(ContractModel):
    code: WarningCode
    message: str
    source_id: Optional[str] = None


class ExtractorError(ContractModel):
    code: str
    message: str
    fatal: bool


class Diagnostics(ContractModel):
    mode: Literal["standard", "admin"] = "standard"
    total_sources: int = 0
    expanded_sections: int = 0
    failed_expansions: int = 0
    warnings: List[CaptureWarning] = Field(default_factory=list)
    errors: List[ExtractorError] = Field(default_factory=list)
    # How far the capture got; a cancelled or failed run never reports "complete".
    outcome: Literal["complete", "cancelled", "failed"] = "complete"
    discovered_sources: Optional[int] = None


class EvidencePack(ContractModel):
    schema_version: Literal["1.0"] = SCHEMA_VERSION
    run_id: str
    captured_at: str
    extractor_version: str = EXTRACTOR_VERSION
    extraction_duration_ms: int = 0

    source_url: str = ""
    page_title: str = ""
    ui_locale: str = "en"

    person: PersonSnapshot
    sources: List[Source] = Field(default_factory=list)
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)

    @model_validator(mode="after")
    def validate_source_order(self) -> "EvidencePack":
        seen = set()
        for i, source in enumerate(self.sources):
            if source.order_index != i:
                raise ValueError(f"sources[{i}].orderIndex must be {i}, got {source.order_index}")
            if source.id in seen:
                raise ValueError(f"sources[{i}].id {source.id!r} is not unique")
            seen.add(source.id)
        return self

    def source_ids(self) -> List[str]:
        return [s.id for s in self.sources]


def source_key(citation: Optional[str], web_page_url: Optional[str], title: Optional[str]) -> str:
    """
    Content-derived fingerprint for recognising the same record across captures.
    SHA-256 over "citation|webPageUrl|title" (missing parts as ""), first 64 bits as hex.
    """
    material = "|".join([citation or "", web_page_url or "", title or ""])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


_TYPE_KEYWORDS = [
    ("census", "record"),
    ("birth", "record"),
    ("death", "record"),
    ("marriage", "record"),
    ("memories", "memory"),
    ("memory", "memory"),
    ("stories", "story"),
    ("story", "story"),
    ("photo", "photo"),
    ("image", "photo"),
]


def infer_source_type(title: Optional[str], citation: Optional[str]) -> SourceType:
    """Best-effort classification from the title and citation text."""
    text = f"{title or ''} {citation or ''}".lower()
    for keyword, source_type in _TYPE_KEYWORDS:
        if keyword in text:
            return source_type
    return "other"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    value = _as_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S") + f".{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_utc(datetime.fromisoformat(text))


def derive_run_id(captured_at: str) -> str:
    """
    Run ids are a pure function of capturedAt, so re-importing the same capture lands
    in the same run directory. "2024-01-02T03:04:05.678Z" -> "2024-01-02T03-04-05-678Z".
    """
    return format_timestamp(parse_timestamp(captured_at)).replace(":", "-").replace(".", "-")
