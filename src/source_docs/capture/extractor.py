"""Paced, cancellable extraction of an Evidence Pack from a sources page.

One source element is processed at a time: report progress, try to reveal the
hidden indexed information, read whatever is visible, then wait before the next
element. Pacing is deliberate politeness toward the origin site; do not
parallelise it.

Cancellation is cooperative. The token is checked before each element and a
cancelled run still returns a pack holding everything collected so far.
"""

from __future__ import annotations

import re
import threading
import time
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, Field

from ..errors import CaptureError
from ..log import get_logger
from ..schemas.evidence import (
    CaptureWarning,
    Diagnostics,
    EvidencePack,
    ExtractorError,
    IndexedField,
    IndexedInfo,
    PersonSnapshot,
    Source,
    derive_run_id,
    format_timestamp,
    infer_source_type,
    source_key,
)
from .fetch import Fetcher
from .page import HtmlPage, PageDriver, PageInfo, SourceElement

logger = get_logger("extractor")

TITLE_SELECTORS = ["[data-testid='source-title']", ".source-title", "h3", "h4"]
DATE_SELECTORS = ["[data-testid='source-date']", ".source-date", "[class*='date']"]
CITATION_SELECTORS = ["[data-testid='citation']", ".citation", "[class*='citation']"]
RECORD_LINK_SELECTORS = ["a[href*='ark:']"]
ATTACHED_SELECTORS = ["[data-testid='attached-by']", ".attached-by", "[class*='contributor']"]
REASON_SELECTORS = ["[data-testid='reason']", ".reason", "[class*='reason']"]
TAG_SELECTORS = ["[data-testid='tag']", ".tag", "[class*='Tag']", ".badge"]

ATTACHED_RE = re.compile(r"(.+?)\s+on\s+(.+)", re.IGNORECASE)


class PacingConfig(BaseModel):
    expand_delay_ms: int = Field(1500, ge=0)
    action_delay_ms: int = Field(500, ge=0)
    max_expansions: int = Field(50, ge=0)


class CancellationToken:
    """Polled cancellation flag shared between the caller and the extraction loop."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExtractionProgress(BaseModel):
    status: Literal["extracting", "expanding", "complete", "cancelled", "failed"]
    current_step: int
    total_steps: int
    current_source: Optional[str] = None
    expanded_count: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_attached(text: Optional[str]):
    """'Jane Roe on 3 March 2019' -> ('Jane Roe', '3 March 2019')."""
    if not text:
        return None, None
    match = ATTACHED_RE.match(text)
    if match:
        return match.group(1).strip(), match.group(2).strip()
    return text.strip(), None


class Extractor:
    def __init__(
        self,
        pacing: Optional[PacingConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utc_now,
        on_progress: Optional[Callable[[ExtractionProgress], None]] = None,
    ):
        self.pacing = pacing or PacingConfig()
        self._sleep = sleep
        self._clock = clock
        self._now = now
        self._on_progress = on_progress

    def _pause(self, delay_ms: int):
        if delay_ms > 0:
            self._sleep(delay_ms / 1000.0)

    def _report(self, **kwargs):
        if self._on_progress is None:
            return
        try:
            self._on_progress(ExtractionProgress(**kwargs))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def extract(self, page: PageDriver, cancel_token: Optional[CancellationToken] = None) -> EvidencePack:
        token = cancel_token or CancellationToken()
        start = self._clock()
        sources: List[Source] = []
        warnings: List[CaptureWarning] = []
        errors: List[ExtractorError] = []
        outcome = "complete"
        info = PageInfo()
        elements = []

        try:
            info = page.read_page_info()
            elements = list(page.source_elements())
        except Exception as e:
            logger.error(f"Page is not readable: {e}")
            errors.append(ExtractorError(code="PAGE_UNAVAILABLE", message=str(e), fatal=True))
            outcome = "failed"

        total = len(elements)
        self._report(status="extracting", current_step=0, total_steps=total)

        expansions_used = 0
        limit_warned = False
        for i, element in enumerate(elements):
            if token.cancelled:
                logger.info(f"Extraction cancelled after {len(sources)} of {total} sources")
                outcome = "cancelled"
                break

            source_id = f"S{i + 1}"
            self._report(
                status="expanding",
                current_step=i + 1,
                total_steps=total,
                current_source=source_id,
                expanded_count=sum(1 for s in sources if s.expansion_succeeded),
            )

            attempts = 0
            succeeded = False
            try:
                if element.has_reveal_control():
                    if expansions_used < self.pacing.max_expansions:
                        expansions_used += 1
                        attempts = 1
                        succeeded = self._reveal(element, source_id, warnings)
                    elif not limit_warned:
                        limit_warned = True
                        warnings.append(CaptureWarning(
                            code="EXPANSION_LIMIT",
                            message=f"Reached max expansions ({self.pacing.max_expansions}); remaining sources read as visible",
                            source_id=source_id,
                        ))
                source = self._read_source(element, source_id, i, attempts, succeeded, warnings)
            except Exception as e:
                logger.warning(f"Failed to read {source_id}: {e}")
                errors.append(ExtractorError(code="SOURCE_EXTRACT_FAILED", message=f"{source_id}: {e}", fatal=False))
                source = self._fallback_source(element, source_id, i, attempts, succeeded)
            sources.append(source)

            if i < total - 1:
                self._pause(self.pacing.expand_delay_ms)

        pack = self._build_pack(page, info, sources, warnings, errors, outcome, total, start)
        self._report(
            status=outcome,
            current_step=len(sources),
            total_steps=total,
            expanded_count=pack.diagnostics.expanded_sections,
        )
        return pack

    def _reveal(self, element: SourceElement, source_id: str, warnings: List[CaptureWarning]) -> bool:
        try:
            succeeded = element.reveal()
        except Exception as e:
            logger.warning(f"Reveal failed for {source_id}: {e}")
            succeeded = False
        self._pause(self.pacing.action_delay_ms)
        if not succeeded:
            warnings.append(CaptureWarning(
                code="EXPAND_TIMEOUT",
                message="Indexed information did not open; using visible content",
                source_id=source_id,
            ))
        return succeeded

    def _read_source(
        self,
        element: SourceElement,
        source_id: str,
        order_index: int,
        attempts: int,
        succeeded: bool,
        warnings: List[CaptureWarning],
    ) -> Source:
        title = element.first_text(TITLE_SELECTORS)
        if not title:
            warnings.append(CaptureWarning(code="MISSING_FIELD", message="Source has no title", source_id=source_id))
            title = "Untitled Source"
        citation = element.first_text(CITATION_SELECTORS)
        web_page_url = element.first_link(RECORD_LINK_SELECTORS)
        attached_by, attached_at = split_attached(element.first_text(ATTACHED_SELECTORS))

        return Source(
            id=source_id,
            order_index=order_index,
            source_key=source_key(citation, web_page_url, title),
            source_type=infer_source_type(title, citation),
            title=title,
            date=element.first_text(DATE_SELECTORS),
            citation=citation,
            web_page_url=web_page_url,
            attached_by=attached_by,
            attached_at=attached_at,
            reason_attached=element.first_text(REASON_SELECTORS),
            tags=[t for t in element.all_text(TAG_SELECTORS) if t],
            indexed=IndexedInfo(
                fields=[IndexedField(label=label, value=value) for label, value in element.indexed_fields()],
                text_blocks=element.indexed_text_blocks(),
            ),
            raw_text=element.full_text().strip(),
            expanded=element.indexed_visible(),
            expansion_attempts=attempts,
            expansion_succeeded=succeeded,
        )

    def _fallback_source(self, element: SourceElement, source_id: str, order_index: int, attempts: int, succeeded: bool) -> Source:
        try:
            raw_text = element.full_text().strip()
        except Exception:
            raw_text = ""
        title = "Untitled Source"
        return Source(
            id=source_id,
            order_index=order_index,
            source_key=source_key(None, None, title),
            source_type="other",
            title=title,
            raw_text=raw_text,
            expansion_attempts=attempts,
            expansion_succeeded=succeeded,
        )

    def _build_pack(self, page, info, sources, warnings, errors, outcome, discovered, start) -> EvidencePack:
        captured_at = format_timestamp(self._now())
        duration_ms = int(round((self._clock() - start) * 1000))
        return EvidencePack(
            run_id=derive_run_id(captured_at),
            captured_at=captured_at,
            extraction_duration_ms=max(0, duration_ms),
            source_url=getattr(page, "url", "") or "",
            page_title=getattr(page, "title", "") or "",
            ui_locale=getattr(page, "locale", "") or "en",
            person=PersonSnapshot(
                family_search_id=info.person_id,
                name=info.person_name,
                birth_date=info.birth_date,
                death_date=info.death_date,
            ),
            sources=sources,
            diagnostics=Diagnostics(
                total_sources=len(sources),
                expanded_sections=sum(1 for s in sources if s.expansion_succeeded),
                failed_expansions=sum(1 for s in sources if s.expansion_attempts > 0 and not s.expansion_succeeded),
                warnings=warnings,
                errors=errors,
                outcome=outcome,
                discovered_sources=discovered,
            ),
        )


def capture_url(url: str, extractor: Extractor, fetcher: Optional[Fetcher] = None,
                cancel_token: Optional[CancellationToken] = None) -> EvidencePack:
    """
    Fetch a sources page and extract it. A page that cannot be fetched yields an
    empty pack whose diagnostics carry the fatal error.
    """
    fetcher = fetcher or Fetcher()
    try:
        fetched = fetcher.fetch_page(url)
    except CaptureError as e:
        logger.error(str(e))
        pack = extractor.extract(_UnreachablePage(url, str(e)), cancel_token)
        return pack

    pack = extractor.extract(HtmlPage(fetched.html, url=url), cancel_token)
    if fetched.rate_limited:
        pack.diagnostics.warnings.append(CaptureWarning(
            code="RATE_LIMITED",
            message=f"Origin rate-limited the page fetch; succeeded after {fetched.attempts} attempt(s)",
        ))
    return pack


class _UnreachablePage:
    def __init__(self, url: str, reason: str):
        self.url = url
        self.title = ""
        self.locale = "en"
        self._reason = reason

    def read_page_info(self) -> PageInfo:
        raise CaptureError(self._reason)

    def source_elements(self):
        return []
