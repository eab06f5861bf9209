"""Deterministic markdown rendering of an Evidence Pack.

No AI and no clock: the same pack (and the same generated_at) always renders to the
same bytes. Every field of every source is kept, in page order, and each source
section carries a {#id} anchor that the table of contents links to.
"""

from __future__ import annotations

import re
from typing import List, Optional

from ..schemas.evidence import EvidencePack, Source

_BACKTICK_RUN = re.compile(r"`+")
_ANCHOR_SAFE = re.compile(r"[A-Za-z0-9-]")


def escape_cell(value: Optional[str]) -> str:
    """Make a value safe inside a markdown table cell."""
    if value is None:
        return ""
    text = value.replace("\\", "\\\\").replace("|", "\\|")
    return text.replace("\r\n", "\n").replace("\n", "<br>")


def escape_inline(value: Optional[str]) -> str:
    """Collapse a value onto one line so it cannot break a heading or list item."""
    if value is None:
        return ""
    return " ".join(value.split())


def blockquote(text: str) -> List[str]:
    return [f"> {line}" if line else ">" for line in text.replace("\r\n", "\n").split("\n")]


def code_span(text: str) -> str:
    longest = max((len(run) for run in _BACKTICK_RUN.findall(text)), default=0)
    fence = "`" * (longest + 1)
    pad = " " if text.startswith("`") or text.endswith("`") else ""
    return f"{fence}{pad}{text}{pad}{fence}"


def fenced_block(text: str) -> List[str]:
    longest = max((len(run) for run in _BACKTICK_RUN.findall(text)), default=0)
    fence = "`" * max(3, longest + 1)
    return [f"{fence}text", text, fence]


def anchor(source_id: str) -> str:
    """Letters, digits and '-' pass through; anything else becomes _<hex>_, so distinct ids never share an anchor."""
    return "".join(c if _ANCHOR_SAFE.match(c) else f"_{ord(c):x}_" for c in source_id)


def render_table_of_contents(pack: EvidencePack) -> str:
    lines = ["## Table of Contents", ""]
    if not pack.sources:
        lines.append("- No sources were captured.")
    for source in pack.sources:
        lines.append(f"- [{escape_inline(source.id)}: {escape_inline(source.title)}](#{anchor(source.id)})")
    lines.append("")
    return "\n".join(lines)


def render_source_section(source: Source) -> str:
    lines: List[str] = []
    sid = escape_inline(source.id)

    lines.append(f"### {sid}: {escape_inline(source.title)} {{#{anchor(source.id)}}}")
    lines.append(f"**Source ID:** {code_span(source.id)}  ")
    lines.append(f"**Order:** {source.order_index}  ")
    lines.append(f"**Source Key:** {code_span(source.source_key)}  ")
    lines.append(f"**Type:** {source.source_type}  ")
    lines.append("")

    if source.date:
        lines.append(f"**Date:** {escape_inline(source.date)}  ")
    if source.attached_by:
        attached = f"**Attached by:** {escape_inline(source.attached_by)}"
        if source.attached_at:
            attached += f" on {escape_inline(source.attached_at)}"
        lines.append(attached + "  ")
    elif source.attached_at:
        lines.append(f"**Attached:** {escape_inline(source.attached_at)}  ")
    if source.reason_attached:
        lines.append("**Reason:**  ")
        lines.extend(blockquote(source.reason_attached))
    lines.append("")

    if source.citation:
        lines.append("**Citation:**  ")
        lines.extend(blockquote(source.citation))
        lines.append("")

    if source.web_page_url:
        lines.append(f"**Web Page:** <{source.web_page_url.strip()}>")
        lines.append("")

    if source.tags:
        lines.append(f"**Tags:** {' '.join(code_span(t) for t in source.tags)}")
        lines.append("")

    if source.indexed.fields or source.indexed.text_blocks:
        lines.append("#### Indexed Information")
        lines.append("")
        if source.indexed.fields:
            has_raw = any(f.label_raw for f in source.indexed.fields)
            if has_raw:
                lines.append("| Field | Original Label | Value |")
                lines.append("|-------|----------------|-------|")
            else:
                lines.append("| Field | Value |")
                lines.append("|-------|-------|")
            for f in source.indexed.fields:
                if has_raw:
                    lines.append(f"| {escape_cell(f.label)} | {escape_cell(f.label_raw)} | {escape_cell(f.value)} |")
                else:
                    lines.append(f"| {escape_cell(f.label)} | {escape_cell(f.value)} |")
            lines.append("")
        for block in source.indexed.text_blocks:
            lines.extend(blockquote(block))
            lines.append("")

    if source.raw_text:
        lines.append("#### Captured Text")
        lines.append("")
        lines.extend(fenced_block(source.raw_text))
        lines.append("")

    status = "succeeded" if source.expansion_succeeded else ("failed" if source.expansion_attempts else "not attempted")
    lines.append(
        f"*Capture: indexed information {'visible' if source.expanded else 'not visible'}; "
        f"expansion {status} ({source.expansion_attempts} attempt(s))*"
    )
    lines.append("")
    lines.append("---")
    lines.append(f"*End of Source {sid}*")
    return "\n".join(lines)


def render_raw(pack: EvidencePack, generated_at: Optional[str] = None) -> str:
    """
    Render the raw evidence document. generated_at is printed verbatim when given;
    it is never read from the system clock here.
    """
    lines: List[str] = []
    person = pack.person

    lines.append(f"# {escape_inline(person.name) or 'Unknown Person'}")
    lines.append(f"**FamilySearch ID:** {escape_inline(person.family_search_id)}  ")
    dates = []
    if person.birth_date:
        dates.append(f"Born: {escape_inline(person.birth_date)}")
    if person.death_date:
        dates.append(f"Died: {escape_inline(person.death_date)}")
    if dates:
        lines.append(f"**{' | '.join(dates)}**  ")
    if generated_at:
        lines.append(f"**Generated:** {escape_inline(generated_at)}  ")
    lines.append("")
    lines.append("---")
    lines.append("")

    d = pack.diagnostics
    lines.append("## Extraction Metadata")
    lines.append("")
    lines.append("| Field | Value |")
    lines.append("|-------|-------|")
    rows = [
        ("Schema", pack.schema_version),
        ("Run ID", pack.run_id),
        ("Captured", pack.captured_at),
        ("Source URL", pack.source_url),
        ("Page Title", pack.page_title),
        ("Locale", pack.ui_locale),
        ("Extractor", f"v{pack.extractor_version}"),
        ("Mode", d.mode),
        ("Outcome", d.outcome),
        ("Duration", f"{pack.extraction_duration_ms / 1000:.1f}s"),
        ("Sources", f"{d.total_sources} total, {d.expanded_sections} expanded, {d.failed_expansions} failed expansions"),
    ]
    if d.discovered_sources is not None:
        rows.append(("Discovered", str(d.discovered_sources)))
    for label, value in rows:
        lines.append(f"| {label} | {escape_cell(value)} |")
    lines.append("")
    lines.append("---")
    lines.append("")

    lines.append(render_table_of_contents(pack))

    lines.append("## Sources")
    lines.append("")
    for source in pack.sources:
        lines.append(render_source_section(source))
        lines.append("")

    lines.append("---")
    lines.append("")
    lines.append("## Extraction Diagnostics")
    lines.append("")
    lines.append("### Warnings")
    lines.append("")
    if d.warnings:
        for w in d.warnings:
            suffix = f" ({escape_inline(w.source_id)})" if w.source_id else ""
            lines.append(f"- **{w.code}**: {escape_inline(w.message)}{suffix}")
    else:
        lines.append("- None recorded.")
    lines.append("")
    lines.append("### Errors")
    lines.append("")
    if d.errors:
        for e in d.errors:
            lines.append(f"- **{escape_inline(e.code)}**: {escape_inline(e.message)}{' (FATAL)' if e.fatal else ''}")
    else:
        lines.append("- None recorded.")
    lines.append("")

    return "\n".join(lines)
