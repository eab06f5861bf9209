"""Markdown dossier rendered from a validated Synthesis.

Every section is always present; an empty section says so explicitly. Every
traceable line carries its sourceIds inline so the document can be audited on
its own.
"""

from __future__ import annotations

from typing import List, Optional

from ..schemas.evidence import PersonSnapshot
from ..schemas.outputs import Synthesis
from .raw_document import escape_inline


def _sources(source_ids: List[str]) -> str:
    return ", ".join(source_ids) if source_ids else "none cited"


def render_dossier(
    person: PersonSnapshot,
    synthesis: Synthesis,
    run_id: Optional[str] = None,
    generated_at: Optional[str] = None,
) -> str:
    lines: List[str] = []

    lines.append(f"# Contextualized Dossier: {escape_inline(person.name) or 'Unknown Person'}")
    lines.append(f"**FamilySearch ID:** {escape_inline(person.family_search_id)}  ")
    if run_id:
        lines.append(f"**Run ID:** `{run_id}`  ")
    if generated_at:
        lines.append(f"**Generated:** {escape_inline(generated_at)}  ")
    lines.append("")

    lines.append("## Executive Summary")
    lines.append("")
    lines.append(synthesis.summary.strip() or "No summary was provided.")
    lines.append("")

    lines.append("## Verified Facts")
    lines.append("")
    if not synthesis.verified_facts:
        lines.append("No verified facts were found.")
    for fact in synthesis.verified_facts:
        lines.append(
            f"- {escape_inline(fact.fact)} _(confidence: {fact.confidence}, sources: {_sources(fact.source_ids)})_"
        )
    lines.append("")

    lines.append("## Conflicts")
    lines.append("")
    if not synthesis.conflicts:
        lines.append("No conflicts were found between sources.")
    for conflict in synthesis.conflicts:
        lines.append(f"- {escape_inline(conflict.description)}")
        if not conflict.positions:
            lines.append("  - No positions were recorded.")
        for position in conflict.positions:
            lines.append(f"  - {escape_inline(position.claim)} _(sources: {_sources(position.source_ids)})_")
    lines.append("")

    lines.append("## Timeline")
    lines.append("")
    if not synthesis.timeline:
        lines.append("No timeline events were found.")
    for entry in synthesis.timeline:
        lines.append(f"- **{escape_inline(entry.date)}**: {escape_inline(entry.event)} _(sources: {_sources(entry.source_ids)})_")
    lines.append("")

    lines.append("## Research Suggestions")
    lines.append("")
    if not synthesis.research_suggestions:
        lines.append("No research suggestions were found.")
    for suggestion in synthesis.research_suggestions:
        lines.append(f"- {escape_inline(suggestion)}")
    lines.append("")

    return "\n".join(lines)
